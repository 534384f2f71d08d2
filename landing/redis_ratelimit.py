import time
from typing import Any, Optional, Tuple

import redis

from landing.ratelimit import bucket_parts


class RedisRateLimiter:
    """
    Fixed-window limiter shared by every API process and worker on one Redis.

    Counters live under ``<namespace>:rl:<bucket>:<client>:<window start>``, with
    windows aligned to multiples of ``window_seconds``; the namespace is the queue
    name so several deployments can share a Redis without pooling their limits.
    """

    def __init__(
        self,
        redis_url: str = "",
        window_seconds: int = 60,
        max_requests: int = 10,
        namespace: str = "landing-generation",
        client: Optional[Any] = None,
    ) -> None:
        self.window_seconds = max(1, int(window_seconds))
        self.max_requests = int(max_requests)
        self.namespace = namespace
        self._client = client if client is not None else redis.from_url(redis_url, decode_responses=True)

    def counter_key(self, bucket: str, key: str, window_start: int) -> str:
        name, client = bucket_parts(bucket, key)
        return f"{self.namespace}:rl:{name}:{client}:{window_start}"

    def check_and_increment(self, bucket: str, key: str, now: Optional[int] = None) -> Tuple[bool, int, int]:
        current_ts = int(now if now is not None else time.time())
        window_start = current_ts - (current_ts % self.window_seconds)
        reset_ts = window_start + self.window_seconds
        counter = self.counter_key(bucket, key, window_start)
        pipe = self._client.pipeline()
        pipe.incr(counter, 1)
        # expires one second after the window closes
        pipe.expire(counter, reset_ts - current_ts + 1)
        used, _ = pipe.execute()
        if int(used) > self.max_requests:
            return False, 0, reset_ts
        return True, self.max_requests - int(used), reset_ts
