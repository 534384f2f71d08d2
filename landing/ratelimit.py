from __future__ import annotations

import threading
import time
from typing import Dict, Optional, Tuple


def bucket_parts(bucket: str, key: str) -> Tuple[str, str]:
    """Normalised (bucket, client) pair; "gen" buckets are keyed by client address, "worker" by queue name."""
    return ((bucket or "").strip() or "default", (key or "").strip() or "anon")


class RateLimiter:
    """Fixed-window counter kept in process memory.

    check_and_increment returns (allowed, remaining, reset_ts). Windows start at a
    client's first request and closed ones are dropped whenever a new window opens.
    """

    def __init__(self, max_requests: int, window_seconds: int) -> None:
        self.max_requests = int(max_requests)
        self.window_seconds = max(1, int(window_seconds))
        self._store: Dict[Tuple[str, str], Dict[str, int]] = {}
        self._lock = threading.Lock()

    def _evict(self, now: int) -> None:
        expired = [k for k, entry in self._store.items() if entry["reset_ts"] <= now]
        for k in expired:
            del self._store[k]

    def check_and_increment(self, bucket: str, key: str, now: Optional[int] = None) -> Tuple[bool, int, int]:
        current_ts = int(now if now is not None else time.time())
        k = bucket_parts(bucket, key)
        with self._lock:
            entry = self._store.get(k)
            if entry is None or current_ts >= entry["reset_ts"]:
                self._evict(current_ts)
                entry = {"count": 0, "reset_ts": current_ts + self.window_seconds}
                self._store[k] = entry
            if entry["count"] < self.max_requests:
                entry["count"] += 1
                return True, max(0, self.max_requests - entry["count"]), entry["reset_ts"]
            return False, 0, entry["reset_ts"]

    def reset(self) -> None:
        with self._lock:
            self._store.clear()
