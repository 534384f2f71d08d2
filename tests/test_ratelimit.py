import fakeredis

from landing.ratelimit import RateLimiter
from landing.redis_ratelimit import RedisRateLimiter


def test_in_process_limiter_window():
    rl = RateLimiter(max_requests=2, window_seconds=60)
    assert rl.check_and_increment("gen", "1.2.3.4", now=1000) == (True, 1, 1060)
    assert rl.check_and_increment("gen", "1.2.3.4", now=1001) == (True, 0, 1060)
    assert rl.check_and_increment("gen", "1.2.3.4", now=1002) == (False, 0, 1060)
    # other keys are independent
    assert rl.check_and_increment("gen", "5.6.7.8", now=1002)[0] is True
    # new window
    assert rl.check_and_increment("gen", "1.2.3.4", now=1060)[0] is True


def test_in_process_limiter_reset():
    rl = RateLimiter(max_requests=1, window_seconds=60)
    rl.check_and_increment("gen", "k", now=0)
    rl.reset()
    assert rl.check_and_increment("gen", "k", now=1)[0] is True


def test_redis_limiter_window():
    rl = RedisRateLimiter(window_seconds=60, max_requests=2, client=fakeredis.FakeRedis(decode_responses=True))
    assert rl.check_and_increment("worker", "q", now=120) == (True, 1, 180)
    assert rl.check_and_increment("worker", "q", now=130) == (True, 0, 180)
    assert rl.check_and_increment("worker", "q", now=179) == (False, 0, 180)
    assert rl.check_and_increment("worker", "q", now=180)[0] is True


def test_in_process_limiter_drops_closed_windows():
    rl = RateLimiter(max_requests=5, window_seconds=60)
    for i in range(50):
        rl.check_and_increment("gen", f"10.0.0.{i}", now=1000)
    assert len(rl._store) == 50
    rl.check_and_increment("gen", "10.0.1.1", now=1060)
    assert len(rl._store) == 1
    # still-open windows survive
    rl.check_and_increment("gen", "10.0.1.2", now=1100)
    assert len(rl._store) == 2


def test_redis_limiter_namespaces_and_buckets_are_independent():
    client = fakeredis.FakeRedis(decode_responses=True)
    api = RedisRateLimiter(window_seconds=60, max_requests=1, namespace="prod", client=client)
    other = RedisRateLimiter(window_seconds=60, max_requests=1, namespace="staging", client=client)
    assert api.check_and_increment("gen", "1.2.3.4", now=120)[0] is True
    assert api.check_and_increment("gen", "1.2.3.4", now=121)[0] is False
    assert api.check_and_increment("worker", "1.2.3.4", now=121)[0] is True
    assert other.check_and_increment("gen", "1.2.3.4", now=121)[0] is True
    assert api.counter_key("gen", " ", 120) == "prod:rl:gen:anon:120"
    assert client.get("prod:rl:gen:1.2.3.4:120") == "2"
