import pytest

from authgate.core.exceptions import RateLimitExceededError
from authgate.services.rate_limiter import InMemoryRateLimiter


class ManualClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_allows_up_to_limit_within_window():
    limiter = InMemoryRateLimiter(clock=ManualClock())

    assert [limiter.allow("login:1.2.3.4", 3, 60) for _ in range(4)] == [True, True, True, False]
    assert limiter.remaining("login:1.2.3.4", 3, 60) == 0
    assert limiter.remaining("login:5.6.7.8", 3, 60) == 3


def test_window_slides():
    clock = ManualClock()
    limiter = InMemoryRateLimiter(clock=clock)

    limiter.hit("k", 2, 60)
    clock.now += 30
    limiter.hit("k", 2, 60)
    with pytest.raises(RateLimitExceededError) as excinfo:
        limiter.hit("k", 2, 60)
    assert excinfo.value.status_code == 429

    clock.now += 31
    limiter.hit("k", 2, 60)
    assert limiter.remaining("k", 2, 60) == 0


def test_reset():
    limiter = InMemoryRateLimiter(clock=ManualClock())
    limiter.hit("a", 1, 60)
    limiter.hit("b", 1, 60)

    limiter.reset("a")
    assert limiter.allow("a", 1, 60)
    assert not limiter.allow("b", 1, 60)

    limiter.reset()
    assert limiter.allow("b", 1, 60)


def test_bucket_is_dropped_once_its_window_is_empty():
    clock = ManualClock()
    limiter = InMemoryRateLimiter(clock=clock)

    limiter.hit("k", 1, 60)
    assert len(limiter) == 1
    assert limiter.remaining("never-seen", 1, 60) == 1
    assert len(limiter) == 1

    clock.now += 61
    assert limiter.remaining("k", 1, 60) == 1
    assert len(limiter) == 0


def test_idle_keys_are_purged():
    clock = ManualClock()
    limiter = InMemoryRateLimiter(clock=clock, purge_interval_seconds=60)
    for i in range(50):
        limiter.hit(f"login:10.0.0.{i}", 5, 60)
    assert len(limiter) == 50

    clock.now += 120
    limiter.hit("login:10.0.1.1", 5, 60)
    assert len(limiter) == 1


def test_least_recently_used_key_is_evicted_past_max_keys():
    limiter = InMemoryRateLimiter(clock=ManualClock(), max_keys=2)
    limiter.hit("a", 1, 60)
    limiter.hit("b", 1, 60)
    limiter.hit("c", 1, 60)
    assert len(limiter) == 2

    assert limiter.allow("a", 1, 60)
    assert len(limiter) == 2
    assert not limiter.allow("c", 1, 60)
    assert limiter.allow("b", 1, 60)
