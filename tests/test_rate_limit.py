from threading import Event

import pytest

from pdfchat.jobs.rate_limit import TokenBucket


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_bucket_allows_burst_then_reports_wait() -> None:
    clock = FakeClock()
    bucket = TokenBucket(max_tokens=10, window_seconds=1.0, clock=clock)

    assert [bucket.try_acquire() for _ in range(10)] == [0.0] * 10
    assert bucket.try_acquire() == pytest.approx(0.1)


def test_bucket_refills_over_time_up_to_capacity() -> None:
    clock = FakeClock()
    bucket = TokenBucket(max_tokens=2, window_seconds=1.0, clock=clock)
    bucket.try_acquire()
    bucket.try_acquire()

    clock.now += 0.5
    assert bucket.try_acquire() == 0.0
    assert bucket.try_acquire() > 0.0

    clock.now += 60
    assert [bucket.try_acquire() for _ in range(3)][:2] == [0.0, 0.0]


def test_acquire_returns_false_when_stopped() -> None:
    clock = FakeClock()
    bucket = TokenBucket(max_tokens=1, window_seconds=3600.0, clock=clock)
    stop = Event()
    assert bucket.acquire(stop) is True

    stop.set()
    assert bucket.acquire(stop) is False


@pytest.mark.parametrize(("max_tokens", "window_seconds"), [(0, 1.0), (1, 0.0)])
def test_bucket_rejects_invalid_limits(max_tokens: int, window_seconds: float) -> None:
    with pytest.raises(ValueError):
        TokenBucket(max_tokens=max_tokens, window_seconds=window_seconds)
