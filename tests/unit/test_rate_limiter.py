from __future__ import annotations

import pytest

from common.rate_limiter import SlidingWindowRateLimiter, RateLimitError


class FakeClock:
    def __init__(self, t: float = 0.0) -> None:
        self.t = t

    def __call__(self) -> float:  # acts like time.monotonic
        return self.t

    def advance(self, dt: float) -> None:
        self.t += dt


def test_non_blocking_exceeds_limit():
    clock = FakeClock()
    rl = SlidingWindowRateLimiter(max_calls=2, per_seconds=1.0, clock=clock)

    rl.acquire()
    rl.acquire()
    with pytest.raises(RateLimitError):
        rl.acquire(blocking=False)

    clock.advance(1.0)
    rl.acquire(blocking=False)  # window moved on


def test_blocking_sleeps_until_slot_opens():
    clock = FakeClock()
    naps: list[float] = []

    def fake_sleep(seconds: float) -> None:
        naps.append(seconds)
        clock.advance(seconds)

    rl = SlidingWindowRateLimiter(max_calls=1, per_seconds=0.5, clock=clock, sleep=fake_sleep)
    rl.acquire()
    rl.acquire()  # must wait 0.5s of fake time

    assert naps == [0.5]
    assert clock.t == pytest.approx(0.5)


def test_timeout_raises_when_wait_would_exceed_it():
    clock = FakeClock()
    rl = SlidingWindowRateLimiter(max_calls=1, per_seconds=10.0, clock=clock, sleep=clock.advance)
    rl.acquire()

    with pytest.raises(RateLimitError):
        rl.acquire(timeout=2.0)


@pytest.mark.parametrize("max_calls,per_seconds", [(0, 1.0), (1, 0.0)])
def test_rejects_invalid_window(max_calls, per_seconds):
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(max_calls=max_calls, per_seconds=per_seconds)
