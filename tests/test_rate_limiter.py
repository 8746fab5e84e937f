import pytest

from mafia_import.cancellation import CancellationToken
from mafia_import.errors import ImportCancelledError
from mafia_import.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_first_call_does_not_wait() -> None:
    clock = FakeClock()
    limiter = RateLimiter(2.0, clock=clock, sleep=clock.sleep)

    assert limiter.wait() == 0
    assert clock.sleeps == []


def test_enforces_minimum_spacing_between_calls() -> None:
    clock = FakeClock()
    limiter = RateLimiter(2.0, clock=clock, sleep=clock.sleep)

    limiter.wait()
    clock.now += 0.5
    assert limiter.wait() == pytest.approx(1.5)

    clock.now += 5
    assert limiter.wait() == 0

    metrics = limiter.get_metrics()
    assert clock.sleeps == [pytest.approx(1.5)]
    assert metrics.request_count == 3
    assert metrics.total_delay_seconds == pytest.approx(1.5)
    assert metrics.min_delay_seconds == 2.0


def test_reset_forgets_previous_call() -> None:
    clock = FakeClock()
    limiter = RateLimiter(2.0, clock=clock, sleep=clock.sleep)
    limiter.wait()

    limiter.reset()

    assert limiter.wait() == 0
    assert limiter.get_metrics().request_count == 1


def test_cancellation_interrupts_the_delay() -> None:
    limiter = RateLimiter(60.0)
    token = CancellationToken()
    limiter.wait(token)
    token.cancel()

    with pytest.raises(ImportCancelledError):
        limiter.wait(token)
