import pytest

from mafia_import.errors import ImportTimeoutError, TimeoutManagerNotStartedError
from mafia_import.timeouts import TimeoutManager, ensure_within_budget


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_queries_before_start_raise() -> None:
    manager = TimeoutManager(100, clock=FakeClock())

    assert manager.started is False
    with pytest.raises(TimeoutManagerNotStartedError):
        manager.get_elapsed()
    with pytest.raises(TimeoutManagerNotStartedError):
        manager.is_exceeded()


def test_default_budget_is_twelve_hours() -> None:
    assert TimeoutManager().max_duration_seconds == 12 * 60 * 60


def test_start_is_idempotent() -> None:
    clock = FakeClock()
    manager = TimeoutManager(100, clock=clock)
    manager.start()
    clock.now += 10
    manager.start()

    assert manager.get_elapsed() == 10


def test_remaining_and_exceeded() -> None:
    clock = FakeClock()
    manager = TimeoutManager(100, clock=clock)
    manager.start()

    clock.now += 40
    assert manager.get_remaining() == 60
    assert manager.is_exceeded() is False

    clock.now += 70
    assert manager.get_remaining() == 0
    assert manager.is_exceeded() is True


def test_approaching_timeout_threshold() -> None:
    clock = FakeClock()
    manager = TimeoutManager(100, clock=clock)
    manager.start()

    clock.now += 79
    assert manager.is_approaching_timeout() is False
    clock.now += 1
    assert manager.is_approaching_timeout() is True


def test_formatted_remaining_and_summary() -> None:
    clock = FakeClock()
    manager = TimeoutManager(12 * 60 * 60, clock=clock)
    manager.start()
    clock.now += 3.5 * 60 * 60

    assert manager.get_formatted_remaining() == "8h 30m"

    summary = manager.get_summary()
    assert summary.elapsed_seconds == 3.5 * 60 * 60
    assert summary.exceeded is False
    assert summary.percent_complete == pytest.approx(29.1666, rel=1e-3)


def test_reset_requires_a_new_start() -> None:
    manager = TimeoutManager(100, clock=FakeClock())
    manager.start()
    manager.reset()

    with pytest.raises(TimeoutManagerNotStartedError):
        manager.get_remaining()


def test_budget_check_raises_once_exceeded() -> None:
    clock = FakeClock()
    manager = TimeoutManager(2 * 60 * 60, clock=clock)

    ensure_within_budget(manager)
    manager.start()
    clock.now += 2 * 60 * 60

    with pytest.raises(ImportTimeoutError, match="maximum duration of 2 hours"):
        ensure_within_budget(manager)
