import pytest

from mafia_import.cancellation import CancellationToken
from mafia_import.errors import ImportCancelledError, RetryExhaustedError
from mafia_import.retry import RetryManager, is_transient_error


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (RuntimeError("Network timeout while reading page"), True),
        (RuntimeError("503 Service Unavailable"), True),
        (RuntimeError("read ECONNRESET"), True),
        (ConnectionError("peer went away"), True),
        (TimeoutError(), True),
        (ValueError("unexpected markup"), False),
        (ImportCancelledError(), False),
    ],
)
def test_transient_error_classification(error: Exception, expected: bool) -> None:
    assert is_transient_error(error) is expected


def test_backoff_doubles_per_attempt() -> None:
    manager = RetryManager(base_delay_seconds=1.0)
    assert [manager.calculate_backoff(attempt) for attempt in (1, 2, 3)] == [1.0, 2.0, 4.0]


def test_full_outage_uses_fixed_wait() -> None:
    manager = RetryManager(base_delay_seconds=1.0, full_outage_wait_seconds=300.0)
    assert manager.calculate_backoff(1, is_full_outage=True) == 300.0
    assert manager.calculate_backoff(3, is_full_outage=True) == 300.0


def test_transient_failures_are_retried_until_success() -> None:
    sleeps: list[float] = []
    manager = RetryManager(3, base_delay_seconds=1.0, sleep=sleeps.append)
    attempts = {"count": 0}

    def flaky() -> str:
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise RuntimeError("connection reset by peer")
        return "page"

    assert manager.execute(flaky) == "page"
    assert sleeps == [1.0, 2.0]

    metrics = manager.get_metrics()
    assert metrics.total_attempts == 3
    assert metrics.successful_retries == 1
    assert metrics.failed_operations == 0


def test_permanent_error_is_not_retried() -> None:
    sleeps: list[float] = []
    manager = RetryManager(3, sleep=sleeps.append)

    def broken() -> None:
        raise ValueError("unexpected markup")

    with pytest.raises(ValueError):
        manager.execute(broken)

    assert sleeps == []
    assert manager.get_metrics().total_attempts == 1
    assert manager.get_metrics().failed_operations == 1


def test_exhausted_retries_keep_last_error_as_cause() -> None:
    sleeps: list[float] = []
    manager = RetryManager(3, base_delay_seconds=1.0, sleep=sleeps.append)

    def down() -> None:
        raise RuntimeError("503 Service Unavailable")

    with pytest.raises(RetryExhaustedError) as excinfo:
        manager.execute(down)

    assert excinfo.value.attempts == 3
    assert "503" in str(excinfo.value.__cause__)
    assert sleeps == [1.0, 2.0]


def test_full_outage_waits_the_fixed_delay() -> None:
    sleeps: list[float] = []
    manager = RetryManager(2, full_outage_wait_seconds=300.0, sleep=sleeps.append)

    def down() -> None:
        raise RuntimeError("request timed out")

    with pytest.raises(RetryExhaustedError):
        manager.execute(down, is_full_outage=True)

    assert sleeps == [300.0]


def test_attempt_failures_are_reported() -> None:
    reported: list[tuple[int, bool]] = []
    manager = RetryManager(2, base_delay_seconds=0, sleep=lambda _: None)

    def down() -> None:
        raise RuntimeError("network timeout")

    with pytest.raises(RetryExhaustedError):
        manager.execute(down, on_attempt_failure=lambda attempt, exc, will_retry: reported.append((attempt, will_retry)))

    assert reported == [(1, True), (2, False)]


def test_cancellation_during_backoff_stops_retrying() -> None:
    token = CancellationToken()
    manager = RetryManager(3, base_delay_seconds=60.0)
    attempts = {"count": 0}

    def cancel_then_fail() -> None:
        attempts["count"] += 1
        token.cancel()
        raise RuntimeError("network timeout")

    with pytest.raises(ImportCancelledError):
        manager.execute(cancel_then_fail, cancel_token=token)

    assert attempts["count"] == 1


def test_reset_clears_metrics() -> None:
    manager = RetryManager(1)
    manager.execute(lambda: None)
    manager.reset()
    assert manager.get_metrics().total_attempts == 0
