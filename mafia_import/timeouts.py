from collections.abc import Callable
from dataclasses import dataclass
import time

from mafia_import.errors import ImportTimeoutError, TimeoutManagerNotStartedError


DEFAULT_MAX_DURATION_SECONDS = 12 * 60 * 60


@dataclass(frozen=True)
class TimeoutSummary:
    max_duration_seconds: float
    elapsed_seconds: float
    remaining_seconds: float
    exceeded: bool
    percent_complete: float


class TimeoutManager:
    def __init__(
        self,
        max_duration_seconds: float = DEFAULT_MAX_DURATION_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_duration_seconds = max_duration_seconds
        self._clock = clock
        self._started_at: float | None = None

    @property
    def started(self) -> bool:
        return self._started_at is not None

    def start(self) -> None:
        if self._started_at is None:
            self._started_at = self._clock()

    def reset(self) -> None:
        self._started_at = None

    def get_elapsed(self) -> float:
        if self._started_at is None:
            raise TimeoutManagerNotStartedError()
        return self._clock() - self._started_at

    def is_exceeded(self) -> bool:
        return self.get_elapsed() >= self.max_duration_seconds

    def get_remaining(self) -> float:
        return max(0.0, self.max_duration_seconds - self.get_elapsed())

    def is_approaching_timeout(self, threshold: float = 0.8) -> bool:
        return self.get_elapsed() >= self.max_duration_seconds * threshold

    def get_formatted_remaining(self) -> str:
        total_minutes = int(self.get_remaining() // 60)
        hours, minutes = divmod(total_minutes, 60)
        return f"{hours}h {minutes}m"

    def get_summary(self) -> TimeoutSummary:
        elapsed = self.get_elapsed()
        percent = 100.0 if self.max_duration_seconds <= 0 else min(100.0, elapsed / self.max_duration_seconds * 100)
        return TimeoutSummary(
            max_duration_seconds=self.max_duration_seconds,
            elapsed_seconds=elapsed,
            remaining_seconds=max(0.0, self.max_duration_seconds - elapsed),
            exceeded=elapsed >= self.max_duration_seconds,
            percent_complete=percent,
        )


def ensure_within_budget(timeout_manager: TimeoutManager) -> None:
    if timeout_manager.started and timeout_manager.is_exceeded():
        hours = timeout_manager.max_duration_seconds / 3600
        raise ImportTimeoutError(f"Import exceeded maximum duration of {hours:g} hours")
