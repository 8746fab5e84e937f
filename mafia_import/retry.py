from collections.abc import Callable
from dataclasses import dataclass
import logging
import threading
import time
from typing import TypeVar

from mafia_import.cancellation import CancellationToken
from mafia_import.errors import ImportCancelledError, RetryExhaustedError


logger = logging.getLogger(__name__)
T = TypeVar("T")

TRANSIENT_ERROR_PATTERNS = (
    "network timeout",
    "request timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "econnreset",
    "econnrefused",
    "etimedout",
    "socket hang up",
    "temporary failure",
    "502",
    "503",
    "504",
    "getaddrinfo",
    "enotfound",
    "name resolution",
)


def is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, ImportCancelledError):
        return False
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    message = str(exc).lower()
    return any(pattern in message for pattern in TRANSIENT_ERROR_PATTERNS)


@dataclass(frozen=True)
class RetryMetrics:
    total_attempts: int
    successful_retries: int
    failed_operations: int


class RetryManager:
    def __init__(
        self,
        max_attempts: int = 3,
        *,
        base_delay_seconds: float = 1.0,
        full_outage_wait_seconds: float = 300.0,
        should_retry: Callable[[BaseException], bool] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.full_outage_wait_seconds = full_outage_wait_seconds
        self._should_retry = should_retry or is_transient_error
        self._sleep = sleep
        self._lock = threading.Lock()
        self._total_attempts = 0
        self._successful_retries = 0
        self._failed_operations = 0

    def calculate_backoff(self, attempt: int, *, is_full_outage: bool = False) -> float:
        if is_full_outage:
            return self.full_outage_wait_seconds
        return self.base_delay_seconds * (2 ** (attempt - 1))

    def execute(
        self,
        operation: Callable[[], T],
        *,
        cancel_token: CancellationToken | None = None,
        is_full_outage: bool = False,
        on_attempt_failure: Callable[[int, Exception, bool], None] | None = None,
    ) -> T:
        last_error: Exception | None = None

        for attempt in range(1, self.max_attempts + 1):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            self._count(attempts=1)
            try:
                result = operation()
            except ImportCancelledError:
                raise
            except Exception as exc:
                last_error = exc
                transient = self._should_retry(exc)
                will_retry = transient and attempt < self.max_attempts
                if on_attempt_failure:
                    on_attempt_failure(attempt, exc, will_retry)

                if not transient:
                    self._count(failed=1)
                    raise
                if not will_retry:
                    break

                delay = self.calculate_backoff(attempt, is_full_outage=is_full_outage)
                logger.warning(
                    "transient failure, retrying",
                    extra={"attempt": attempt, "delay_seconds": delay, "error": str(exc)},
                )
                self._pause(delay, cancel_token)
                continue

            if attempt > 1:
                self._count(retries=1)
            return result

        self._count(failed=1)
        raise RetryExhaustedError(
            f"operation failed after {self.max_attempts} attempts: {last_error}",
            attempts=self.max_attempts,
        ) from last_error

    def get_metrics(self) -> RetryMetrics:
        with self._lock:
            return RetryMetrics(
                total_attempts=self._total_attempts,
                successful_retries=self._successful_retries,
                failed_operations=self._failed_operations,
            )

    def reset(self) -> None:
        with self._lock:
            self._total_attempts = 0
            self._successful_retries = 0
            self._failed_operations = 0

    def _pause(self, delay: float, cancel_token: CancellationToken | None) -> None:
        if cancel_token is None:
            if delay > 0:
                self._sleep(delay)
            return
        if cancel_token.wait(delay):
            raise ImportCancelledError()

    def _count(self, *, attempts: int = 0, retries: int = 0, failed: int = 0) -> None:
        with self._lock:
            self._total_attempts += attempts
            self._successful_retries += retries
            self._failed_operations += failed
