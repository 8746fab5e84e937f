from collections.abc import Callable
from dataclasses import dataclass
import logging
import threading
import time

from mafia_import.cancellation import CancellationToken
from mafia_import.errors import ImportCancelledError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimiterMetrics:
    request_count: int
    total_delay_seconds: float
    min_delay_seconds: float


class RateLimiter:
    """Keeps at least ``min_delay_seconds`` between consecutive source calls.

    One limiter is shared by every worker of a run, so the spacing holds
    across threads as well.
    """

    def __init__(
        self,
        min_delay_seconds: float = 2.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_delay_seconds = max(0.0, min_delay_seconds)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_call: float | None = None
        self._request_count = 0
        self._total_delay = 0.0

    def wait(self, cancel_token: CancellationToken | None = None) -> float:
        with self._lock:
            delay = 0.0
            if self._last_call is not None:
                delay = max(0.0, self.min_delay_seconds - (self._clock() - self._last_call))

            if delay > 0:
                logger.debug("rate limit delay", extra={"delay_seconds": round(delay, 3)})
                if cancel_token is not None:
                    if cancel_token.wait(delay):
                        raise ImportCancelledError()
                else:
                    self._sleep(delay)

            self._last_call = self._clock()
            self._request_count += 1
            self._total_delay += delay
            return delay

    def get_metrics(self) -> RateLimiterMetrics:
        with self._lock:
            return RateLimiterMetrics(
                request_count=self._request_count,
                total_delay_seconds=self._total_delay,
                min_delay_seconds=self.min_delay_seconds,
            )

    def reset(self) -> None:
        with self._lock:
            self._last_call = None
            self._request_count = 0
            self._total_delay = 0.0
