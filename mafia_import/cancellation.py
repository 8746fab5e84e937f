from collections.abc import Callable
import logging
import threading
import time

from mafia_import.errors import ImportCancelledError


logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation shared by every long-running step of a run.

    ``poll`` lets another process request cancellation (for example through a
    flag in the database); it is consulted at most once per
    ``poll_interval_seconds``.
    """

    def __init__(
        self,
        *,
        poll: Callable[[], bool] | None = None,
        poll_interval_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._event = threading.Event()
        self._poll = poll
        self._poll_interval_seconds = poll_interval_seconds
        self._clock = clock
        self._last_poll: float | None = None
        self._lock = threading.Lock()

    def cancel(self) -> None:
        if not self._event.is_set():
            logger.info("cancellation requested")
        self._event.set()

    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._poll is None:
            return False

        with self._lock:
            now = self._clock()
            if self._last_poll is not None and now - self._last_poll < self._poll_interval_seconds:
                return False
            self._last_poll = now

        if self._poll():
            self._event.set()
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled():
            raise ImportCancelledError()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True as soon as the run is cancelled."""
        if seconds <= 0:
            return self.is_cancelled()

        deadline = time.monotonic() + seconds
        while True:
            if self.is_cancelled():
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            slice_seconds = remaining
            if self._poll is not None:
                slice_seconds = min(remaining, max(self._poll_interval_seconds, 0.05))
            if self._event.wait(slice_seconds):
                return True
