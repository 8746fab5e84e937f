from collections import Counter
import logging
import threading

from mafia_import.db_models import utc_now
from mafia_import.schemas import PHASE_ORDER, ErrorLogEntry, ErrorSummary, Phase


logger = logging.getLogger(__name__)


class ErrorLog:
    """Append-only record of non-fatal failures for one run."""

    def __init__(self) -> None:
        self.phase: Phase | None = None
        self._entries: list[ErrorLogEntry] = []
        self._lock = threading.Lock()

    def log(
        self,
        error: BaseException | str,
        code: str,
        context: dict[str, object] | None = None,
        *,
        will_retry: bool = False,
    ) -> None:
        # Logging a failure must never become a failure of its own.
        try:
            entry = ErrorLogEntry(
                code=code,
                message=str(error),
                phase=self.phase,
                context=dict(context or {}),
                timestamp=utc_now(),
                will_retry=will_retry,
            )
            with self._lock:
                self._entries.append(entry)
            logger.warning(
                "import error recorded",
                extra={
                    "code": code,
                    "phase": self.phase.value if self.phase else None,
                    "will_retry": will_retry,
                    "error": entry.message,
                    **{f"ctx_{key}": value for key, value in entry.context.items()},
                },
            )
        except Exception:
            logger.exception("failed to record import error", extra={"code": code})

    def entries(self) -> list[ErrorLogEntry]:
        with self._lock:
            return list(self._entries)

    def get_summary(self) -> ErrorSummary:
        entries = self.entries()
        by_phase = {phase.value: 0 for phase in PHASE_ORDER}
        by_code: Counter[str] = Counter()
        critical = 0
        for entry in entries:
            if entry.phase is not None:
                by_phase[entry.phase.value] += 1
            by_code[entry.code] += 1
            if not entry.will_retry:
                critical += 1

        return ErrorSummary(
            total_errors=len(entries),
            errors_by_phase=by_phase,
            errors_by_code=dict(by_code),
            critical_errors=critical,
            retried_errors=len(entries) - critical,
        )
