"""Exception taxonomy for the import engine.

Record and page level failures are handled inside the phase runners and
never surface here; everything below reaches the orchestrator, which is the
only place that decides a run's terminal status.
"""

# Error codes attached to ErrorLog entries.
PAGE_FETCH_FAILED = "PAGE_FETCH_FAILED"
DETAIL_FETCH_FAILED = "DETAIL_FETCH_FAILED"
PERSIST_FAILED = "PERSIST_FAILED"
LINK_FAILED = "LINK_FAILED"
STATS_FAILED = "STATS_FAILED"
PAGE_RETRY_FAILED = "PAGE_RETRY_FAILED"
PHASE_FAILED = "PHASE_FAILED"
INTEGRITY_CHECK_FAILED = "INTEGRITY_CHECK_FAILED"


class ImportEngineError(Exception):
    pass


class ImportAlreadyRunningError(ImportEngineError):
    def __init__(self, message: str = "Another import is already running") -> None:
        super().__init__(message)


class ImportCancelledError(ImportEngineError):
    def __init__(self, message: str = "Import cancelled by user") -> None:
        super().__init__(message)


class ImportTimeoutError(ImportEngineError):
    pass


class PhaseInitializationError(ImportEngineError):
    pass


class RetryExhaustedError(ImportEngineError):
    def __init__(self, message: str, *, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class TimeoutManagerNotStartedError(ImportEngineError):
    def __init__(self) -> None:
        super().__init__("TimeoutManager not started")


class RecordValidationError(ValueError):
    pass


class NoSkippedPagesError(ImportEngineError):
    pass
