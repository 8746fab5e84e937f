from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Phase(str, Enum):
    CLUBS = "CLUBS"
    PLAYERS = "PLAYERS"
    CLUB_MEMBERS = "CLUB_MEMBERS"
    PLAYER_YEAR_STATS = "PLAYER_YEAR_STATS"
    TOURNAMENTS = "TOURNAMENTS"
    TOURNAMENT_CHIEF_JUDGE = "TOURNAMENT_CHIEF_JUDGE"
    PLAYER_TOURNAMENT_HISTORY = "PLAYER_TOURNAMENT_HISTORY"
    JUDGES = "JUDGES"
    GAMES = "GAMES"
    STATISTICS = "STATISTICS"


PHASE_ORDER: tuple[Phase, ...] = tuple(Phase)


class RunStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})


class PhaseState(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    FETCHING = "FETCHING"
    VALIDATING = "VALIDATING"
    PERSISTING = "PERSISTING"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass(frozen=True)
class Checkpoint:
    current_phase: Phase
    current_batch_index: int
    last_processed_id: str | None
    processed_ids: tuple[str, ...]
    progress_percent: int


@dataclass(frozen=True)
class InvalidRecord:
    entity: str
    reason: str
    context: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class ValidationMetrics:
    total_fetched: int
    valid_records: int
    invalid_records: int
    duplicates_skipped: int
    validation_rate: float


@dataclass(frozen=True)
class ValidationSummary:
    metrics: ValidationMetrics
    threshold: float
    meets_threshold: bool
    error_count: int


@dataclass(frozen=True)
class ErrorLogEntry:
    code: str
    message: str
    phase: Phase | None
    context: dict[str, object]
    timestamp: datetime
    will_retry: bool


@dataclass(frozen=True)
class ErrorSummary:
    total_errors: int
    errors_by_phase: dict[str, int]
    errors_by_code: dict[str, int]
    critical_errors: int
    retried_errors: int

    def to_payload(self) -> dict[str, object]:
        return {
            "totalErrors": self.total_errors,
            "errorsByPhase": dict(self.errors_by_phase),
            "errorsByCode": dict(self.errors_by_code),
            "criticalErrors": self.critical_errors,
            "retriedErrors": self.retried_errors,
        }


@dataclass(frozen=True)
class IntegrityCheckResult:
    name: str
    passed: bool
    total_checked: int
    errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class IntegrityReport:
    status: str
    total_checks: int
    passed_checks: int
    failed_checks: int
    message: str
    checks: tuple[IntegrityCheckResult, ...]
    issues: tuple[str, ...]

    @property
    def passed(self) -> bool:
        return self.status == "PASS"

    def to_payload(self) -> dict[str, object]:
        return {
            "status": self.status,
            "totalChecks": self.total_checks,
            "passedChecks": self.passed_checks,
            "failedChecks": self.failed_checks,
            "message": self.message,
            "issues": list(self.issues),
        }


@dataclass(frozen=True)
class PhaseResult:
    phase: Phase
    state: PhaseState
    fetched: int
    persisted: int
    invalid: int
    duplicates: int
    skipped_pages: tuple[int, ...] = ()


@dataclass(frozen=True)
class RunResult:
    run_id: int
    trigger_source: str
    status: str
    records_processed: int
    validation_rate: float
    skipped_pages: dict[str, list[int]]
    error: str | None


@dataclass(frozen=True)
class RunSummary:
    run_id: int
    run_type: str
    trigger_source: str
    status: str
    started_at: datetime
    completed_at: datetime | None
    records_processed: int
    errors: dict[str, object] | None


@dataclass(frozen=True)
class ImportStatus:
    is_running: bool
    progress: int | None
    current_operation: str | None
    last_error: str | None
    last_sync_time: datetime | None
    validation_rate: float | None
    total_records_processed: int | None
    latest_run: RunSummary | None


@dataclass(frozen=True)
class PageRetryResult:
    run_id: int
    phase: Phase
    requested_pages: tuple[int, ...]
    recovered_pages: tuple[int, ...]
    still_skipped: tuple[int, ...]
    records_added: int
