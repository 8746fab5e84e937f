from collections.abc import Sequence
import logging

from sqlalchemy.orm import Session, sessionmaker

from mafia_import.batching import BatchProcessor
from mafia_import.cancellation import CancellationToken
from mafia_import.checkpoint import CheckpointStore
from mafia_import.config import Settings
from mafia_import.db_models import utc_now
from mafia_import.error_log import ErrorLog
from mafia_import.errors import (
    INTEGRITY_CHECK_FAILED,
    PHASE_FAILED,
    ImportAlreadyRunningError,
    ImportCancelledError,
    ImportTimeoutError,
)
from mafia_import.integrity import IntegrityChecker
from mafia_import.phase_runner import PhaseRunner, RunContext
from mafia_import.phases import IMPORT_PHASES
from mafia_import.rate_limiter import RateLimiter
from mafia_import.repository import build_repositories
from mafia_import.retry import RetryManager
from mafia_import.run_lock import RunLock
from mafia_import.run_store import create_run, finish_run, is_cancel_requested, update_sync_status
from mafia_import.schemas import (
    TERMINAL_STATUSES,
    Checkpoint,
    IntegrityReport,
    Phase,
    PhaseResult,
    RunResult,
    RunStatus,
)
from mafia_import.skipped_pages import SkippedPages
from mafia_import.sources import ImportSource
from mafia_import.timeouts import TimeoutManager, ensure_within_budget
from mafia_import.validation import ValidationTracker


logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Import cancelled by user"


def calculate_progress(phase_index: int, total_phases: int) -> int:
    if total_phases <= 0:
        return 0
    return int(phase_index * 100 // total_phases)


class ImportOrchestrator:
    """Drives one import run through the fixed phase sequence.

    This is the only place that decides a run's terminal status: phase
    runners raise cancellation, timeout and fatal errors, and ``execute``
    turns them into CANCELLED or FAILED.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        source: ImportSource,
        *,
        run_lock: RunLock | None = None,
        cancel_token: CancellationToken | None = None,
        phases: Sequence[type[PhaseRunner]] = IMPORT_PHASES,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.source = source
        self.phases = tuple(phases)
        self.run_lock = run_lock or RunLock(session_factory)
        self.cancel_token = cancel_token or CancellationToken(
            poll=self._cancel_requested_elsewhere,
            poll_interval_seconds=settings.cancel_poll_seconds,
        )

        self.checkpoints = CheckpointStore(session_factory)
        self.validation = ValidationTracker(settings.validation_threshold)
        self.errors = ErrorLog()
        self.skipped_pages = SkippedPages()
        self.timeout_manager = TimeoutManager(settings.max_run_seconds)
        self.rate_limiter = RateLimiter(settings.rate_limit_delay_seconds)
        self.retry_manager = RetryManager(
            settings.max_fetch_attempts,
            base_delay_seconds=settings.retry_base_delay_seconds,
            full_outage_wait_seconds=settings.full_outage_wait_seconds,
        )
        self.batch_processor: BatchProcessor = BatchProcessor(settings.batch_size)
        self.integrity_checker = IntegrityChecker(session_factory)
        self.repos = build_repositories(session_factory)

        self.run_id: int | None = None
        self.trigger_source = "manual"
        self.status = RunStatus.PENDING
        self.current_phase: Phase | None = None
        self.phase_results: list[PhaseResult] = []
        self.integrity_report: IntegrityReport | None = None
        self.error: str | None = None
        self._resume_from: Checkpoint | None = None
        self._lease: int | None = None
        self._active_runner: PhaseRunner | None = None

    @property
    def records_processed(self) -> int:
        finished = sum(result.persisted for result in self.phase_results)
        # Rows written by an interrupted phase are already in the store.
        if self._active_runner is not None:
            finished += self._active_runner.persisted
        return finished

    def start(self, *, trigger_source: str = "manual") -> int:
        lease = self.run_lock.acquire()
        if lease is None:
            raise ImportAlreadyRunningError()
        self._lease = lease

        try:
            with self.session_factory() as db:
                run = create_run(db, trigger_source=trigger_source)
                update_sync_status(db, progress=0, current_operation="Starting import", last_error=None)
        except Exception:
            self.release_lock()
            raise

        self.run_id = run.id
        self.trigger_source = trigger_source
        self.status = RunStatus.RUNNING
        self.timeout_manager.start()
        logger.info("import started", extra={"run_id": self.run_id, "trigger_source": trigger_source})
        return run.id

    def run(self, *, trigger_source: str = "manual", resume: bool = True) -> RunResult:
        self.start(trigger_source=trigger_source)
        return self.execute(resume=resume)

    def execute(self, *, resume: bool = True) -> RunResult:
        if self.run_id is None:
            raise RuntimeError("start() must be called before execute()")

        try:
            self._execute_phases(resume)
            self.complete(success=True)
        except ImportCancelledError:
            self.cancel()
        except ImportTimeoutError as exc:
            logger.error("import timed out", extra={"run_id": self.run_id, "error": str(exc)})
            self.errors.log(exc, PHASE_FAILED, {"operation": "timeout"})
            self.complete(success=False, error=str(exc))
        except Exception as exc:
            logger.exception("import failed", extra={"run_id": self.run_id})
            self.errors.log(exc, PHASE_FAILED, {"operation": "execute_phase"})
            self.complete(success=False, error=str(exc))
        finally:
            self.release_lock()

        return self.result()

    def _execute_phases(self, resume: bool) -> None:
        if resume:
            self._resume_from = self.load_checkpoint()
        else:
            self.checkpoints.clear()

        phase_order = [runner.phase for runner in self.phases]
        start_index = 0
        if self._resume_from is not None and self._resume_from.current_phase in phase_order:
            start_index = phase_order.index(self._resume_from.current_phase)
            logger.info(
                "resuming import from checkpoint",
                extra={
                    "run_id": self.run_id,
                    "phase": self._resume_from.current_phase.value,
                    "batch_index": self._resume_from.current_batch_index,
                },
            )

        ctx = self.build_context()
        for index, runner_cls in enumerate(self.phases):
            if index < start_index:
                continue
            self.check_cancellation()
            self.check_timeout()
            self.set_phase(runner_cls.phase, index=index)
            self._active_runner = runner_cls(ctx)
            result = self._active_runner.execute()
            self.phase_results.append(result)
            self._active_runner = None

    def build_context(self, *, checkpointing: bool = True) -> RunContext:
        return RunContext(
            settings=self.settings,
            repos=self.repos,
            source=self.source,
            cancel_token=self.cancel_token,
            rate_limiter=self.rate_limiter,
            retry_manager=self.retry_manager,
            timeout_manager=self.timeout_manager,
            batch_processor=self.batch_processor,
            checkpoints=self.checkpoints,
            validation=self.validation,
            errors=self.errors,
            skipped_pages=self.skipped_pages,
            resume_from=self._resume_from,
            checkpointing=checkpointing,
        )

    def load_checkpoint(self) -> Checkpoint | None:
        return self.checkpoints.load()

    def set_phase(self, phase: Phase, *, index: int | None = None) -> None:
        resuming_here = self._resume_from is not None and self._resume_from.current_phase == phase
        if self.current_phase != phase and not resuming_here:
            # Processed keys are tracked per phase.
            self.checkpoints.reset_processed()

        self.current_phase = phase
        self.errors.phase = phase
        if index is None:
            index = [runner.phase for runner in self.phases].index(phase)

        with self.session_factory() as db:
            update_sync_status(
                db,
                progress=calculate_progress(index, len(self.phases)),
                current_operation=f"Importing {phase.value}",
            )
        logger.info("phase selected", extra={"run_id": self.run_id, "phase": phase.value, "index": index})

    def check_timeout(self) -> None:
        ensure_within_budget(self.timeout_manager)

    def check_cancellation(self) -> None:
        self.cancel_token.raise_if_cancelled()

    def request_cancel(self) -> None:
        self.cancel_token.cancel()

    def complete(self, *, success: bool, error: str | None = None) -> None:
        if self.status in TERMINAL_STATUSES:
            return

        if success:
            try:
                self.integrity_report = self.integrity_checker.get_integrity_summary()
            except Exception as exc:
                # Integrity is informational; a crash here must not fail the import.
                logger.exception("integrity check failed to run", extra={"run_id": self.run_id})
                self.errors.log(exc, INTEGRITY_CHECK_FAILED, {"operation": "integrity_check"})

        validation = self.validation.get_summary()
        if not validation.meets_threshold:
            logger.warning(
                "validation rate below threshold",
                extra={
                    "run_id": self.run_id,
                    "validation_rate": validation.metrics.validation_rate,
                    "threshold": validation.threshold,
                },
            )

        self.status = RunStatus.COMPLETED if success else RunStatus.FAILED
        self.error = None if success else error or "Import failed"
        self._finish(self._error_payload(success, validation.meets_threshold))

        if success:
            self.checkpoints.clear()
        logger.info(
            "import finished",
            extra={
                "run_id": self.run_id,
                "status": self.status.value,
                "records_processed": self.records_processed,
                "validation_rate": validation.metrics.validation_rate,
            },
        )

    def cancel(self) -> None:
        if self.run_id is None or self.status in TERMINAL_STATUSES:
            return

        if self.current_phase is not None:
            last = self.checkpoints.last_saved
            same_phase = last is not None and last.current_phase == self.current_phase
            self.checkpoints.save(
                Checkpoint(
                    current_phase=self.current_phase,
                    current_batch_index=last.current_batch_index if same_phase else -1,
                    last_processed_id=last.last_processed_id if same_phase else None,
                    processed_ids=self.checkpoints.processed_ids(),
                    progress_percent=last.progress_percent if same_phase else 0,
                )
            )

        self.status = RunStatus.CANCELLED
        self.error = CANCELLED_MESSAGE
        self._finish(
            {
                "message": CANCELLED_MESSAGE,
                "errorSummary": self.errors.get_summary().to_payload(),
                "skippedPages": self.skipped_pages.to_payload(),
            }
        )
        logger.info(
            "import cancelled",
            extra={"run_id": self.run_id, "phase": self.current_phase.value if self.current_phase else None},
        )

    def result(self) -> RunResult:
        return RunResult(
            run_id=self.run_id,
            trigger_source=self.trigger_source,
            status=self.status.value,
            records_processed=self.records_processed,
            validation_rate=self.validation.get_metrics().validation_rate,
            skipped_pages=self.skipped_pages.to_payload(),
            error=self.error,
        )

    def _error_payload(self, success: bool, meets_threshold: bool) -> dict[str, object] | None:
        error_summary = self.errors.get_summary()
        skipped = self.skipped_pages.to_payload()
        if not success:
            return {
                "message": self.error,
                "errorSummary": error_summary.to_payload(),
                "skippedPages": skipped,
            }

        integrity_failed = self.integrity_report is not None and not self.integrity_report.passed
        if not (integrity_failed or error_summary.total_errors or skipped or not meets_threshold):
            return None

        metrics = self.validation.get_metrics()
        return {
            "message": (
                "Import completed with integrity issues"
                if integrity_failed
                else "Import completed with non-critical errors"
            ),
            "errorSummary": error_summary.to_payload(),
            "integrity": self.integrity_report.to_payload() if self.integrity_report else None,
            "validation": {
                "validationRate": metrics.validation_rate,
                "validRecords": metrics.valid_records,
                "invalidRecords": metrics.invalid_records,
                "duplicatesSkipped": metrics.duplicates_skipped,
                "meetsThreshold": meets_threshold,
            },
            "skippedPages": skipped,
        }

    def _finish(self, payload: dict[str, object] | None) -> None:
        metrics = self.validation.get_metrics()
        with self.session_factory() as db:
            finish_run(
                db,
                self.run_id,
                status=self.status,
                records_processed=self.records_processed,
                errors=payload,
            )
            fields: dict[str, object] = {
                "current_operation": None,
                "last_error": self.error,
                "validation_rate": metrics.validation_rate,
                "total_records_processed": metrics.total_fetched,
                "valid_records": metrics.valid_records,
                "invalid_records": metrics.invalid_records,
            }
            if self.status == RunStatus.COMPLETED:
                fields["progress"] = 100
                fields["last_sync_time"] = utc_now()
            update_sync_status(db, **fields)
        self.release_lock()

    def release_lock(self) -> None:
        lease, self._lease = self._lease, None
        self.run_lock.release(lease)

    def _cancel_requested_elsewhere(self) -> bool:
        with self.session_factory() as db:
            return is_cancel_requested(db)
