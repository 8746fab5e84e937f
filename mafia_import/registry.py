from collections.abc import Sequence
import logging
import threading

from sqlalchemy.orm import Session, sessionmaker

from mafia_import.config import Settings
from mafia_import.db_models import utc_now
from mafia_import.errors import ImportAlreadyRunningError, NoSkippedPagesError
from mafia_import.orchestrator import ImportOrchestrator
from mafia_import.phases import PAGED_PHASES
from mafia_import.run_lock import RunLock
from mafia_import.run_store import (
    get_run,
    list_runs,
    merge_page_retry,
    read_import_status,
    request_cancel,
    to_summary,
)
from mafia_import.schemas import ImportStatus, PageRetryResult, Phase, RunResult, RunStatus, RunSummary
from mafia_import.skipped_pages import SkippedPages
from mafia_import.sources import ImportSource


logger = logging.getLogger(__name__)


class RunRegistry:
    """Control surface for import runs in this process.

    Holds the one active orchestrator; status and history come from the
    database so they also reflect runs started by other processes.
    """

    def __init__(self, settings: Settings, session_factory: sessionmaker[Session], source: ImportSource) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.source = source
        self.run_lock = RunLock(session_factory)
        self._active: ImportOrchestrator | None = None
        self._thread: threading.Thread | None = None
        self._guard = threading.Lock()

    @property
    def active(self) -> ImportOrchestrator | None:
        return self._active

    def start(self, *, trigger_source: str = "manual", resume: bool = True, background: bool = True) -> int:
        with self._guard:
            orchestrator = ImportOrchestrator(
                self.settings,
                self.session_factory,
                self.source,
                run_lock=self.run_lock,
            )
            run_id = orchestrator.start(trigger_source=trigger_source)
            self._active = orchestrator

        if not background:
            orchestrator.execute(resume=resume)
            return run_id

        thread = threading.Thread(
            target=orchestrator.execute,
            kwargs={"resume": resume},
            name=f"import-run-{run_id}",
            daemon=True,
        )
        self._thread = thread
        thread.start()
        return run_id

    def run(self, *, trigger_source: str = "manual", resume: bool = True) -> RunResult:
        self.start(trigger_source=trigger_source, resume=resume, background=False)
        return self._active.result()

    def wait(self, timeout: float | None = None) -> RunResult | None:
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
            if thread.is_alive():
                return None
        return self._active.result() if self._active else None

    def cancel(self) -> bool:
        active = self._active
        if active is not None and active.status == RunStatus.RUNNING:
            active.request_cancel()
            return True
        # The running import may belong to another process.
        with self.session_factory() as db:
            return request_cancel(db)

    def get_status(self) -> ImportStatus:
        with self.session_factory() as db:
            return read_import_status(db)

    def get_history(self, limit: int = 10) -> list[RunSummary]:
        with self.session_factory() as db:
            return [to_summary(run) for run in list_runs(db, limit=limit)]

    def retry_skipped_pages(self, run_id: int, phase: Phase, pages: Sequence[int] | None = None) -> PageRetryResult:
        runner_cls = PAGED_PHASES.get(phase)
        if runner_cls is None:
            raise ValueError(f"phase {phase.value} is not paginated")

        with self.session_factory() as db:
            run = get_run(db, run_id)
            if run is None:
                raise LookupError(f"import run {run_id} not found")
            skipped = SkippedPages.from_payload((run.errors or {}).get("skippedPages"))

        requested = sorted(set(pages)) if pages else skipped.pages_for(phase)
        if not requested:
            raise NoSkippedPagesError(f"run {run_id} has no skipped pages for {phase.value}")

        lease = self.run_lock.acquire()
        if lease is None:
            raise ImportAlreadyRunningError()
        try:
            orchestrator = ImportOrchestrator(
                self.settings,
                self.session_factory,
                self.source,
                run_lock=self.run_lock,
            )
            orchestrator.errors.phase = phase
            orchestrator.timeout_manager.start()
            runner = runner_cls(orchestrator.build_context(checkpointing=False))
            recovered, still_skipped = runner.retry_pages(requested)

            skipped.discard(phase, recovered)
            metrics = orchestrator.validation.get_metrics()
            with self.session_factory() as db:
                merge_page_retry(
                    db,
                    run_id,
                    records_added=runner.persisted,
                    skipped_pages=skipped.to_payload(),
                    retry_entry={
                        "phase": phase.value,
                        "retriedAt": utc_now().isoformat(),
                        "recoveredPages": recovered,
                        "stillSkipped": still_skipped,
                        "recordsAdded": runner.persisted,
                        "duplicatesSkipped": metrics.duplicates_skipped,
                        "invalidRecords": metrics.invalid_records,
                    },
                )
        finally:
            self.run_lock.release(lease)

        logger.info(
            "skipped pages retried",
            extra={
                "run_id": run_id,
                "phase": phase.value,
                "recovered": recovered,
                "still_skipped": still_skipped,
                "records_added": runner.persisted,
            },
        )
        return PageRetryResult(
            run_id=run_id,
            phase=phase,
            requested_pages=tuple(requested),
            recovered_pages=tuple(recovered),
            still_skipped=tuple(still_skipped),
            records_added=runner.persisted,
        )
