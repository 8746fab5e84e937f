"""Generic phase runners shared by every concrete import phase.

A phase walks ``NOT_STARTED -> FETCHING -> VALIDATING -> PERSISTING`` and
ends in ``DONE`` or ``FAILED``. Page and record failures are logged and
counted here; cancellation, timeouts and phase initialisation failures
propagate to the orchestrator.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial
import logging
from typing import Generic, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from mafia_import.batching import BatchProcessor
from mafia_import.cancellation import CancellationToken
from mafia_import.checkpoint import CheckpointStore, checkpoint_progress
from mafia_import.config import Settings
from mafia_import.error_log import ErrorLog
from mafia_import.errors import (
    DETAIL_FETCH_FAILED,
    PAGE_FETCH_FAILED,
    PAGE_RETRY_FAILED,
    PERSIST_FAILED,
    ImportCancelledError,
    ImportTimeoutError,
    PhaseInitializationError,
)
from mafia_import.rate_limiter import RateLimiter
from mafia_import.records import validate_records
from mafia_import.repository import Repositories
from mafia_import.retry import RetryManager
from mafia_import.schemas import Checkpoint, InvalidRecord, Phase, PhaseResult, PhaseState
from mafia_import.skipped_pages import SkippedPages
from mafia_import.sources import ImportSource, RawRecord, SourceSession
from mafia_import.timeouts import TimeoutManager, ensure_within_budget
from mafia_import.validation import ValidationTracker


logger = logging.getLogger(__name__)
T = TypeVar("T")
RecordT = TypeVar("RecordT")
ItemT = TypeVar("ItemT")

# Failures that always end the phase instead of skipping a page or item.
INTERRUPTS = (ImportCancelledError, ImportTimeoutError)


@dataclass
class RunContext:
    settings: Settings
    repos: Repositories
    source: ImportSource
    cancel_token: CancellationToken
    rate_limiter: RateLimiter
    retry_manager: RetryManager
    timeout_manager: TimeoutManager
    batch_processor: BatchProcessor
    checkpoints: CheckpointStore
    validation: ValidationTracker
    errors: ErrorLog
    skipped_pages: SkippedPages
    resume_from: Checkpoint | None = None
    # Off for work outside a run, which must leave the resume point alone.
    checkpointing: bool = True

    def check_cancellation(self) -> None:
        self.cancel_token.raise_if_cancelled()

    def check_timeout(self) -> None:
        ensure_within_budget(self.timeout_manager)

    def check_interrupts(self) -> None:
        self.check_cancellation()
        self.check_timeout()

    def resume_point(self, phase: Phase) -> Checkpoint | None:
        if self.resume_from is not None and self.resume_from.current_phase == phase:
            return self.resume_from
        return None


@dataclass
class ItemOutcome(Generic[RecordT]):
    key: str
    records: list[RecordT] = field(default_factory=list)
    invalid: list[InvalidRecord] = field(default_factory=list)
    fetched: int = 0
    error: Exception | None = None


@dataclass(frozen=True)
class PersistStats:
    written: int
    duplicates: int = 0


class PhaseRunner(ABC):
    phase: Phase
    entity: str
    fetch_error_code = PAGE_FETCH_FAILED

    def __init__(self, ctx: RunContext) -> None:
        self.ctx = ctx
        self.state = PhaseState.NOT_STARTED
        self.fetched = 0
        self.persisted = 0
        self.invalid = 0
        self.duplicates = 0
        self.remaining_skipped: list[int] = []
        self._last_batch_index = -1

    def execute(self) -> PhaseResult:
        self.ctx.check_interrupts()
        resume = self.ctx.resume_point(self.phase)
        if resume is not None:
            # Batch numbering keeps increasing across a resume.
            self._last_batch_index = resume.current_batch_index
            logger.info(
                "resuming phase from checkpoint",
                extra={"phase": self.phase.value, "batch_index": resume.current_batch_index},
            )

        logger.info("phase started", extra={"phase": self.phase.value})
        try:
            self.run()
        except Exception:
            self.state = PhaseState.FAILED
            raise

        self.state = PhaseState.DONE
        result = PhaseResult(
            phase=self.phase,
            state=self.state,
            fetched=self.fetched,
            persisted=self.persisted,
            invalid=self.invalid,
            duplicates=self.duplicates,
            skipped_pages=tuple(self.remaining_skipped),
        )
        logger.info(
            "phase completed",
            extra={
                "phase": self.phase.value,
                "fetched": result.fetched,
                "persisted": result.persisted,
                "invalid": result.invalid,
                "duplicates": result.duplicates,
                "skipped_pages": list(result.skipped_pages),
            },
        )
        return result

    @abstractmethod
    def run(self) -> None:
        ...

    def open_session(self) -> SourceSession:
        try:
            return self.ctx.source.open_session()
        except Exception as exc:
            raise PhaseInitializationError(f"{self.phase.value}: cannot open source session: {exc}") from exc

    def save_checkpoint(self, keys: Sequence[str], progress_percent: int) -> None:
        for key in keys:
            self.ctx.checkpoints.mark_processed(key)
        self._last_batch_index += 1
        if not self.ctx.checkpointing:
            return
        self.ctx.checkpoints.save(
            Checkpoint(
                current_phase=self.phase,
                current_batch_index=self._last_batch_index,
                last_processed_id=keys[-1] if keys else None,
                processed_ids=self.ctx.checkpoints.processed_ids(),
                progress_percent=progress_percent,
            )
        )

    def call_source(self, fn: Callable[[], T], *, context: dict[str, object], full_outage: bool = False) -> T:
        """Rate-limited, retried call to the source; every attempt waits its turn."""

        def attempt() -> T:
            self.ctx.rate_limiter.wait(self.ctx.cancel_token)
            return fn()

        def on_failure(attempt_number: int, exc: Exception, will_retry: bool) -> None:
            if will_retry:
                self.ctx.errors.log(exc, self.fetch_error_code, {**context, "attempt": attempt_number}, will_retry=True)

        return self.ctx.retry_manager.execute(
            attempt,
            cancel_token=self.ctx.cancel_token,
            is_full_outage=full_outage,
            on_attempt_failure=on_failure,
        )

    def record_invalid(self, invalid: Sequence[InvalidRecord]) -> None:
        self.invalid += len(invalid)
        self.ctx.validation.record_invalid_records(list(invalid))

    def record_accepted(self, valid: int, duplicates: int) -> None:
        self.ctx.validation.record_valid(self.entity, valid)
        if duplicates:
            self.duplicates += duplicates
            self.ctx.validation.record_duplicate_skipped(self.entity, duplicates)


class PagedPhaseRunner(PhaseRunner, Generic[RecordT]):
    """Listing phases: walk numbered pages, persisting a batch whenever one has been fetched.

    Records reach the store while the walk is still running, so an
    interrupted walk keeps every batch written before the interruption.
    """

    check_store_duplicates = True

    def __init__(self, ctx: RunContext) -> None:
        super().__init__(ctx)
        self._batches_written = 0

    @abstractmethod
    def parse(self, raw: RawRecord) -> RecordT:
        ...

    @abstractmethod
    def record_key(self, record: RecordT) -> str:
        ...

    @abstractmethod
    def persist(self, records: list[RecordT]) -> int:
        ...

    def page_params(self) -> dict[str, object]:
        return {}

    def run(self) -> None:
        session = self.open_session()
        try:
            skipped = self.fetch_pages(session)

            limit = self.ctx.settings.skipped_page_retry_limit
            if skipped and len(skipped) <= limit:
                logger.info(
                    "retrying skipped pages",
                    extra={"phase": self.phase.value, "pages": skipped},
                )
                _, skipped = self.retry_pages(skipped, session=session)
        finally:
            session.close()

        self.remaining_skipped = sorted(skipped)
        self.ctx.skipped_pages.record(self.phase, skipped)

    def fetch_pages(self, session: SourceSession) -> list[int]:
        """Walk the listing and return the page numbers that were skipped."""
        self.state = PhaseState.FETCHING
        settings = self.ctx.settings
        stop_after_failures = settings.full_outage_threshold + settings.max_consecutive_empty_pages
        flush_at = self.ctx.batch_processor.batch_size

        pending: list[RawRecord] = []
        skipped: list[int] = []
        page_number = 1
        empty_streak = 0
        failure_streak = 0
        while not settings.max_pages or page_number <= settings.max_pages:
            self.ctx.check_interrupts()
            try:
                records = self.fetch_page(
                    session,
                    page_number,
                    full_outage=failure_streak >= settings.full_outage_threshold,
                )
            except INTERRUPTS:
                raise
            except Exception as exc:
                self.ctx.errors.log(
                    exc,
                    PAGE_FETCH_FAILED,
                    {"page": page_number, "entity_type": self.entity, "operation": "fetch_page"},
                )
                skipped.append(page_number)
                failure_streak += 1
                if failure_streak >= stop_after_failures:
                    logger.error(
                        "source unreachable, stopping pagination",
                        extra={"phase": self.phase.value, "page": page_number},
                    )
                    break
                page_number += 1
                continue

            failure_streak = 0
            if records:
                empty_streak = 0
                self.fetched += len(records)
                pending.extend(records)
                if len(pending) >= flush_at:
                    self.ingest(pending, walk_finished=False)
                    pending = []
                    self.state = PhaseState.FETCHING
            else:
                empty_streak += 1
                if empty_streak >= settings.max_consecutive_empty_pages:
                    break
            page_number += 1

        self.ingest(pending)
        return skipped

    def fetch_page(self, session: SourceSession, page_number: int, *, full_outage: bool = False) -> list[RawRecord]:
        return self.call_source(
            lambda: session.fetch_page(self.entity, page_number, self.page_params()),
            context={"page": page_number, "entity_type": self.entity, "operation": "fetch_page"},
            full_outage=full_outage,
        )

    def retry_pages(self, pages: Sequence[int], *, session: SourceSession | None = None) -> tuple[list[int], list[int]]:
        """Fetch the given pages once more and ingest whatever comes back."""
        own_session = session is None
        if own_session:
            session = self.open_session()

        recovered: list[int] = []
        still_skipped: list[int] = []
        raw_records: list[RawRecord] = []
        try:
            self.state = PhaseState.FETCHING
            for page_number in sorted(set(pages)):
                self.ctx.check_interrupts()
                try:
                    records = self.fetch_page(session, page_number)
                except INTERRUPTS:
                    raise
                except Exception as exc:
                    self.ctx.errors.log(
                        exc,
                        PAGE_RETRY_FAILED,
                        {"page": page_number, "entity_type": self.entity, "operation": "retry_page"},
                    )
                    still_skipped.append(page_number)
                    continue
                recovered.append(page_number)
                raw_records.extend(records)
        finally:
            if own_session:
                session.close()

        self.fetched += len(raw_records)
        self.ingest(raw_records)
        logger.info(
            "skipped page retry finished",
            extra={"phase": self.phase.value, "recovered": recovered, "still_skipped": still_skipped},
        )
        return recovered, still_skipped

    def ingest(self, raw_records: list[RawRecord], *, walk_finished: bool = True) -> None:
        self.state = PhaseState.VALIDATING
        valid, invalid = validate_records(raw_records, self.parse, entity=self.entity)
        self.record_invalid(invalid)

        fresh = self.drop_duplicates(valid)
        self.record_accepted(len(fresh), len(valid) - len(fresh))

        self.state = PhaseState.PERSISTING
        self.ctx.batch_processor.process(fresh, partial(self._persist_batch, walk_finished=walk_finished))

    def drop_duplicates(self, records: list[RecordT]) -> list[RecordT]:
        seen: set[str] = set()
        candidates: list[RecordT] = []
        for record in records:
            key = self.record_key(record)
            if key in seen or self.ctx.checkpoints.was_processed(key):
                continue
            seen.add(key)
            candidates.append(record)

        if not self.check_store_duplicates or not candidates:
            return candidates
        existing = self.existing_keys([self.record_key(record) for record in candidates])
        return [record for record in candidates if self.record_key(record) not in existing]

    def existing_keys(self, keys: list[str]) -> set[str]:
        return set()

    def _persist_batch(
        self, batch: list[RecordT], batch_index: int, total_batches: int, *, walk_finished: bool
    ) -> None:
        self.ctx.check_interrupts()
        keys = [self.record_key(record) for record in batch]
        try:
            self.persisted += self.persist(batch)
        except SQLAlchemyError as exc:
            self.ctx.errors.log(
                exc,
                PERSIST_FAILED,
                {"batch_index": batch_index, "entity_type": self.entity, "operation": "persist"},
            )
            keys = []

        if walk_finished:
            progress = checkpoint_progress(batch_index, total_batches)
        else:
            # The listing length is unknown mid-walk, so at least one more batch is assumed.
            progress = checkpoint_progress(self._batches_written, self._batches_written + 2)
        self._batches_written += 1
        self.save_checkpoint(keys, progress)


class ItemPhaseRunner(PhaseRunner, Generic[ItemT, RecordT]):
    """Detail phases: one unit of work per stored parent item, run on a bounded pool.

    Workers only return ``ItemOutcome`` values; shared counters are updated
    on the calling thread after each chunk has joined.
    """

    requires_source = True
    fetch_error_code = DETAIL_FETCH_FAILED
    concurrency: int | None = None

    @abstractmethod
    def load_items(self) -> list[ItemT]:
        ...

    @abstractmethod
    def item_key(self, item: ItemT) -> str:
        ...

    @abstractmethod
    def process_item(self, item: ItemT, session: SourceSession | None) -> ItemOutcome[RecordT]:
        ...

    @abstractmethod
    def persist(self, outcomes: list[ItemOutcome[RecordT]]) -> PersistStats:
        ...

    def run(self) -> None:
        if self.requires_source:
            # Fail the phase early if the source cannot be opened at all.
            self.open_session().close()

        self.state = PhaseState.FETCHING
        items = self.load_items()
        pending = [item for item in items if not self.ctx.checkpoints.was_processed(self.item_key(item))]
        if len(pending) < len(items):
            logger.info(
                "skipping items processed before resume",
                extra={"phase": self.phase.value, "skipped": len(items) - len(pending)},
            )

        workers = max(1, self.concurrency or self.ctx.settings.parallel_concurrency)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=self.phase.value.lower()) as pool:
            self._pool = pool
            self._workers = workers
            self.ctx.batch_processor.process(pending, self._process_batch)

    def fetch_detail(self, session: SourceSession, key: str, *, entity: str | None = None) -> list[RawRecord]:
        entity = entity or self.entity
        return self.call_source(
            lambda: session.fetch_detail(entity, key, {}),
            context={"entity_id": key, "entity_type": entity, "operation": "fetch_detail"},
        )

    def _process_batch(self, batch: list[ItemT], batch_index: int, total_batches: int) -> None:
        outcomes: list[ItemOutcome[RecordT]] = []
        for start in range(0, len(batch), self._workers):
            self.ctx.check_interrupts()
            self.state = PhaseState.FETCHING
            chunk = batch[start : start + self._workers]
            futures = [self._pool.submit(self._run_item, item) for item in chunk]
            outcomes.extend(future.result() for future in futures)

        self.state = PhaseState.VALIDATING
        succeeded: list[ItemOutcome[RecordT]] = []
        for outcome in outcomes:
            self.fetched += outcome.fetched
            if outcome.error is not None:
                context = {"batch_index": batch_index, "entity_id": outcome.key, "entity_type": self.entity}
                self.ctx.errors.log(outcome.error, self.fetch_error_code, context)
                self.record_invalid([InvalidRecord(self.entity, str(outcome.error), context)])
                continue
            self.record_invalid(outcome.invalid)
            succeeded.append(outcome)

        self.state = PhaseState.PERSISTING
        keys = [outcome.key for outcome in succeeded]
        valid = sum(len(outcome.records) for outcome in succeeded)
        try:
            stats = self.persist(succeeded)
        except SQLAlchemyError as exc:
            self.ctx.errors.log(
                exc,
                PERSIST_FAILED,
                {"batch_index": batch_index, "entity_type": self.entity, "operation": "persist"},
            )
            keys = []
        else:
            self.persisted += stats.written
            self.record_accepted(max(0, valid - stats.duplicates), stats.duplicates)

        self.save_checkpoint(keys, checkpoint_progress(batch_index, total_batches))

    def _run_item(self, item: ItemT) -> ItemOutcome[RecordT]:
        key = self.item_key(item)
        session: SourceSession | None = None
        try:
            if self.requires_source:
                session = self.ctx.source.open_session()
            return self.process_item(item, session)
        except INTERRUPTS:
            raise
        except Exception as exc:
            return ItemOutcome(key=key, error=exc)
        finally:
            if session is not None:
                session.close()

    def parse_detail(
        self,
        key: str,
        raw_records: list[RawRecord],
        parse: Callable[[RawRecord], RecordT],
    ) -> ItemOutcome[RecordT]:
        valid, invalid = validate_records(raw_records, parse, entity=self.entity, context={"parent_id": key})
        return ItemOutcome(key=key, records=valid, invalid=invalid, fetched=len(raw_records))
