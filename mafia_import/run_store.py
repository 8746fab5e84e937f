from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mafia_import.db_models import SINGLETON_ID, ImportRun, SyncStatus, utc_now
from mafia_import.schemas import ImportStatus, RunStatus, RunSummary


def get_sync_status(db: Session) -> SyncStatus:
    status = db.get(SyncStatus, SINGLETON_ID)
    if status is not None:
        return status

    status = SyncStatus(id=SINGLETON_ID, is_running=False, cancel_requested=False)
    db.add(status)
    try:
        db.commit()
    except IntegrityError:
        # Another process created the singleton first.
        db.rollback()
        return db.get(SyncStatus, SINGLETON_ID)
    return status


def try_claim_running(db: Session) -> bool:
    get_sync_status(db)
    result = db.execute(
        update(SyncStatus)
        .where(SyncStatus.id == SINGLETON_ID, SyncStatus.is_running.is_(False))
        .values(is_running=True, cancel_requested=False, last_error=None, updated_at=utc_now())
    )
    db.commit()
    return result.rowcount == 1


def release_running(db: Session) -> None:
    db.execute(
        update(SyncStatus)
        .where(SyncStatus.id == SINGLETON_ID)
        .values(is_running=False, cancel_requested=False, updated_at=utc_now())
    )
    db.commit()


def request_cancel(db: Session) -> bool:
    result = db.execute(
        update(SyncStatus)
        .where(SyncStatus.id == SINGLETON_ID, SyncStatus.is_running.is_(True))
        .values(cancel_requested=True, updated_at=utc_now())
    )
    db.commit()
    return result.rowcount == 1


def is_cancel_requested(db: Session) -> bool:
    stmt = select(SyncStatus.cancel_requested).where(SyncStatus.id == SINGLETON_ID)
    return bool(db.execute(stmt).scalar_one_or_none())


def update_sync_status(db: Session, **fields: object) -> None:
    status = get_sync_status(db)
    for key, value in fields.items():
        setattr(status, key, value)
    db.commit()


def create_run(db: Session, *, trigger_source: str, run_type: str = "FULL") -> ImportRun:
    run = ImportRun(
        run_type=run_type,
        trigger_source=trigger_source,
        status=RunStatus.RUNNING.value,
        started_at=utc_now(),
        records_processed=0,
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    return run


def get_run(db: Session, run_id: int) -> ImportRun | None:
    return db.get(ImportRun, run_id)


def finish_run(
    db: Session,
    run_id: int,
    *,
    status: RunStatus,
    records_processed: int,
    errors: dict[str, object] | None,
) -> None:
    run = db.get(ImportRun, run_id)
    if run is None:
        raise LookupError(f"import run {run_id} not found")
    run.status = status.value
    run.records_processed = records_processed
    run.errors = errors
    run.completed_at = utc_now()
    db.commit()


def list_runs(db: Session, *, limit: int = 10) -> list[ImportRun]:
    stmt = select(ImportRun).order_by(ImportRun.started_at.desc(), ImportRun.id.desc()).limit(limit)
    return list(db.execute(stmt).scalars().all())


def to_summary(run: ImportRun) -> RunSummary:
    return RunSummary(
        run_id=run.id,
        run_type=run.run_type,
        trigger_source=run.trigger_source,
        status=run.status,
        started_at=run.started_at,
        completed_at=run.completed_at,
        records_processed=run.records_processed,
        errors=run.errors,
    )


def read_import_status(db: Session) -> ImportStatus:
    status = get_sync_status(db)
    latest = list_runs(db, limit=1)
    return ImportStatus(
        is_running=status.is_running,
        progress=status.progress,
        current_operation=status.current_operation,
        last_error=status.last_error,
        last_sync_time=status.last_sync_time,
        validation_rate=status.validation_rate,
        total_records_processed=status.total_records_processed,
        latest_run=to_summary(latest[0]) if latest else None,
    )


def merge_page_retry(
    db: Session,
    run_id: int,
    *,
    records_added: int,
    skipped_pages: dict[str, list[int]],
    retry_entry: dict[str, object],
) -> ImportRun:
    run = db.get(ImportRun, run_id)
    if run is None:
        raise LookupError(f"import run {run_id} not found")

    # Reassign the JSON payload so the change is flushed.
    payload = dict(run.errors or {})
    payload["skippedPages"] = skipped_pages
    payload["pageRetries"] = [*payload.get("pageRetries", []), retry_entry]
    run.errors = payload
    run.records_processed += records_added
    db.commit()
    return run
