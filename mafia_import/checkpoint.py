import logging
import threading

from sqlalchemy import delete
from sqlalchemy.orm import Session, sessionmaker

from mafia_import.db_models import SINGLETON_ID, ImportCheckpointRow, utc_now
from mafia_import.run_store import update_sync_status
from mafia_import.schemas import Checkpoint, Phase


logger = logging.getLogger(__name__)


def checkpoint_progress(batch_index: int, total_batches: int) -> int:
    if total_batches <= 0:
        return 100
    # Round half up: batch 2 of 3 reports 67.
    return min(100, int((batch_index + 1) * 100 / total_batches + 0.5))


class CheckpointStore:
    """Durable resume point plus the in-memory set of already persisted keys."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory
        self._processed: set[str] = set()
        self._lock = threading.Lock()
        self.last_saved: Checkpoint | None = None

    def save(self, checkpoint: Checkpoint) -> None:
        with self.session_factory() as db:
            row = db.get(ImportCheckpointRow, SINGLETON_ID)
            if row is None:
                row = ImportCheckpointRow(id=SINGLETON_ID)
                db.add(row)
            row.current_phase = checkpoint.current_phase.value
            row.current_batch = checkpoint.current_batch_index
            row.last_processed_id = checkpoint.last_processed_id
            row.processed_ids = list(checkpoint.processed_ids)
            row.progress = checkpoint.progress_percent
            row.updated_at = utc_now()
            db.commit()
            self.last_saved = checkpoint

            update_sync_status(
                db,
                current_operation=(
                    f"Importing {checkpoint.current_phase.value} (batch {checkpoint.current_batch_index + 1})"
                ),
            )

        logger.debug(
            "checkpoint saved",
            extra={
                "phase": checkpoint.current_phase.value,
                "batch_index": checkpoint.current_batch_index,
                "processed": len(checkpoint.processed_ids),
            },
        )

    def load(self) -> Checkpoint | None:
        with self.session_factory() as db:
            row = db.get(ImportCheckpointRow, SINGLETON_ID)
            if row is None:
                return None
            checkpoint = Checkpoint(
                current_phase=Phase(row.current_phase),
                current_batch_index=row.current_batch,
                last_processed_id=row.last_processed_id,
                processed_ids=tuple(row.processed_ids or ()),
                progress_percent=row.progress,
            )

        with self._lock:
            self._processed = set(checkpoint.processed_ids)
        self.last_saved = checkpoint
        return checkpoint

    def clear(self) -> None:
        with self.session_factory() as db:
            db.execute(delete(ImportCheckpointRow).where(ImportCheckpointRow.id == SINGLETON_ID))
            db.commit()
        self.reset_processed()
        self.last_saved = None

    def was_processed(self, key: str) -> bool:
        with self._lock:
            return key in self._processed

    def mark_processed(self, key: str) -> None:
        with self._lock:
            self._processed.add(key)

    def processed_ids(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._processed))

    def reset_processed(self) -> None:
        with self._lock:
            self._processed = set()
