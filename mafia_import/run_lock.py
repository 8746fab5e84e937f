import itertools
import logging
import threading

from sqlalchemy.orm import Session, sessionmaker

from mafia_import.run_store import release_running, try_claim_running


logger = logging.getLogger(__name__)


class RunLock:
    """At most one running import per database.

    The in-process lock covers threads of this process; the compare-and-set
    on the sync status row covers other processes sharing the database.
    ``acquire`` hands out a lease and only the current lease can release, so
    a finished run can never drop a lock that a newer run now holds.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory
        self._local = threading.Lock()
        self._leases = itertools.count(1)
        self._lease: int | None = None

    @property
    def held(self) -> bool:
        return self._lease is not None

    def acquire(self) -> int | None:
        if not self._local.acquire(blocking=False):
            return None

        try:
            with self.session_factory() as db:
                claimed = try_claim_running(db)
        except Exception:
            self._local.release()
            raise

        if not claimed:
            self._local.release()
            logger.info("run lock held elsewhere")
            return None

        self._lease = next(self._leases)
        return self._lease

    def release(self, lease: int | None) -> bool:
        if lease is None or lease != self._lease:
            return False
        with self.session_factory() as db:
            release_running(db)
        self._lease = None
        self._local.release()
        return True

    def force_release(self) -> None:
        """Clear a lock left behind by a crashed process."""
        with self.session_factory() as db:
            release_running(db)
        logger.warning("run lock force-released")
