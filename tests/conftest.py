from collections import defaultdict
from collections.abc import Callable, Generator
import json
from pathlib import Path
import threading

import pytest
from sqlalchemy.orm import Session, sessionmaker

from mafia_import.config import Settings
from mafia_import.database import build_session_factory
from mafia_import.registry import RunRegistry


class FakeSession:
    def __init__(self, source: "FakeSource") -> None:
        self.source = source
        self.closed = False

    def fetch_page(self, entity: str, page_number: int, params: dict[str, object] | None = None) -> list[dict]:
        return self.source.serve(("page", entity, page_number), self.source.pages[entity].get(page_number, []))

    def fetch_detail(self, entity: str, key: str, params: dict[str, object] | None = None) -> list[dict]:
        return self.source.serve(("detail", entity, key), self.source.details[entity].get(key, []))

    def close(self) -> None:
        self.closed = True


class FakeSource:
    """In-memory source with programmable failures and call hooks."""

    def __init__(self) -> None:
        self.pages: dict[str, dict[int, list[dict]]] = defaultdict(dict)
        self.details: dict[str, dict[str, list[dict]]] = defaultdict(dict)
        self.failures: dict[tuple, Exception] = {}
        self.hooks: dict[tuple, Callable[[], None]] = {}
        self.calls: list[tuple] = []
        self.sessions: list[FakeSession] = []
        self._lock = threading.Lock()

    def add_pages(self, entity: str, records: list[dict], *, per_page: int) -> None:
        for start in range(0, len(records), per_page):
            self.pages[entity][start // per_page + 1] = records[start : start + per_page]

    def add_detail(self, entity: str, key: str, records: list[dict]) -> None:
        self.details[entity][key] = records

    def fail(self, call: tuple, error: Exception) -> None:
        self.failures[call] = error

    def heal(self, call: tuple) -> None:
        self.failures.pop(call, None)

    def on_call(self, call: tuple, hook: Callable[[], None]) -> None:
        self.hooks[call] = hook

    def open_session(self) -> FakeSession:
        session = FakeSession(self)
        with self._lock:
            self.sessions.append(session)
        return session

    def serve(self, call: tuple, records: list[dict]) -> list[dict]:
        with self._lock:
            self.calls.append(call)
        hook = self.hooks.get(call)
        if hook is not None:
            hook()
        error = self.failures.get(call)
        if error is not None:
            raise error
        return [dict(record) for record in records]


def make_players(count: int, *, prefix: str = "p") -> list[dict]:
    return [{"id": f"{prefix}{index}", "name": f"Player {index}", "elo": 1500 + index} for index in range(1, count + 1)]


def write_jsonl(path: Path, rows: list[dict]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as outfile:
        for row in rows:
            outfile.write(json.dumps(row))
            outfile.write("\n")


@pytest.fixture()
def temp_workspace(tmp_path: Path) -> Path:
    (tmp_path / "data" / "source").mkdir(parents=True, exist_ok=True)
    return tmp_path


@pytest.fixture()
def test_settings(temp_workspace: Path) -> Settings:
    return Settings(
        app_name="mafia-import",
        database_url=f"sqlite:///{temp_workspace / 'test.db'}",
        log_level="INFO",
        source_dir=str(temp_workspace / "data" / "source"),
        rate_limit_delay_seconds=0,
        batch_size=100,
        max_fetch_attempts=2,
        retry_base_delay_seconds=0,
        full_outage_wait_seconds=0,
        full_outage_threshold=3,
        max_run_seconds=3600,
        parallel_concurrency=3,
        validation_threshold=0.98,
        skipped_page_retry_limit=5,
        max_consecutive_empty_pages=3,
        max_pages=0,
        cancel_poll_seconds=0,
        schedule_hour_utc=2,
        schedule_minute_utc=0,
    )


@pytest.fixture()
def session_factory(test_settings: Settings) -> sessionmaker[Session]:
    return build_session_factory(test_settings.database_url)


@pytest.fixture()
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture()
def registry(test_settings: Settings, session_factory, source: FakeSource) -> Generator[RunRegistry, None, None]:
    registry = RunRegistry(test_settings, session_factory, source)
    yield registry
    registry.wait(timeout=30)
