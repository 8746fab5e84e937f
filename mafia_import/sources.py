import json
import logging
from pathlib import Path
import re
from typing import Protocol


logger = logging.getLogger(__name__)

RawRecord = dict[str, object]

_SAFE_KEY = re.compile(r"^[A-Za-z0-9_.-]+$")


class SourceSession(Protocol):
    def fetch_page(self, entity: str, page_number: int, params: dict[str, object] | None = None) -> list[RawRecord]:
        ...

    def fetch_detail(self, entity: str, key: str, params: dict[str, object] | None = None) -> list[RawRecord]:
        ...

    def close(self) -> None:
        ...


class ImportSource(Protocol):
    def open_session(self) -> SourceSession:
        ...


def read_jsonl(path: Path) -> list[RawRecord]:
    records: list[RawRecord] = []
    with path.open("r", encoding="utf-8") as infile:
        for line in infile:
            line = line.strip()
            if not line:
                continue
            records.append(json.loads(line))
    return records


class FileSnapshotSession:
    """Reads one snapshot directory laid out as JSONL files.

    ``<root>/<entity>/page-<n>.jsonl`` holds listing pages and
    ``<root>/<entity>/<key>.jsonl`` holds per-item detail records. A missing
    file reads as an empty result.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.closed = False

    def fetch_page(self, entity: str, page_number: int, params: dict[str, object] | None = None) -> list[RawRecord]:
        return self._read(self.root / entity / f"page-{page_number}.jsonl")

    def fetch_detail(self, entity: str, key: str, params: dict[str, object] | None = None) -> list[RawRecord]:
        if not _SAFE_KEY.match(key):
            raise ValueError(f"invalid detail key: {key!r}")
        return self._read(self.root / entity / f"{key}.jsonl")

    def close(self) -> None:
        self.closed = True

    def _read(self, path: Path) -> list[RawRecord]:
        if self.closed:
            raise RuntimeError("source session is closed")
        if not path.exists():
            return []
        return read_jsonl(path)


class FileSnapshotSource:
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def open_session(self) -> FileSnapshotSession:
        if not self.root.is_dir():
            raise FileNotFoundError(f"source directory not found: {self.root}")
        return FileSnapshotSession(self.root)
