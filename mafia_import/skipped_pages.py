from collections.abc import Iterable, Mapping
import threading

from mafia_import.schemas import PHASE_ORDER, Phase


class SkippedPages:
    """Pages that failed after every retry, kept per phase for a later manual retry."""

    def __init__(self) -> None:
        self._pages: dict[Phase, set[int]] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_payload(cls, payload: Mapping[str, Iterable[int]] | None) -> "SkippedPages":
        skipped = cls()
        for phase_name, pages in (payload or {}).items():
            skipped.record(Phase(phase_name), pages)
        return skipped

    def record(self, phase: Phase, pages: Iterable[int]) -> None:
        pages = {int(page) for page in pages}
        if not pages:
            return
        with self._lock:
            self._pages.setdefault(phase, set()).update(pages)

    def discard(self, phase: Phase, pages: Iterable[int]) -> None:
        with self._lock:
            remaining = self._pages.get(phase, set()) - {int(page) for page in pages}
            if remaining:
                self._pages[phase] = remaining
            else:
                self._pages.pop(phase, None)

    def pages_for(self, phase: Phase) -> list[int]:
        with self._lock:
            return sorted(self._pages.get(phase, ()))

    def total(self) -> int:
        with self._lock:
            return sum(len(pages) for pages in self._pages.values())

    def to_payload(self) -> dict[str, list[int]]:
        with self._lock:
            return {
                phase.value: sorted(self._pages[phase])
                for phase in PHASE_ORDER
                if self._pages.get(phase)
            }
