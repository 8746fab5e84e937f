from collections.abc import Callable, Sequence
from dataclasses import dataclass
import math
import sys
from typing import Generic, TypeVar


T = TypeVar("T")


@dataclass(frozen=True)
class BatchMetrics:
    total_batches: int
    total_records: int
    batch_size: int
    estimated_batch_bytes: int


class BatchProcessor(Generic[T]):
    """Feeds items to ``fn(batch, batch_index, total_batches)`` one batch at a time."""

    def __init__(self, batch_size: int = 100) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.batch_size = batch_size
        self._total_batches = 0
        self._total_records = 0
        self._last_batch_size = batch_size
        self._estimated_batch_bytes = 0

    def process(
        self,
        items: Sequence[T],
        fn: Callable[[list[T], int, int], None],
        *,
        batch_size: int | None = None,
    ) -> None:
        size = batch_size or self.batch_size
        if size < 1:
            raise ValueError("batch_size must be at least 1")
        if not items:
            return

        total_batches = math.ceil(len(items) / size)
        self._last_batch_size = size
        self._estimated_batch_bytes = sys.getsizeof(items[0]) * min(size, len(items))

        for batch_index in range(total_batches):
            batch = list(items[batch_index * size : (batch_index + 1) * size])
            fn(batch, batch_index, total_batches)
            self._total_batches += 1
            self._total_records += len(batch)

    def get_metrics(self) -> BatchMetrics:
        return BatchMetrics(
            total_batches=self._total_batches,
            total_records=self._total_records,
            batch_size=self._last_batch_size,
            estimated_batch_bytes=self._estimated_batch_bytes,
        )

    def reset(self) -> None:
        self._total_batches = 0
        self._total_records = 0
        self._last_batch_size = self.batch_size
        self._estimated_batch_bytes = 0
