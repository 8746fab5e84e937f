import pytest

from mafia_import.batching import BatchProcessor


def test_splits_items_into_ordered_batches() -> None:
    processor = BatchProcessor(100)
    calls: list[tuple[int, int, int]] = []

    processor.process(list(range(250)), lambda batch, index, total: calls.append((len(batch), index, total)))

    assert calls == [(100, 0, 3), (100, 1, 3), (50, 2, 3)]
    metrics = processor.get_metrics()
    assert metrics.total_batches == 3
    assert metrics.total_records == 250
    assert metrics.batch_size == 100


def test_empty_input_never_calls_the_handler() -> None:
    processor = BatchProcessor(10)
    calls: list[int] = []

    processor.process([], lambda batch, index, total: calls.append(index))

    assert calls == []
    assert processor.get_metrics().total_batches == 0


def test_batch_size_can_be_overridden_per_call() -> None:
    processor = BatchProcessor(100)
    sizes: list[int] = []

    processor.process(list(range(7)), lambda batch, index, total: sizes.append(len(batch)), batch_size=3)

    assert sizes == [3, 3, 1]


def test_handler_failure_stops_processing() -> None:
    processor = BatchProcessor(2)
    seen: list[int] = []

    def handler(batch: list[int], index: int, total: int) -> None:
        seen.append(index)
        if index == 1:
            raise RuntimeError("disk full")

    with pytest.raises(RuntimeError):
        processor.process(list(range(6)), handler)

    assert seen == [0, 1]
    assert processor.get_metrics().total_batches == 1


def test_rejects_non_positive_batch_size() -> None:
    with pytest.raises(ValueError):
        BatchProcessor(0)


def test_reset_clears_metrics() -> None:
    processor = BatchProcessor(5)
    processor.process(list(range(12)), lambda batch, index, total: None)
    processor.reset()

    assert processor.get_metrics().total_records == 0
