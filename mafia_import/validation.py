from collections import Counter

from mafia_import.schemas import InvalidRecord, ValidationMetrics, ValidationSummary


MAX_ERROR_DETAILS = 100
DEFAULT_VALIDATION_THRESHOLD = 0.98


class ValidationTracker:
    """Per-run record accounting.

    Duplicates are tracked on their own and never enter ``total_fetched``,
    so ``validation_rate`` is always ``valid / (valid + invalid)``.
    """

    def __init__(self, threshold: float = DEFAULT_VALIDATION_THRESHOLD) -> None:
        self.threshold = threshold
        self.reset()

    def reset(self) -> None:
        self._valid: Counter[str] = Counter()
        self._invalid: Counter[str] = Counter()
        self._duplicates: Counter[str] = Counter()
        self._errors: list[InvalidRecord] = []
        self._error_count = 0

    def record_valid(self, entity: str, count: int = 1) -> None:
        self._valid[entity] += count

    def record_invalid(self, entity: str, message: str, context: dict[str, object] | None = None) -> None:
        self._add_invalid(InvalidRecord(entity, message, dict(context or {})))

    def record_invalid_records(self, invalid: list[InvalidRecord]) -> None:
        for record in invalid:
            self._add_invalid(record)

    def record_duplicate_skipped(self, entity: str, count: int = 1) -> None:
        self._duplicates[entity] += count

    def get_metrics(self) -> ValidationMetrics:
        valid = sum(self._valid.values())
        invalid = sum(self._invalid.values())
        total = valid + invalid
        return ValidationMetrics(
            total_fetched=total,
            valid_records=valid,
            invalid_records=invalid,
            duplicates_skipped=sum(self._duplicates.values()),
            validation_rate=valid / total if total else 0.0,
        )

    def get_validation_rate_by_entity(self, entity: str) -> float:
        total = self._valid[entity] + self._invalid[entity]
        return self._valid[entity] / total if total else 0.0

    def get_errors(self) -> list[InvalidRecord]:
        return list(self._errors)

    def get_summary(self) -> ValidationSummary:
        metrics = self.get_metrics()
        return ValidationSummary(
            metrics=metrics,
            threshold=self.threshold,
            meets_threshold=metrics.total_fetched == 0 or metrics.validation_rate >= self.threshold,
            error_count=self._error_count,
        )

    def _add_invalid(self, record: InvalidRecord) -> None:
        self._invalid[record.entity] += 1
        self._append_error(record)

    def _append_error(self, record: InvalidRecord) -> None:
        self._error_count += 1
        if len(self._errors) < MAX_ERROR_DETAILS:
            self._errors.append(record)
