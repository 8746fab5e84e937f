from mafia_import.error_log import ErrorLog
from mafia_import.schemas import InvalidRecord, Phase
from mafia_import.skipped_pages import SkippedPages
from mafia_import.validation import MAX_ERROR_DETAILS, ValidationTracker


def test_validation_rate_ignores_duplicates() -> None:
    tracker = ValidationTracker(0.98)
    tracker.record_valid("players", 98)
    tracker.record_invalid("players", "name is required", {"index": 4})
    tracker.record_invalid("players", "elo must not be negative")
    tracker.record_duplicate_skipped("players", 5)

    summary = tracker.get_summary()
    assert summary.metrics.total_fetched == 100
    assert summary.metrics.valid_records == 98
    assert summary.metrics.invalid_records == 2
    assert summary.metrics.duplicates_skipped == 5
    assert summary.metrics.validation_rate == 0.98
    assert summary.meets_threshold is True

    tracker.record_invalid("players", "name is required")
    assert tracker.get_summary().meets_threshold is False


def test_empty_tracker_meets_threshold() -> None:
    summary = ValidationTracker().get_summary()
    assert summary.metrics.validation_rate == 0.0
    assert summary.meets_threshold is True


def test_error_details_are_capped_but_counted() -> None:
    tracker = ValidationTracker()
    tracker.record_invalid_records([InvalidRecord("games", f"bad game {index}") for index in range(150)])

    assert len(tracker.get_errors()) == MAX_ERROR_DETAILS
    assert tracker.get_summary().error_count == 150
    assert tracker.get_metrics().invalid_records == 150


def test_rate_by_entity_and_reset() -> None:
    tracker = ValidationTracker()
    tracker.record_valid("clubs", 3)
    tracker.record_invalid("clubs", "name is required")
    tracker.record_valid("players", 2)

    assert tracker.get_validation_rate_by_entity("clubs") == 0.75
    assert tracker.get_validation_rate_by_entity("players") == 1.0
    assert tracker.get_validation_rate_by_entity("games") == 0.0

    tracker.reset()
    assert tracker.get_metrics().total_fetched == 0


def test_error_log_summary_groups_by_phase_and_code() -> None:
    errors = ErrorLog()
    errors.phase = Phase.PLAYERS
    errors.log(RuntimeError("boom"), "PAGE_FETCH_FAILED", {"page": 3})
    errors.log("network timeout", "PAGE_FETCH_FAILED", {"page": 4}, will_retry=True)
    errors.phase = Phase.GAMES
    errors.log(ValueError("no such tournament"), "DETAIL_FETCH_FAILED")

    summary = errors.get_summary()
    assert summary.total_errors == 3
    assert summary.errors_by_phase["PLAYERS"] == 2
    assert summary.errors_by_phase["GAMES"] == 1
    assert summary.errors_by_phase["CLUBS"] == 0
    assert summary.errors_by_code == {"PAGE_FETCH_FAILED": 2, "DETAIL_FETCH_FAILED": 1}
    assert summary.critical_errors == 2
    assert summary.retried_errors == 1
    assert summary.to_payload()["totalErrors"] == 3

    first = errors.entries()[0]
    assert first.message == "boom"
    assert first.context == {"page": 3}
    assert first.phase == Phase.PLAYERS


def test_error_log_never_raises() -> None:
    errors = ErrorLog()
    errors.log("broken context", "PERSIST_FAILED", context=42)
    assert errors.entries() == []


def test_skipped_pages_payload_follows_phase_order() -> None:
    skipped = SkippedPages()
    skipped.record(Phase.GAMES, [7])
    skipped.record(Phase.PLAYERS, [5, 3])
    skipped.record(Phase.PLAYERS, [3])
    skipped.record(Phase.CLUBS, [])

    assert skipped.to_payload() == {"PLAYERS": [3, 5], "GAMES": [7]}
    assert skipped.total() == 3

    restored = SkippedPages.from_payload(skipped.to_payload())
    restored.discard(Phase.GAMES, [7])
    assert restored.pages_for(Phase.GAMES) == []
    assert restored.to_payload() == {"PLAYERS": [3, 5]}
