from datetime import date

import pytest

from mafia_import.errors import RecordValidationError
from mafia_import.records import (
    parse_game,
    parse_player,
    parse_tournament,
    parse_year_stats,
    validate_records,
)


def test_validate_records_splits_valid_and_invalid() -> None:
    raw = [
        {"id": "p1", "name": "Ada", "elo": 1640, "club": "Night Owls"},
        {"id": "p2", "name": "", "elo": 1500},
        {"id": "p3", "name": "Grace", "elo": -4},
        "not a record",
    ]

    valid, invalid = validate_records(raw, parse_player, entity="players")

    assert [player.source_id for player in valid] == ["p1"]
    assert valid[0].club_name == "Night Owls"
    assert [record.reason for record in invalid] == [
        "name is required",
        "elo must not be negative",
        "record must be an object",
    ]
    assert invalid[0].context == {"index": 1, "entity_id": "p2"}
    assert all(record.entity == "players" for record in invalid)


def test_player_defaults() -> None:
    player = parse_player({"id": "p9", "name": "Lin"})
    assert player.elo_rating == 1200.0
    assert player.total_games == 0
    assert player.region is None


def test_tournament_dates_and_stars() -> None:
    tournament = parse_tournament(
        {"id": "t1", "name": "Spring Cup", "stars": 3, "start_date": "2024-03-01T10:00:00Z", "end_date": "2024-03-03"}
    )
    assert tournament.start_date == date(2024, 3, 1)
    assert tournament.status == "COMPLETED"

    with pytest.raises(RecordValidationError, match="end_date"):
        parse_tournament({"id": "t2", "name": "Late", "start_date": "2024-03-05", "end_date": "2024-03-01"})
    with pytest.raises(RecordValidationError, match="stars"):
        parse_tournament({"id": "t3", "name": "Shiny", "stars": 6, "start_date": "2024-03-05"})


def test_year_stats_role_counts_cannot_exceed_total() -> None:
    stats = parse_year_stats({"year": 2023, "total_games": 10, "don_games": 2, "sheriff_games": 3})
    assert stats.civilian_games == 0

    with pytest.raises(RecordValidationError, match="exceed"):
        parse_year_stats({"year": 2023, "total_games": 2, "mafia_games": 3})
    with pytest.raises(RecordValidationError, match="year"):
        parse_year_stats({"year": 1875, "total_games": 1})


def test_game_participants_get_team_from_role() -> None:
    game = parse_game(
        {
            "id": "g1",
            "date": "2024-03-01",
            "winner": "citizens",
            "participants": [
                {"player_id": "p1", "role": "don", "is_winner": False},
                {"player_id": "p2", "role": "sheriff", "is_winner": True, "score": 3},
            ],
        }
    )

    assert game.winner_team == "CITIZENS"
    assert [(seat.role, seat.team) for seat in game.participations] == [("DON", "MAFIA"), ("SHERIFF", "CITIZENS")]
    assert game.participations[1].performance_score == 3


def test_game_rejects_player_seated_twice() -> None:
    with pytest.raises(RecordValidationError, match="twice"):
        parse_game(
            {
                "id": "g2",
                "date": "2024-03-01",
                "participants": [
                    {"player_id": "p1", "role": "MAFIA"},
                    {"player_id": "p1", "role": "CITIZEN"},
                ],
            }
        )


def test_game_rejects_unknown_role() -> None:
    with pytest.raises(RecordValidationError, match="role"):
        parse_game({"id": "g3", "date": "2024-03-01", "participants": [{"player_id": "p1", "role": "JESTER"}]})


def test_numeric_zero_id_is_kept() -> None:
    player = parse_player({"id": 0, "name": "Zero"})
    assert player.source_id == "0"


def test_integer_fields_reject_fractions() -> None:
    stats = parse_year_stats({"year": 2023, "total_games": 10.0})
    assert stats.total_games == 10

    with pytest.raises(RecordValidationError, match="total_games must be an integer"):
        parse_year_stats({"year": 2023, "total_games": 3.7})
