from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import date
from typing import TypeVar

from mafia_import.errors import RecordValidationError
from mafia_import.schemas import InvalidRecord


RecordT = TypeVar("RecordT")

ROLES = ("DON", "MAFIA", "SHERIFF", "CITIZEN")
MAFIA_ROLES = frozenset({"DON", "MAFIA"})
TEAMS = ("MAFIA", "CITIZENS")
WINNER_TEAMS = ("MAFIA", "CITIZENS", "DRAW")
TOURNAMENT_STATUSES = ("SCHEDULED", "IN_PROGRESS", "COMPLETED", "CANCELLED")
GAME_STATUSES = ("SCHEDULED", "IN_PROGRESS", "COMPLETED", "CANCELLED")


@dataclass(frozen=True)
class ClubRecord:
    source_id: str
    name: str
    region: str | None


@dataclass(frozen=True)
class PlayerRecord:
    source_id: str
    name: str
    region: str | None
    club_name: str | None
    elo_rating: float
    total_games: int


@dataclass(frozen=True)
class TournamentRecord:
    source_id: str
    name: str
    stars: int | None
    average_elo: float | None
    is_fsm_rated: bool
    start_date: date
    end_date: date | None
    status: str


@dataclass(frozen=True)
class JudgeRecord:
    source_id: str
    name: str
    category: str | None
    can_be_gs: int | None
    games_judged: int | None
    tournaments_judged: int | None


@dataclass(frozen=True)
class ClubMemberRecord:
    player_source_id: str
    is_president: bool


@dataclass(frozen=True)
class YearStatsRecord:
    year: int
    total_games: int
    don_games: int
    mafia_games: int
    sheriff_games: int
    civilian_games: int
    elo_rating: float | None
    extra_points: float


@dataclass(frozen=True)
class ChiefJudgeRecord:
    player_source_id: str


@dataclass(frozen=True)
class TournamentResultRecord:
    tournament_source_id: str
    placement: int | None
    gg_points: float | None
    elo_change: float | None
    prize_money: float | None


@dataclass(frozen=True)
class ParticipationRecord:
    player_source_id: str
    role: str
    team: str
    is_winner: bool
    performance_score: int | None


@dataclass(frozen=True)
class GameRecord:
    source_id: str
    played_on: date
    duration_minutes: int | None
    winner_team: str | None
    status: str
    participations: tuple[ParticipationRecord, ...]


def _text(raw: Mapping[str, object], key: str) -> str:
    value = raw.get(key)
    return "" if value is None else str(value).strip()


def _required_str(raw: Mapping[str, object], key: str) -> str:
    value = _text(raw, key)
    if not value:
        raise RecordValidationError(f"{key} is required")
    return value


def _optional_str(raw: Mapping[str, object], key: str) -> str | None:
    return _text(raw, key) or None


def _optional_int(raw: Mapping[str, object], key: str) -> int | None:
    value = raw.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise RecordValidationError(f"{key} must be an integer")
    if isinstance(value, float):
        if not value.is_integer():
            raise RecordValidationError(f"{key} must be an integer")
        return int(value)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise RecordValidationError(f"{key} must be an integer") from None


def _optional_float(raw: Mapping[str, object], key: str) -> float | None:
    value = raw.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise RecordValidationError(f"{key} must be a number")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise RecordValidationError(f"{key} must be a number") from None


def _non_negative(value: int | float | None, key: str) -> None:
    if value is not None and value < 0:
        raise RecordValidationError(f"{key} must not be negative")


def _parse_date(raw: Mapping[str, object], key: str, *, required: bool) -> date | None:
    value = raw.get(key)
    if value is None or value == "":
        if required:
            raise RecordValidationError(f"{key} is required")
        return None
    try:
        # Accept plain dates and full ISO timestamps.
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise RecordValidationError(f"{key} must be an ISO date") from None


def _choice(value: str | None, allowed: tuple[str, ...], key: str) -> str | None:
    if value is None:
        return None
    normalized = value.upper()
    if normalized not in allowed:
        raise RecordValidationError(f"{key} must be one of {', '.join(allowed)}")
    return normalized


def parse_club(raw: Mapping[str, object]) -> ClubRecord:
    return ClubRecord(
        source_id=_required_str(raw, "id"),
        name=_required_str(raw, "name"),
        region=_optional_str(raw, "region"),
    )


def parse_player(raw: Mapping[str, object]) -> PlayerRecord:
    elo_rating = _optional_float(raw, "elo")
    total_games = _optional_int(raw, "tournaments_played")
    _non_negative(elo_rating, "elo")
    _non_negative(total_games, "tournaments_played")
    return PlayerRecord(
        source_id=_required_str(raw, "id"),
        name=_required_str(raw, "name"),
        region=_optional_str(raw, "region"),
        club_name=_optional_str(raw, "club"),
        elo_rating=1200.0 if elo_rating is None else elo_rating,
        total_games=total_games or 0,
    )


def parse_tournament(raw: Mapping[str, object]) -> TournamentRecord:
    stars = _optional_int(raw, "stars")
    if stars is not None and not 0 <= stars <= 5:
        raise RecordValidationError("stars must be between 0 and 5")
    average_elo = _optional_float(raw, "average_elo")
    _non_negative(average_elo, "average_elo")

    start_date = _parse_date(raw, "start_date", required=True)
    end_date = _parse_date(raw, "end_date", required=False)
    if end_date is not None and end_date < start_date:
        raise RecordValidationError("end_date must not be before start_date")

    return TournamentRecord(
        source_id=_required_str(raw, "id"),
        name=_required_str(raw, "name"),
        stars=stars,
        average_elo=average_elo,
        is_fsm_rated=bool(raw.get("fsm_rated", False)),
        start_date=start_date,
        end_date=end_date,
        status=_choice(_optional_str(raw, "status"), TOURNAMENT_STATUSES, "status") or "COMPLETED",
    )


def parse_judge(raw: Mapping[str, object]) -> JudgeRecord:
    games_judged = _optional_int(raw, "games_judged")
    tournaments_judged = _optional_int(raw, "tournaments_judged")
    _non_negative(games_judged, "games_judged")
    _non_negative(tournaments_judged, "tournaments_judged")
    return JudgeRecord(
        source_id=_required_str(raw, "id"),
        name=_required_str(raw, "name"),
        category=_optional_str(raw, "category"),
        can_be_gs=_optional_int(raw, "can_be_gs"),
        games_judged=games_judged,
        tournaments_judged=tournaments_judged,
    )


def parse_club_member(raw: Mapping[str, object]) -> ClubMemberRecord:
    return ClubMemberRecord(
        player_source_id=_required_str(raw, "player_id"),
        is_president=bool(raw.get("is_president", False)),
    )


def parse_year_stats(raw: Mapping[str, object]) -> YearStatsRecord:
    year = _optional_int(raw, "year")
    if year is None or not 1990 <= year <= 2100:
        raise RecordValidationError("year must be between 1990 and 2100")

    counts = {
        key: _optional_int(raw, key) or 0
        for key in ("total_games", "don_games", "mafia_games", "sheriff_games", "civilian_games")
    }
    for key, value in counts.items():
        _non_negative(value, key)
    role_total = counts["don_games"] + counts["mafia_games"] + counts["sheriff_games"] + counts["civilian_games"]
    if role_total > counts["total_games"]:
        raise RecordValidationError("role game counts exceed total_games")

    return YearStatsRecord(
        year=year,
        elo_rating=_optional_float(raw, "elo"),
        extra_points=_optional_float(raw, "extra_points") or 0.0,
        **counts,
    )


def parse_chief_judge(raw: Mapping[str, object]) -> ChiefJudgeRecord:
    return ChiefJudgeRecord(player_source_id=_required_str(raw, "player_id"))


def parse_tournament_result(raw: Mapping[str, object]) -> TournamentResultRecord:
    placement = _optional_int(raw, "placement")
    if placement is not None and placement < 1:
        raise RecordValidationError("placement must be positive")
    prize_money = _optional_float(raw, "prize_money")
    _non_negative(prize_money, "prize_money")
    return TournamentResultRecord(
        tournament_source_id=_required_str(raw, "tournament_id"),
        placement=placement,
        gg_points=_optional_float(raw, "gg_points"),
        elo_change=_optional_float(raw, "elo_change"),
        prize_money=prize_money,
    )


def parse_participation(raw: Mapping[str, object]) -> ParticipationRecord:
    role = _choice(_required_str(raw, "role"), ROLES, "role")
    default_team = "MAFIA" if role in MAFIA_ROLES else "CITIZENS"
    team = _choice(_optional_str(raw, "team"), TEAMS, "team") or default_team
    return ParticipationRecord(
        player_source_id=_required_str(raw, "player_id"),
        role=role,
        team=team,
        is_winner=bool(raw.get("is_winner", False)),
        performance_score=_optional_int(raw, "score"),
    )


def parse_game(raw: Mapping[str, object]) -> GameRecord:
    raw_participants = raw.get("participants") or []
    if not isinstance(raw_participants, list):
        raise RecordValidationError("participants must be a list")
    participations = tuple(parse_participation(item) for item in raw_participants)

    player_ids = [item.player_source_id for item in participations]
    if len(player_ids) != len(set(player_ids)):
        raise RecordValidationError("a player appears twice in the same game")

    duration = _optional_int(raw, "duration_minutes")
    _non_negative(duration, "duration_minutes")

    return GameRecord(
        source_id=_required_str(raw, "id"),
        played_on=_parse_date(raw, "date", required=True),
        duration_minutes=duration,
        winner_team=_choice(_optional_str(raw, "winner"), WINNER_TEAMS, "winner"),
        status=_choice(_optional_str(raw, "status"), GAME_STATUSES, "status") or "COMPLETED",
        participations=participations,
    )


def validate_records(
    raw_records: Iterable[Mapping[str, object]],
    parse: Callable[[Mapping[str, object]], RecordT],
    *,
    entity: str,
    context: Mapping[str, object] | None = None,
) -> tuple[list[RecordT], list[InvalidRecord]]:
    valid: list[RecordT] = []
    invalid: list[InvalidRecord] = []

    for index, raw in enumerate(raw_records):
        if not isinstance(raw, Mapping):
            invalid.append(InvalidRecord(entity, "record must be an object", {**(context or {}), "index": index}))
            continue
        try:
            valid.append(parse(raw))
        except RecordValidationError as exc:
            record_context: dict[str, object] = {**(context or {}), "index": index}
            if raw.get("id") is not None:
                record_context["entity_id"] = str(raw.get("id"))
            invalid.append(InvalidRecord(entity, str(exc), record_context))

    return valid, invalid
