from collections import defaultdict
from typing import NamedTuple

from mafia_import.db_models import utc_now
from mafia_import.errors import LINK_FAILED, STATS_FAILED
from mafia_import.phase_runner import ItemOutcome, ItemPhaseRunner, PagedPhaseRunner, PersistStats
from mafia_import.records import (
    ROLES,
    ChiefJudgeRecord,
    ClubMemberRecord,
    ClubRecord,
    GameRecord,
    JudgeRecord,
    PlayerRecord,
    TournamentRecord,
    TournamentResultRecord,
    YearStatsRecord,
    parse_chief_judge,
    parse_club,
    parse_club_member,
    parse_game,
    parse_judge,
    parse_player,
    parse_tournament,
    parse_tournament_result,
    parse_year_stats,
)
from mafia_import.schemas import Phase
from mafia_import.sources import RawRecord, SourceSession


class StoredRef(NamedTuple):
    id: int
    source_id: str


class ClubsPhase(PagedPhaseRunner[ClubRecord]):
    phase = Phase.CLUBS
    entity = "clubs"

    def parse(self, raw: RawRecord) -> ClubRecord:
        return parse_club(raw)

    def record_key(self, record: ClubRecord) -> str:
        return record.source_id

    def existing_keys(self, keys: list[str]) -> set[str]:
        return self.ctx.repos.clubs.existing_keys(keys)

    def persist(self, records: list[ClubRecord]) -> int:
        synced_at = utc_now()
        return self.ctx.repos.clubs.create_many(
            [
                {"source_id": club.source_id, "name": club.name, "region": club.region, "last_sync_at": synced_at}
                for club in records
            ]
        )


class PlayersPhase(PagedPhaseRunner[PlayerRecord]):
    phase = Phase.PLAYERS
    entity = "players"

    def parse(self, raw: RawRecord) -> PlayerRecord:
        return parse_player(raw)

    def record_key(self, record: PlayerRecord) -> str:
        return record.source_id

    def existing_keys(self, keys: list[str]) -> set[str]:
        return self.ctx.repos.players.existing_keys(keys)

    def persist(self, records: list[PlayerRecord]) -> int:
        club_names = {player.club_name for player in records if player.club_name}
        club_ids = self.ctx.repos.clubs.id_map(club_names, column_name="name")
        synced_at = utc_now()
        return self.ctx.repos.players.create_many(
            [
                {
                    "source_id": player.source_id,
                    "name": player.name,
                    "region": player.region,
                    "club_id": club_ids.get(player.club_name),
                    "elo_rating": player.elo_rating,
                    "total_games": player.total_games,
                    "last_sync_at": synced_at,
                }
                for player in records
            ]
        )


class TournamentsPhase(PagedPhaseRunner[TournamentRecord]):
    phase = Phase.TOURNAMENTS
    entity = "tournaments"

    def parse(self, raw: RawRecord) -> TournamentRecord:
        return parse_tournament(raw)

    def record_key(self, record: TournamentRecord) -> str:
        return record.source_id

    def existing_keys(self, keys: list[str]) -> set[str]:
        return self.ctx.repos.tournaments.existing_keys(keys)

    def persist(self, records: list[TournamentRecord]) -> int:
        synced_at = utc_now()
        return self.ctx.repos.tournaments.create_many(
            [
                {
                    "source_id": tournament.source_id,
                    "name": tournament.name,
                    "stars": tournament.stars,
                    "average_elo": tournament.average_elo,
                    "is_fsm_rated": tournament.is_fsm_rated,
                    "start_date": tournament.start_date,
                    "end_date": tournament.end_date,
                    "status": tournament.status,
                    "last_sync_at": synced_at,
                }
                for tournament in records
            ]
        )


class JudgesPhase(PagedPhaseRunner[JudgeRecord]):
    """Judges are players; this phase only enriches existing player rows."""

    phase = Phase.JUDGES
    entity = "judges"
    check_store_duplicates = False

    def parse(self, raw: RawRecord) -> JudgeRecord:
        return parse_judge(raw)

    def record_key(self, record: JudgeRecord) -> str:
        return record.source_id

    def persist(self, records: list[JudgeRecord]) -> int:
        player_ids = self.ctx.repos.players.id_map(judge.source_id for judge in records)
        updated = 0
        for judge in records:
            player_id = player_ids.get(judge.source_id)
            if player_id is None:
                self.ctx.errors.log(
                    f"judge {judge.source_id} has no matching player",
                    LINK_FAILED,
                    {"entity_id": judge.source_id, "entity_type": self.entity, "operation": "link_judge"},
                )
                continue
            self.ctx.repos.players.update(
                player_id,
                {
                    "is_judge": True,
                    "judge_category": judge.category,
                    "judge_can_be_gs": judge.can_be_gs,
                    "judge_games": judge.games_judged,
                    "judge_tournaments": judge.tournaments_judged,
                    "last_sync_at": utc_now(),
                },
            )
            updated += 1
        return updated


class StoredItemPhase(ItemPhaseRunner[StoredRef, object]):
    """Per-item phase whose items are rows already stored by an earlier phase."""

    def item_key(self, item: StoredRef) -> str:
        return item.source_id

    def load_refs(self, repository) -> list[StoredRef]:
        refs = [StoredRef(row_id, source_id) for row_id, source_id in repository.rows("id", "source_id")]
        self.ref_ids = {ref.source_id: ref.id for ref in refs}
        return refs

    def link_failed(self, message: str, entity_id: str, operation: str) -> None:
        self.ctx.errors.log(
            message,
            LINK_FAILED,
            {"entity_id": entity_id, "entity_type": self.entity, "operation": operation},
        )


class ClubMembersPhase(StoredItemPhase):
    phase = Phase.CLUB_MEMBERS
    entity = "club_members"

    def load_items(self) -> list[StoredRef]:
        return self.load_refs(self.ctx.repos.clubs)

    def process_item(self, item: StoredRef, session: SourceSession | None) -> ItemOutcome[ClubMemberRecord]:
        return self.parse_detail(item.source_id, self.fetch_detail(session, item.source_id), parse_club_member)

    def persist(self, outcomes: list[ItemOutcome[ClubMemberRecord]]) -> PersistStats:
        players = self.ctx.repos.players
        player_ids = players.id_map(
            member.player_source_id for outcome in outcomes for member in outcome.records
        )
        linked = 0
        for outcome in outcomes:
            club_id = self.ref_ids[outcome.key]
            for member in outcome.records:
                player_id = player_ids.get(member.player_source_id)
                if player_id is None:
                    self.link_failed(
                        f"club {outcome.key} member {member.player_source_id} is not a known player",
                        member.player_source_id,
                        "link_club_member",
                    )
                    continue
                players.update(player_id, {"club_id": club_id})
                if member.is_president:
                    self.ctx.repos.clubs.update(club_id, {"president_id": player_id})
                linked += 1
        return PersistStats(written=linked)


class PlayerYearStatsPhase(StoredItemPhase):
    phase = Phase.PLAYER_YEAR_STATS
    entity = "player_year_stats"

    def load_items(self) -> list[StoredRef]:
        return self.load_refs(self.ctx.repos.players)

    def process_item(self, item: StoredRef, session: SourceSession | None) -> ItemOutcome[YearStatsRecord]:
        return self.parse_detail(item.source_id, self.fetch_detail(session, item.source_id), parse_year_stats)

    def persist(self, outcomes: list[ItemOutcome[YearStatsRecord]]) -> PersistStats:
        rows = [
            {
                "player_id": self.ref_ids[outcome.key],
                "year": stats.year,
                "total_games": stats.total_games,
                "don_games": stats.don_games,
                "mafia_games": stats.mafia_games,
                "sheriff_games": stats.sheriff_games,
                "civilian_games": stats.civilian_games,
                "elo_rating": stats.elo_rating,
                "extra_points": stats.extra_points,
            }
            for outcome in outcomes
            for stats in outcome.records
        ]
        written = self.ctx.repos.year_stats.create_many(rows)
        return PersistStats(written=written, duplicates=len(rows) - written)


class TournamentChiefJudgePhase(StoredItemPhase):
    phase = Phase.TOURNAMENT_CHIEF_JUDGE
    entity = "tournament_chief_judge"

    def load_items(self) -> list[StoredRef]:
        return self.load_refs(self.ctx.repos.tournaments)

    def process_item(self, item: StoredRef, session: SourceSession | None) -> ItemOutcome[ChiefJudgeRecord]:
        return self.parse_detail(item.source_id, self.fetch_detail(session, item.source_id), parse_chief_judge)

    def persist(self, outcomes: list[ItemOutcome[ChiefJudgeRecord]]) -> PersistStats:
        player_ids = self.ctx.repos.players.id_map(
            judge.player_source_id for outcome in outcomes for judge in outcome.records
        )
        linked = 0
        for outcome in outcomes:
            # A tournament has at most one chief judge; the first listed wins.
            if not outcome.records:
                continue
            judge = outcome.records[0]
            player_id = player_ids.get(judge.player_source_id)
            if player_id is None:
                self.link_failed(
                    f"chief judge {judge.player_source_id} of tournament {outcome.key} is not a known player",
                    outcome.key,
                    "link_chief_judge",
                )
                continue
            self.ctx.repos.tournaments.update(self.ref_ids[outcome.key], {"chief_judge_id": player_id})
            linked += 1
        return PersistStats(written=linked)


class PlayerTournamentHistoryPhase(StoredItemPhase):
    phase = Phase.PLAYER_TOURNAMENT_HISTORY
    entity = "player_tournament_history"

    def load_items(self) -> list[StoredRef]:
        return self.load_refs(self.ctx.repos.players)

    def process_item(self, item: StoredRef, session: SourceSession | None) -> ItemOutcome[TournamentResultRecord]:
        return self.parse_detail(item.source_id, self.fetch_detail(session, item.source_id), parse_tournament_result)

    def persist(self, outcomes: list[ItemOutcome[TournamentResultRecord]]) -> PersistStats:
        tournament_ids = self.ctx.repos.tournaments.id_map(
            result.tournament_source_id for outcome in outcomes for result in outcome.records
        )
        rows = []
        for outcome in outcomes:
            for result in outcome.records:
                tournament_id = tournament_ids.get(result.tournament_source_id)
                if tournament_id is None:
                    self.link_failed(
                        f"player {outcome.key} lists unknown tournament {result.tournament_source_id}",
                        outcome.key,
                        "link_tournament_result",
                    )
                    continue
                rows.append(
                    {
                        "player_id": self.ref_ids[outcome.key],
                        "tournament_id": tournament_id,
                        "placement": result.placement,
                        "gg_points": result.gg_points,
                        "elo_change": result.elo_change,
                        "prize_money": result.prize_money,
                    }
                )
        written = self.ctx.repos.player_tournaments.create_many(rows)
        return PersistStats(written=written, duplicates=len(rows) - written)


class GamesPhase(StoredItemPhase):
    phase = Phase.GAMES
    entity = "games"

    def load_items(self) -> list[StoredRef]:
        return self.load_refs(self.ctx.repos.tournaments)

    def process_item(self, item: StoredRef, session: SourceSession | None) -> ItemOutcome[GameRecord]:
        return self.parse_detail(item.source_id, self.fetch_detail(session, item.source_id), parse_game)

    def persist(self, outcomes: list[ItemOutcome[GameRecord]]) -> PersistStats:
        repos = self.ctx.repos
        games = [(outcome.key, game) for outcome in outcomes for game in outcome.records]
        if not games:
            return PersistStats(written=0)

        existing = repos.games.existing_keys(game.source_id for _, game in games)
        fresh = [(tournament_key, game) for tournament_key, game in games if game.source_id not in existing]
        written = repos.games.create_many(
            [
                {
                    "source_id": game.source_id,
                    "tournament_id": self.ref_ids[tournament_key],
                    "played_on": game.played_on,
                    "duration_minutes": game.duration_minutes,
                    "winner_team": game.winner_team,
                    "status": game.status,
                }
                for tournament_key, game in fresh
            ]
        )

        game_ids = repos.games.id_map(game.source_id for _, game in fresh)
        player_ids = repos.players.id_map(
            seat.player_source_id for _, game in fresh for seat in game.participations
        )
        participations = []
        for _, game in fresh:
            for seat in game.participations:
                player_id = player_ids.get(seat.player_source_id)
                if player_id is None:
                    self.link_failed(
                        f"game {game.source_id} seats unknown player {seat.player_source_id}",
                        game.source_id,
                        "link_participation",
                    )
                    continue
                participations.append(
                    {
                        "game_id": game_ids[game.source_id],
                        "player_id": player_id,
                        "role": seat.role,
                        "team": seat.team,
                        "is_winner": seat.is_winner,
                        "performance_score": seat.performance_score,
                    }
                )
        repos.participations.create_many(participations)

        touched = {self.ref_ids[outcome.key] for outcome in outcomes}
        for tournament_id, total in repos.games.count_by_tournament(touched).items():
            repos.tournaments.update(tournament_id, {"game_count": total})

        return PersistStats(written=written, duplicates=len(games) - len(fresh))


class StatisticsPhase(StoredItemPhase):
    """Recomputes per-role aggregates from stored game participations."""

    phase = Phase.STATISTICS
    entity = "player_role_stats"
    requires_source = False
    concurrency = 1
    fetch_error_code = STATS_FAILED

    def load_items(self) -> list[StoredRef]:
        return self.load_refs(self.ctx.repos.players)

    def process_item(self, item: StoredRef, session: SourceSession | None) -> ItemOutcome[dict[str, object]]:
        history = self.ctx.repos.participations.role_history([item.id])
        by_role: dict[str, list[tuple]] = defaultdict(list)
        for _, role, is_winner, score, played_on in history:
            by_role[role].append((is_winner, score, played_on))

        stats = []
        for role in ROLES:
            games = by_role.get(role)
            if not games:
                continue
            wins = sum(1 for is_winner, _, _ in games if is_winner)
            scores = [score for _, score, _ in games if score is not None]
            stats.append(
                {
                    "player_id": item.id,
                    "role": role,
                    "games_played": len(games),
                    "wins": wins,
                    "losses": len(games) - wins,
                    "win_rate": wins / len(games),
                    "average_performance": sum(scores) / len(scores) if scores else 0.0,
                    "last_played": max(played_on for _, _, played_on in games),
                }
            )
        return ItemOutcome(key=item.source_id, records=stats, fetched=len(history))

    def persist(self, outcomes: list[ItemOutcome[dict[str, object]]]) -> PersistStats:
        role_stats = self.ctx.repos.role_stats
        rows = [row for outcome in outcomes for row in outcome.records]
        existing = role_stats.id_map(role_stats.key_of(row) for row in rows)

        fresh = [row for row in rows if role_stats.key_of(row) not in existing]
        for row in rows:
            row_id = existing.get(role_stats.key_of(row))
            if row_id is not None:
                role_stats.update(row_id, {**row, "updated_at": utc_now()})
        role_stats.create_many(fresh)
        return PersistStats(written=len(rows))


IMPORT_PHASES: tuple[type, ...] = (
    ClubsPhase,
    PlayersPhase,
    ClubMembersPhase,
    PlayerYearStatsPhase,
    TournamentsPhase,
    TournamentChiefJudgePhase,
    PlayerTournamentHistoryPhase,
    JudgesPhase,
    GamesPhase,
    StatisticsPhase,
)

PAGED_PHASES: dict[Phase, type[PagedPhaseRunner]] = {
    runner.phase: runner for runner in IMPORT_PHASES if issubclass(runner, PagedPhaseRunner)
}
