from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
import logging

from sqlalchemy.orm import Session, sessionmaker

from mafia_import.repository import Repositories, build_repositories
from mafia_import.schemas import IntegrityCheckResult, IntegrityReport


logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 20


def _result(name: str, total_checked: int, errors: list[str]) -> IntegrityCheckResult:
    return IntegrityCheckResult(
        name=name,
        passed=not errors,
        total_checked=total_checked,
        errors=tuple(errors[:MAX_REPORTED_ERRORS]),
    )


class IntegrityChecker:
    """Read-only referential checks run after a successful import.

    Each check runs on its own worker with its own repositories, so no
    session is shared between threads.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def check_game_participation_links(self) -> IntegrityCheckResult:
        repos = self._repos()
        player_ids = repos.players.all_ids()
        game_ids = repos.games.all_ids()
        rows = repos.participations.rows("id", "player_id", "game_id")

        errors = []
        for row_id, player_id, game_id in rows:
            if player_id not in player_ids:
                errors.append(f"participation {row_id} references missing player {player_id}")
            if game_id not in game_ids:
                errors.append(f"participation {row_id} references missing game {game_id}")
        return _result("game_participation_links", len(rows), errors)

    def check_player_tournament_links(self) -> IntegrityCheckResult:
        repos = self._repos()
        player_ids = repos.players.all_ids()
        tournament_ids = repos.tournaments.all_ids()
        rows = repos.player_tournaments.rows("id", "player_id", "tournament_id")

        errors = []
        for row_id, player_id, tournament_id in rows:
            if player_id not in player_ids:
                errors.append(f"player tournament {row_id} references missing player {player_id}")
            if tournament_id not in tournament_ids:
                errors.append(f"player tournament {row_id} references missing tournament {tournament_id}")
        return _result("player_tournament_links", len(rows), errors)

    def check_orphaned_records(self) -> IntegrityCheckResult:
        repos = self._repos()
        player_ids = repos.players.all_ids()
        tournament_ids = repos.tournaments.all_ids()
        club_ids = repos.clubs.all_ids()

        errors = []
        games = repos.games.rows("id", "tournament_id")
        for game_id, tournament_id in games:
            if tournament_id is not None and tournament_id not in tournament_ids:
                errors.append(f"game {game_id} belongs to missing tournament {tournament_id}")

        players = repos.players.rows("id", "club_id")
        for player_id, club_id in players:
            if club_id is not None and club_id not in club_ids:
                errors.append(f"player {player_id} belongs to missing club {club_id}")

        year_stats = repos.year_stats.rows("id", "player_id")
        role_stats = repos.role_stats.rows("id", "player_id")
        for label, rows in (("year stats", year_stats), ("role stats", role_stats)):
            for row_id, player_id in rows:
                if player_id not in player_ids:
                    errors.append(f"{label} {row_id} belongs to missing player {player_id}")

        total = len(games) + len(players) + len(year_stats) + len(role_stats)
        return _result("orphaned_records", total, errors)

    def check_all(self) -> list[IntegrityCheckResult]:
        checks: list[tuple[str, Callable[[], IntegrityCheckResult]]] = [
            ("game_participation_links", self.check_game_participation_links),
            ("player_tournament_links", self.check_player_tournament_links),
            ("orphaned_records", self.check_orphaned_records),
        ]
        with ThreadPoolExecutor(max_workers=len(checks), thread_name_prefix="integrity") as pool:
            futures = [(name, pool.submit(check)) for name, check in checks]

        results = []
        for name, future in futures:
            try:
                results.append(future.result())
            except Exception as exc:
                logger.exception("integrity check crashed", extra={"check": name})
                results.append(IntegrityCheckResult(name=name, passed=False, total_checked=0, errors=(str(exc),)))
        return results

    def get_integrity_summary(self) -> IntegrityReport:
        results = self.check_all()
        failed = [result for result in results if not result.passed]
        issues = tuple(error for result in failed for error in result.errors)

        if failed:
            message = f"{len(failed)} of {len(results)} integrity checks failed"
        else:
            message = f"All {len(results)} integrity checks passed"
        report = IntegrityReport(
            status="FAIL" if failed else "PASS",
            total_checks=len(results),
            passed_checks=len(results) - len(failed),
            failed_checks=len(failed),
            message=message,
            checks=tuple(results),
            issues=issues,
        )
        log = logger.warning if failed else logger.info
        log("integrity check finished", extra={"status": report.status, "failed_checks": report.failed_checks})
        return report

    def _repos(self) -> Repositories:
        return build_repositories(self.session_factory)
