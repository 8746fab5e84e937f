from collections.abc import Hashable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date
import logging
from typing import Generic, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from mafia_import.db_models import (
    Base,
    Club,
    Game,
    GameParticipation,
    Player,
    PlayerRoleStats,
    PlayerTournament,
    PlayerYearStats,
    Tournament,
)


logger = logging.getLogger(__name__)
ModelT = TypeVar("ModelT", bound=Base)

IN_CHUNK_SIZE = 500


def _chunks(values: Sequence[object], size: int = IN_CHUNK_SIZE) -> Iterable[Sequence[object]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


class EntityRepository(Generic[ModelT]):
    """Natural-key aware access to one table.

    Keys are plain values for single-column natural keys and tuples for
    composite ones (for example ``(player_id, year)``).
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        model: type[ModelT],
        key_columns: tuple[str, ...] = ("source_id",),
    ) -> None:
        self.session_factory = session_factory
        self.model = model
        self.key_columns = key_columns

    def key_of(self, row: Mapping[str, object]) -> Hashable:
        if len(self.key_columns) == 1:
            return row[self.key_columns[0]]
        return tuple(row[column] for column in self.key_columns)

    def exists(self, key: Hashable) -> bool:
        return key in self.existing_keys([key])

    def existing_keys(self, keys: Iterable[Hashable]) -> set[Hashable]:
        return set(self.id_map(keys))

    def id_map(self, keys: Iterable[Hashable], *, column_name: str | None = None) -> dict[Hashable, int]:
        wanted = set(keys)
        if not wanted:
            return {}

        names = (column_name,) if column_name else self.key_columns
        columns = [getattr(self.model, name) for name in names]
        composite = len(columns) > 1
        # Filter on the leading column in SQL and match the full key here.
        lead_values = sorted({key[0] if composite else key for key in wanted}, key=str)
        mapping: dict[Hashable, int] = {}
        with self.session_factory() as db:
            for chunk in _chunks(lead_values):
                stmt = select(self.model.id, *columns).where(columns[0].in_(chunk))
                for row in db.execute(stmt):
                    key = tuple(row[1:]) if composite else row[1]
                    if key in wanted:
                        mapping[key] = row[0]
        return mapping

    def create_many(self, rows: Sequence[Mapping[str, object]], *, skip_duplicates: bool = True) -> int:
        unique_rows: dict[Hashable, Mapping[str, object]] = {}
        for row in rows:
            unique_rows.setdefault(self.key_of(row), row)
        if skip_duplicates:
            for key in self.existing_keys(unique_rows):
                unique_rows.pop(key, None)
        if not unique_rows:
            return 0

        with self.session_factory() as db:
            db.add_all(self.model(**dict(row)) for row in unique_rows.values())
            try:
                db.commit()
                return len(unique_rows)
            except IntegrityError:
                db.rollback()
                if not skip_duplicates:
                    raise
                logger.info(
                    "bulk insert hit a concurrent duplicate, inserting row by row",
                    extra={"table": self.model.__tablename__},
                )

            inserted = 0
            for row in unique_rows.values():
                db.add(self.model(**dict(row)))
                try:
                    db.commit()
                    inserted += 1
                except IntegrityError:
                    db.rollback()
            return inserted

    def update(self, row_id: int, fields: Mapping[str, object]) -> bool:
        with self.session_factory() as db:
            result = db.execute(update(self.model).where(self.model.id == row_id).values(**fields))
            db.commit()
            return result.rowcount == 1

    def all_ids(self) -> set[int]:
        with self.session_factory() as db:
            return set(db.execute(select(self.model.id)).scalars().all())

    def rows(self, *columns: str) -> list[tuple]:
        selected = [getattr(self.model, name) for name in columns]
        with self.session_factory() as db:
            stmt = select(*selected).order_by(self.model.id)
            return [tuple(row) for row in db.execute(stmt)]

    def count(self) -> int:
        with self.session_factory() as db:
            return db.execute(select(func.count()).select_from(self.model)).scalar_one()


class ParticipationRepository(EntityRepository[GameParticipation]):
    def role_history(self, player_ids: Iterable[int]) -> list[tuple[int, str, bool, int | None, date]]:
        ids = sorted(set(player_ids))
        history: list[tuple[int, str, bool, int | None, date]] = []
        with self.session_factory() as db:
            for chunk in _chunks(ids):
                stmt = (
                    select(
                        GameParticipation.player_id,
                        GameParticipation.role,
                        GameParticipation.is_winner,
                        GameParticipation.performance_score,
                        Game.played_on,
                    )
                    .join(Game, Game.id == GameParticipation.game_id)
                    .where(GameParticipation.player_id.in_(chunk))
                )
                history.extend(tuple(row) for row in db.execute(stmt))
        return history


class GameRepository(EntityRepository[Game]):
    def count_by_tournament(self, tournament_ids: Iterable[int]) -> dict[int, int]:
        ids = sorted(set(tournament_ids))
        counts: dict[int, int] = {}
        with self.session_factory() as db:
            for chunk in _chunks(ids):
                stmt = (
                    select(Game.tournament_id, func.count(Game.id))
                    .where(Game.tournament_id.in_(chunk))
                    .group_by(Game.tournament_id)
                )
                counts.update({tournament_id: total for tournament_id, total in db.execute(stmt)})
        return counts


@dataclass(frozen=True)
class Repositories:
    clubs: EntityRepository[Club]
    players: EntityRepository[Player]
    year_stats: EntityRepository[PlayerYearStats]
    tournaments: EntityRepository[Tournament]
    player_tournaments: EntityRepository[PlayerTournament]
    games: GameRepository
    participations: ParticipationRepository
    role_stats: EntityRepository[PlayerRoleStats]


def build_repositories(session_factory: sessionmaker[Session]) -> Repositories:
    return Repositories(
        clubs=EntityRepository(session_factory, Club),
        players=EntityRepository(session_factory, Player),
        year_stats=EntityRepository(session_factory, PlayerYearStats, ("player_id", "year")),
        tournaments=EntityRepository(session_factory, Tournament),
        player_tournaments=EntityRepository(session_factory, PlayerTournament, ("player_id", "tournament_id")),
        games=GameRepository(session_factory, Game),
        participations=ParticipationRepository(session_factory, GameParticipation, ("game_id", "player_id")),
        role_stats=EntityRepository(session_factory, PlayerRoleStats, ("player_id", "role")),
    )
