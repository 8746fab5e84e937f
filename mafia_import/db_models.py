from datetime import UTC, date, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


SINGLETON_ID = "current"


class Base(DeclarativeBase):
    pass


def utc_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class ImportRun(Base):
    __tablename__ = "import_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_type: Mapped[str] = mapped_column(String(32), default="FULL")
    trigger_source: Mapped[str] = mapped_column(String(32), default="manual")
    status: Mapped[str] = mapped_column(String(32), default="PENDING", index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    records_processed: Mapped[int] = mapped_column(Integer, default=0)
    errors: Mapped[dict | None] = mapped_column(JSON, nullable=True)


class SyncStatus(Base):
    __tablename__ = "sync_status"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=SINGLETON_ID)
    is_running: Mapped[bool] = mapped_column(Boolean, default=False)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False)
    progress: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_operation: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_sync_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    validation_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    total_records_processed: Mapped[int | None] = mapped_column(Integer, nullable=True)
    valid_records: Mapped[int | None] = mapped_column(Integer, nullable=True)
    invalid_records: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)


class ImportCheckpointRow(Base):
    __tablename__ = "import_checkpoints"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=SINGLETON_ID)
    current_phase: Mapped[str] = mapped_column(String(64))
    current_batch: Mapped[int] = mapped_column(Integer, default=0)
    last_processed_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    processed_ids: Mapped[list] = mapped_column(JSON, default=list)
    progress: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)


class Club(Base):
    __tablename__ = "clubs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    region: Mapped[str | None] = mapped_column(String(128), nullable=True)
    # players.club_id already points here; no FK back to players.
    president_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_sync_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class Player(Base):
    __tablename__ = "players"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    region: Mapped[str | None] = mapped_column(String(128), nullable=True)
    club_id: Mapped[int | None] = mapped_column(ForeignKey("clubs.id"), nullable=True, index=True)
    elo_rating: Mapped[float] = mapped_column(Float, default=1200)
    total_games: Mapped[int] = mapped_column(Integer, default=0)
    is_judge: Mapped[bool] = mapped_column(Boolean, default=False)
    judge_category: Mapped[str | None] = mapped_column(String(64), nullable=True)
    judge_can_be_gs: Mapped[int | None] = mapped_column(Integer, nullable=True)
    judge_games: Mapped[int | None] = mapped_column(Integer, nullable=True)
    judge_tournaments: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_sync_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class PlayerYearStats(Base):
    __tablename__ = "player_year_stats"
    __table_args__ = (UniqueConstraint("player_id", "year", name="uq_player_year"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    player_id: Mapped[int] = mapped_column(ForeignKey("players.id", ondelete="CASCADE"), index=True)
    year: Mapped[int] = mapped_column(Integer)
    total_games: Mapped[int] = mapped_column(Integer, default=0)
    don_games: Mapped[int] = mapped_column(Integer, default=0)
    mafia_games: Mapped[int] = mapped_column(Integer, default=0)
    sheriff_games: Mapped[int] = mapped_column(Integer, default=0)
    civilian_games: Mapped[int] = mapped_column(Integer, default=0)
    elo_rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    extra_points: Mapped[float] = mapped_column(Float, default=0)


class Tournament(Base):
    __tablename__ = "tournaments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    stars: Mapped[int | None] = mapped_column(Integer, nullable=True)
    average_elo: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_fsm_rated: Mapped[bool] = mapped_column(Boolean, default=False)
    start_date: Mapped[date] = mapped_column(Date)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(String(32), default="SCHEDULED")
    chief_judge_id: Mapped[int | None] = mapped_column(ForeignKey("players.id"), nullable=True)
    game_count: Mapped[int] = mapped_column(Integer, default=0)
    last_sync_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class PlayerTournament(Base):
    __tablename__ = "player_tournaments"
    __table_args__ = (UniqueConstraint("player_id", "tournament_id", name="uq_player_tournament"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    player_id: Mapped[int] = mapped_column(ForeignKey("players.id", ondelete="CASCADE"), index=True)
    tournament_id: Mapped[int] = mapped_column(ForeignKey("tournaments.id", ondelete="CASCADE"), index=True)
    placement: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gg_points: Mapped[float | None] = mapped_column(Float, nullable=True)
    elo_change: Mapped[float | None] = mapped_column(Float, nullable=True)
    prize_money: Mapped[float | None] = mapped_column(Float, nullable=True)


class Game(Base):
    __tablename__ = "games"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    tournament_id: Mapped[int | None] = mapped_column(ForeignKey("tournaments.id"), nullable=True, index=True)
    played_on: Mapped[date] = mapped_column(Date)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    winner_team: Mapped[str | None] = mapped_column(String(16), nullable=True)
    status: Mapped[str] = mapped_column(String(32), default="COMPLETED")


class GameParticipation(Base):
    __tablename__ = "game_participations"
    __table_args__ = (UniqueConstraint("game_id", "player_id", name="uq_game_player"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    player_id: Mapped[int] = mapped_column(ForeignKey("players.id", ondelete="CASCADE"), index=True)
    game_id: Mapped[int] = mapped_column(ForeignKey("games.id", ondelete="CASCADE"), index=True)
    role: Mapped[str] = mapped_column(String(16))
    team: Mapped[str] = mapped_column(String(16))
    is_winner: Mapped[bool] = mapped_column(Boolean, default=False)
    performance_score: Mapped[int | None] = mapped_column(Integer, nullable=True)


class PlayerRoleStats(Base):
    __tablename__ = "player_role_stats"
    __table_args__ = (UniqueConstraint("player_id", "role", name="uq_player_role"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    player_id: Mapped[int] = mapped_column(ForeignKey("players.id", ondelete="CASCADE"), index=True)
    role: Mapped[str] = mapped_column(String(16))
    games_played: Mapped[int] = mapped_column(Integer, default=0)
    wins: Mapped[int] = mapped_column(Integer, default=0)
    losses: Mapped[int] = mapped_column(Integer, default=0)
    win_rate: Mapped[float] = mapped_column(Float, default=0)
    average_performance: Mapped[float] = mapped_column(Float, default=0)
    last_played: Mapped[date | None] = mapped_column(Date, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)
