"""ORM models for the overachiever schema.

Tables are created by the Alembic revisions in ``alembic/versions``; the
metadata here is kept in step so tests can build the schema directly.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from overachiever.db.base import Base

# BIGSERIAL on PostgreSQL, INTEGER PRIMARY KEY (rowid alias) on SQLite
SurrogateId = BigInteger().with_variant(Integer, "sqlite")


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class User(Base):
    """A Steam account known to the service. Identity comes from the OpenID handshake."""

    __tablename__ = "users"

    steam_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    avatar_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    last_seen: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_scan_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    games: Mapped[list[UserGame]] = relationship("UserGame", back_populates="user")


# ---------------------------------------------------------------------------
# Per-user game and achievement state (written only by scans)
# ---------------------------------------------------------------------------


class UserGame(Base):
    """GameState: one row per (user, game)."""

    __tablename__ = "user_games"
    __table_args__ = (
        CheckConstraint(
            "achievements_unlocked IS NULL OR achievements_total IS NULL "
            "OR achievements_unlocked <= achievements_total",
            name="ck_user_games_unlocked_le_total",
        ),
    )

    steam_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.steam_id", ondelete="CASCADE"), primary_key=True
    )
    game_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    playtime_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_played_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    first_played_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    icon_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    achievements_total: Mapped[int | None] = mapped_column(Integer, nullable=True)
    achievements_unlocked: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_sync: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    user: Mapped[User] = relationship("User", back_populates="games")


class UserAchievement(Base):
    """AchievementState: one row per (user, game, achievement key)."""

    __tablename__ = "user_achievements"

    steam_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.steam_id", ondelete="CASCADE"), primary_key=True
    )
    game_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    achievement_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    unlocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    unlock_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    unlock_time_estimated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class AchievementSchema(Base):
    """Per-game achievement metadata cache, shared by all users."""

    __tablename__ = "achievement_schemas"

    game_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    achievement_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    icon: Mapped[str] = mapped_column(Text, nullable=False, default="")
    icon_gray: Mapped[str] = mapped_column(Text, nullable=False, default="")
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cached_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# History (append-only)
# ---------------------------------------------------------------------------


class AchievementHistory(Base):
    """One HistorySnapshot row per completed scan."""

    __tablename__ = "achievement_history"

    id: Mapped[int] = mapped_column(SurrogateId, primary_key=True, autoincrement=True)
    steam_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.steam_id", ondelete="CASCADE"), nullable=False, index=True
    )
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    total_games: Mapped[int] = mapped_column(Integer, nullable=False)
    total_achievements: Mapped[int] = mapped_column(Integer, nullable=False)
    unlocked_achievements: Mapped[int] = mapped_column(Integer, nullable=False)
    games_with_achievements: Mapped[int] = mapped_column(Integer, nullable=False)
    avg_completion_percent: Mapped[float | None] = mapped_column(Float, nullable=True)
    unresolved_games: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class ScanRun(Base):
    """Run log: one row per ticket that reached a terminal state."""

    __tablename__ = "scan_runs"

    id: Mapped[int] = mapped_column(SurrogateId, primary_key=True, autoincrement=True)
    ticket_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    steam_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.steam_id", ondelete="CASCADE"), nullable=False, index=True
    )
    reason: Mapped[str] = mapped_column(String(16), nullable=False)
    forced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    games_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    games_scanned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    games_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    new_games: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    new_unlocks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_kind: Mapped[str | None] = mapped_column(String(32), nullable=True)


# ---------------------------------------------------------------------------
# Community (request/response surface, upsert per user + target)
# ---------------------------------------------------------------------------


class GameRating(Base):
    """A user's 1-5 rating of a game, one per (user, game)."""

    __tablename__ = "game_ratings"
    __table_args__ = (
        UniqueConstraint("steam_id", "game_id", name="uq_game_ratings_user_game"),
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_game_ratings_range"),
    )

    id: Mapped[int] = mapped_column(SurrogateId, primary_key=True, autoincrement=True)
    steam_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.steam_id", ondelete="CASCADE"), nullable=False
    )
    game_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    rating: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class AchievementTip(Base):
    """A user's difficulty rating and tip for one achievement."""

    __tablename__ = "achievement_tips"
    __table_args__ = (
        UniqueConstraint("steam_id", "game_id", "achievement_key", name="uq_achievement_tips_user_target"),
        CheckConstraint("difficulty >= 1 AND difficulty <= 5", name="ck_achievement_tips_range"),
    )

    id: Mapped[int] = mapped_column(SurrogateId, primary_key=True, autoincrement=True)
    steam_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.steam_id", ondelete="CASCADE"), nullable=False
    )
    game_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    achievement_key: Mapped[str] = mapped_column(String(255), nullable=False)
    difficulty: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    tip: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
