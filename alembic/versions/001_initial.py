"""Users, per-user game/achievement state, schema cache, community tables.

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create the core tables."""
    op.create_table(
        "users",
        sa.Column("steam_id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("display_name", sa.Text(), nullable=False),
        sa.Column("avatar_url", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_scan_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_users_last_scan_at", "users", ["last_scan_at"])

    # --- Per-user state, written only by scans ---
    op.create_table(
        "user_games",
        sa.Column(
            "steam_id", sa.BigInteger(), sa.ForeignKey("users.steam_id", ondelete="CASCADE"), primary_key=True
        ),
        sa.Column("game_id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("playtime_minutes", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_played_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("first_played_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("icon_url", sa.Text(), nullable=True),
        sa.Column("added_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("achievements_total", sa.Integer(), nullable=True),
        sa.Column("achievements_unlocked", sa.Integer(), nullable=True),
        sa.Column("last_sync", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "achievements_unlocked IS NULL OR achievements_total IS NULL "
            "OR achievements_unlocked <= achievements_total",
            name="ck_user_games_unlocked_le_total",
        ),
    )

    op.create_table(
        "user_achievements",
        sa.Column(
            "steam_id", sa.BigInteger(), sa.ForeignKey("users.steam_id", ondelete="CASCADE"), primary_key=True
        ),
        sa.Column("game_id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("achievement_key", sa.String(255), primary_key=True),
        sa.Column("unlocked", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("unlock_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("unlock_time_estimated", sa.Boolean(), server_default="false", nullable=False),
    )
    op.create_index(
        "ix_user_achievements_unlock_time",
        "user_achievements",
        ["steam_id", "unlock_time"],
        postgresql_where=sa.text("unlocked"),
    )

    # --- Shared schema cache ---
    op.create_table(
        "achievement_schemas",
        sa.Column("game_id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("achievement_key", sa.String(255), primary_key=True),
        sa.Column("display_name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("icon", sa.Text(), server_default="", nullable=False),
        sa.Column("icon_gray", sa.Text(), server_default="", nullable=False),
        sa.Column("position", sa.Integer(), server_default="0", nullable=False),
        sa.Column("cached_at", sa.DateTime(timezone=True), nullable=False),
    )

    # --- Community ---
    op.create_table(
        "game_ratings",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "steam_id", sa.BigInteger(), sa.ForeignKey("users.steam_id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("game_id", sa.BigInteger(), nullable=False),
        sa.Column("rating", sa.SmallInteger(), nullable=False),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("steam_id", "game_id", name="uq_game_ratings_user_game"),
        sa.CheckConstraint("rating >= 1 AND rating <= 5", name="ck_game_ratings_range"),
    )
    op.create_index("ix_game_ratings_game_id", "game_ratings", ["game_id"])

    op.create_table(
        "achievement_tips",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "steam_id", sa.BigInteger(), sa.ForeignKey("users.steam_id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("game_id", sa.BigInteger(), nullable=False),
        sa.Column("achievement_key", sa.String(255), nullable=False),
        sa.Column("difficulty", sa.SmallInteger(), nullable=False),
        sa.Column("tip", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("steam_id", "game_id", "achievement_key", name="uq_achievement_tips_user_target"),
        sa.CheckConstraint("difficulty >= 1 AND difficulty <= 5", name="ck_achievement_tips_range"),
    )


def downgrade() -> None:
    """Drop the core tables."""
    op.drop_table("achievement_tips")
    op.drop_index("ix_game_ratings_game_id", table_name="game_ratings")
    op.drop_table("game_ratings")
    op.drop_table("achievement_schemas")
    op.drop_index("ix_user_achievements_unlock_time", table_name="user_achievements")
    op.drop_table("user_achievements")
    op.drop_table("user_games")
    op.drop_index("ix_users_last_scan_at", table_name="users")
    op.drop_table("users")
