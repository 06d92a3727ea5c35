"""Append-only progress history and scan run log.

Revision ID: 002_history_tables
Revises: 001_initial
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

revision: str = "002_history_tables"
down_revision: str | None = "001_initial"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create achievement_history and scan_runs."""
    op.create_table(
        "achievement_history",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "steam_id", sa.BigInteger(), sa.ForeignKey("users.steam_id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_games", sa.Integer(), nullable=False),
        sa.Column("total_achievements", sa.Integer(), nullable=False),
        sa.Column("unlocked_achievements", sa.Integer(), nullable=False),
        sa.Column("games_with_achievements", sa.Integer(), nullable=False),
        sa.Column("avg_completion_percent", sa.Float(), nullable=True),
        sa.Column("unresolved_games", sa.Integer(), server_default="0", nullable=False),
    )
    op.create_index("ix_achievement_history_steam_id", "achievement_history", ["steam_id"])
    op.create_index(
        "ix_achievement_history_user_recorded", "achievement_history", ["steam_id", "recorded_at", "id"]
    )

    op.create_table(
        "scan_runs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("ticket_id", sa.String(36), nullable=False, unique=True),
        sa.Column(
            "steam_id", sa.BigInteger(), sa.ForeignKey("users.steam_id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("reason", sa.String(16), nullable=False),
        sa.Column("forced", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("games_total", sa.Integer(), server_default="0", nullable=False),
        sa.Column("games_scanned", sa.Integer(), server_default="0", nullable=False),
        sa.Column("games_failed", sa.Integer(), server_default="0", nullable=False),
        sa.Column("new_games", sa.Integer(), server_default="0", nullable=False),
        sa.Column("new_unlocks", sa.Integer(), server_default="0", nullable=False),
        sa.Column("error_kind", sa.String(32), nullable=True),
    )
    op.create_index("ix_scan_runs_steam_id", "scan_runs", ["steam_id"])


def downgrade() -> None:
    """Drop history tables."""
    op.drop_index("ix_scan_runs_steam_id", table_name="scan_runs")
    op.drop_table("scan_runs")
    op.drop_index("ix_achievement_history_user_recorded", table_name="achievement_history")
    op.drop_index("ix_achievement_history_steam_id", table_name="achievement_history")
    op.drop_table("achievement_history")
