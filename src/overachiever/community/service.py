"""
Community ratings and achievement tips.

Writes are upserts keyed on (user, target), so repeating a submission
replaces the previous one instead of adding a row.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import func, select

from overachiever.database import insert_for
from overachiever.db.models import AchievementTip, GameRating, User
from overachiever.sync.models import as_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()


def _check_range(value: int, field: str) -> None:
    if not 1 <= value <= 5:
        msg = f"{field} must be between 1 and 5"
        raise ValueError(msg)


# ---------------------------------------------------------------------------
# Ratings
# ---------------------------------------------------------------------------


async def upsert_rating(
    db: AsyncSession,
    user_id: int,
    game_id: int,
    rating: int,
    comment: str | None = None,
) -> GameRating:
    """
    Create or replace the user's rating of a game.

    Raises:
        ValueError: If the rating is outside 1..5.
    """
    _check_range(rating, "rating")
    now = datetime.now(timezone.utc)
    stmt = insert_for(db, GameRating).values(
        steam_id=user_id,
        game_id=game_id,
        rating=rating,
        comment=comment,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[GameRating.steam_id, GameRating.game_id],
        set_={"rating": rating, "comment": comment, "updated_at": now},
    )
    await db.execute(stmt)
    await db.commit()
    logger.info("game_rated", user_id=user_id, game_id=game_id, rating=rating)

    result = await db.execute(
        select(GameRating)
        .where(GameRating.steam_id == user_id)
        .where(GameRating.game_id == game_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def get_ratings(db: AsyncSession, game_id: int, limit: int = 50) -> dict[str, Any]:
    """Aggregate and recent ratings for a game."""
    agg = await db.execute(
        select(func.avg(GameRating.rating), func.count(GameRating.id)).where(GameRating.game_id == game_id)
    )
    avg_rating, rating_count = agg.one()

    result = await db.execute(
        select(GameRating, User.display_name)
        .join(User, User.steam_id == GameRating.steam_id)
        .where(GameRating.game_id == game_id)
        .order_by(GameRating.updated_at.desc(), GameRating.id.desc())
        .limit(limit)
    )
    return {
        "game_id": game_id,
        "avg_rating": round(float(avg_rating), 2) if avg_rating is not None else None,
        "rating_count": rating_count,
        "ratings": [
            {
                "user_id": r.steam_id,
                "display_name": name,
                "rating": r.rating,
                "comment": r.comment,
                "updated_at": as_utc(r.updated_at),
            }
            for r, name in result.all()
        ],
    }


# ---------------------------------------------------------------------------
# Tips
# ---------------------------------------------------------------------------


async def upsert_tip(
    db: AsyncSession,
    user_id: int,
    game_id: int,
    achievement_key: str,
    difficulty: int,
    tip: str,
) -> AchievementTip:
    """
    Create or replace the user's tip for an achievement.

    Raises:
        ValueError: If difficulty is outside 1..5 or the tip is blank.
    """
    _check_range(difficulty, "difficulty")
    if not tip.strip():
        msg = "tip must not be empty"
        raise ValueError(msg)
    now = datetime.now(timezone.utc)
    text = tip.strip()
    stmt = insert_for(db, AchievementTip).values(
        steam_id=user_id,
        game_id=game_id,
        achievement_key=achievement_key,
        difficulty=difficulty,
        tip=text,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[AchievementTip.steam_id, AchievementTip.game_id, AchievementTip.achievement_key],
        set_={"difficulty": difficulty, "tip": text, "updated_at": now},
    )
    await db.execute(stmt)
    await db.commit()
    logger.info("achievement_tip_saved", user_id=user_id, game_id=game_id, achievement_key=achievement_key)

    result = await db.execute(
        select(AchievementTip)
        .where(AchievementTip.steam_id == user_id)
        .where(AchievementTip.game_id == game_id)
        .where(AchievementTip.achievement_key == achievement_key)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def get_tips(db: AsyncSession, game_id: int, achievement_key: str, limit: int = 50) -> list[dict[str, Any]]:
    """Tips for one achievement, newest first."""
    result = await db.execute(
        select(AchievementTip, User.display_name)
        .join(User, User.steam_id == AchievementTip.steam_id)
        .where(AchievementTip.game_id == game_id)
        .where(AchievementTip.achievement_key == achievement_key)
        .order_by(AchievementTip.updated_at.desc(), AchievementTip.id.desc())
        .limit(limit)
    )
    return [
        {
            "user_id": t.steam_id,
            "display_name": name,
            "difficulty": t.difficulty,
            "tip": t.tip,
            "updated_at": as_utc(t.updated_at),
        }
        for t, name in result.all()
    ]
