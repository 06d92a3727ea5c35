"""Read-side queries over a user's stored games and achievements."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, func, select

from overachiever.db.models import AchievementSchema, UserAchievement, UserGame
from overachiever.sync.models import as_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession


def _completion(unlocked: int | None, total: int | None) -> float | None:
    if not total:
        return None
    return round((unlocked or 0) / total * 100, 2)


async def list_games(db: AsyncSession, user_id: int) -> list[dict[str, Any]]:
    """All games of a user, ordered by name."""
    result = await db.execute(
        select(UserGame).where(UserGame.steam_id == user_id).order_by(func.lower(UserGame.name), UserGame.game_id)
    )
    return [
        {
            "game_id": g.game_id,
            "name": g.name,
            "playtime_minutes": g.playtime_minutes,
            "last_played_at": as_utc(g.last_played_at),
            "first_played_at": as_utc(g.first_played_at),
            "icon_url": g.icon_url,
            "achievements_total": g.achievements_total,
            "achievements_unlocked": g.achievements_unlocked,
            "completion_percent": _completion(g.achievements_unlocked, g.achievements_total),
            "last_sync": as_utc(g.last_sync),
        }
        for g in result.scalars().all()
    ]


async def get_summary(db: AsyncSession, user_id: int) -> dict[str, Any]:
    """Counts across the user's library."""
    result = await db.execute(
        select(
            func.count(UserGame.game_id),
            func.coalesce(func.sum(UserGame.achievements_total), 0),
            func.coalesce(func.sum(UserGame.achievements_unlocked), 0),
            func.max(UserGame.last_sync),
        ).where(UserGame.steam_id == user_id)
    )
    game_count, achievement_count, unlocked_count, last_sync = result.one()
    return {
        "has_data": game_count > 0,
        "game_count": game_count,
        "achievement_count": int(achievement_count),
        "unlocked_count": int(unlocked_count),
        "last_sync": as_utc(last_sync),
    }


async def get_game_achievements(db: AsyncSession, user_id: int, game_id: int) -> list[dict[str, Any]]:
    """
    Achievements of one owned game in schema declaration order.

    Raises:
        LookupError: If the user does not own the game.
    """
    game = await db.get(UserGame, (user_id, game_id))
    if game is None:
        msg = "Game not found"
        raise LookupError(msg)

    result = await db.execute(
        select(UserAchievement, AchievementSchema)
        .outerjoin(
            AchievementSchema,
            and_(
                AchievementSchema.game_id == UserAchievement.game_id,
                AchievementSchema.achievement_key == UserAchievement.achievement_key,
            ),
        )
        .where(UserAchievement.steam_id == user_id)
        .where(UserAchievement.game_id == game_id)
    )
    rows = []
    for ach, schema in result.all():
        rows.append(
            (
                schema.position if schema is not None else 1_000_000,
                {
                    "achievement_key": ach.achievement_key,
                    "name": schema.display_name if schema is not None else ach.achievement_key,
                    "description": schema.description if schema is not None else None,
                    "icon": (schema.icon if ach.unlocked else schema.icon_gray) if schema is not None else "",
                    "unlocked": ach.unlocked,
                    "unlock_time": as_utc(ach.unlock_time),
                    "unlock_time_estimated": ach.unlock_time_estimated,
                },
            )
        )
    rows.sort(key=lambda item: (item[0], item[1]["achievement_key"]))
    return [row for _, row in rows]


async def get_activity(db: AsyncSession, user_id: int, limit: int = 50) -> list[dict[str, Any]]:
    """Recent unlocks and first plays merged, newest first."""
    unlocks = await db.execute(
        select(UserAchievement, UserGame, AchievementSchema)
        .join(
            UserGame,
            and_(UserGame.steam_id == UserAchievement.steam_id, UserGame.game_id == UserAchievement.game_id),
        )
        .outerjoin(
            AchievementSchema,
            and_(
                AchievementSchema.game_id == UserAchievement.game_id,
                AchievementSchema.achievement_key == UserAchievement.achievement_key,
            ),
        )
        .where(UserAchievement.steam_id == user_id)
        .where(UserAchievement.unlocked.is_(True))
        .where(UserAchievement.unlock_time.is_not(None))
        .order_by(UserAchievement.unlock_time.desc())
        .limit(limit)
    )
    entries: list[dict[str, Any]] = [
        {
            "type": "achievement",
            "timestamp": as_utc(ach.unlock_time),
            "game_id": game.game_id,
            "game_name": game.name,
            "game_icon_url": game.icon_url,
            "achievement_key": ach.achievement_key,
            "achievement_name": schema.display_name if schema is not None else ach.achievement_key,
            "achievement_icon": schema.icon if schema is not None else "",
            "estimated": ach.unlock_time_estimated,
        }
        for ach, game, schema in unlocks.all()
    ]

    first_plays = await db.execute(
        select(UserGame)
        .where(UserGame.steam_id == user_id)
        .where(UserGame.first_played_at.is_not(None))
        .order_by(UserGame.first_played_at.desc())
        .limit(limit)
    )
    entries.extend(
        {
            "type": "first_play",
            "timestamp": as_utc(game.first_played_at),
            "game_id": game.game_id,
            "game_name": game.name,
            "game_icon_url": game.icon_url,
        }
        for game in first_plays.scalars().all()
    )

    entries.sort(key=lambda e: e["timestamp"], reverse=True)
    return entries[:limit]
