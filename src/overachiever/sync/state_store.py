"""Load and persist per-user GameState / AchievementState and the schema cache.

Only the sync orchestrator calls the write path. The caller owns the
session and commits.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import select

from overachiever.database import insert_for
from overachiever.db.models import AchievementSchema, User, UserAchievement, UserGame
from overachiever.provider.models import SchemaEntry
from overachiever.sync.models import AchievementSnapshot, GameSnapshot, UserSnapshot, as_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

# Rows per multi-row INSERT, under SQLite's bound-parameter limit
_UPSERT_BATCH = 500


@dataclass(frozen=True)
class CachedSchema:
    game_id: int
    entries: list[SchemaEntry]
    cached_at: datetime


async def load_schema_cache(db: AsyncSession, game_ids: Iterable[int]) -> dict[int, CachedSchema]:
    """Cached schemas for ``game_ids`` in declaration order.

    A game that was cached with zero achievements has no rows and is
    therefore absent here; callers treat that as a cache miss.
    """
    ids = list(game_ids)
    if not ids:
        return {}
    result = await db.execute(
        select(AchievementSchema)
        .where(AchievementSchema.game_id.in_(ids))
        .order_by(AchievementSchema.game_id, AchievementSchema.position)
        .execution_options(populate_existing=True)
    )
    grouped: dict[int, list[AchievementSchema]] = {}
    for row in result.scalars().all():
        grouped.setdefault(row.game_id, []).append(row)

    cache: dict[int, CachedSchema] = {}
    for game_id, rows in grouped.items():
        cache[game_id] = CachedSchema(
            game_id=game_id,
            entries=[
                SchemaEntry(
                    achievement_key=r.achievement_key,
                    name=r.display_name,
                    description=r.description,
                    icon=r.icon,
                    icon_gray=r.icon_gray,
                )
                for r in rows
            ],
            # Oldest row decides freshness
            cached_at=min(as_utc(r.cached_at) or r.cached_at for r in rows),
        )
    return cache


async def load_user_snapshot(db: AsyncSession, user_id: int) -> UserSnapshot | None:
    """Rebuild the stored state for ``user_id``, or None if nothing was ever scanned."""
    games_result = await db.execute(
        select(UserGame).where(UserGame.steam_id == user_id).order_by(UserGame.game_id)
    )
    game_rows = games_result.scalars().all()
    if not game_rows:
        return None

    ach_result = await db.execute(
        select(UserAchievement, AchievementSchema)
        .outerjoin(
            AchievementSchema,
            (AchievementSchema.game_id == UserAchievement.game_id)
            & (AchievementSchema.achievement_key == UserAchievement.achievement_key),
        )
        .where(UserAchievement.steam_id == user_id)
    )
    per_game: dict[int, list[tuple[int, AchievementSnapshot]]] = {}
    for ach, schema in ach_result.all():
        position = schema.position if schema is not None else 1_000_000
        per_game.setdefault(ach.game_id, []).append(
            (
                position,
                AchievementSnapshot(
                    key=ach.achievement_key,
                    name=schema.display_name if schema is not None else ach.achievement_key,
                    unlocked=ach.unlocked,
                    unlock_time=as_utc(ach.unlock_time),
                    unlock_time_estimated=ach.unlock_time_estimated,
                    description=schema.description if schema is not None else None,
                    icon=schema.icon if schema is not None else "",
                    icon_gray=schema.icon_gray if schema is not None else "",
                ),
            )
        )

    games: dict[int, GameSnapshot] = {}
    latest = None
    for row in game_rows:
        achievements: list[AchievementSnapshot] | None = None
        if row.achievements_total is not None:
            ordered = sorted(per_game.get(row.game_id, []), key=lambda item: (item[0], item[1].key))
            achievements = [a for _, a in ordered]
        last_sync = as_utc(row.last_sync)
        if last_sync is not None and (latest is None or last_sync > latest):
            latest = last_sync
        games[row.game_id] = GameSnapshot(
            game_id=row.game_id,
            name=row.name,
            playtime_minutes=row.playtime_minutes,
            last_played=as_utc(row.last_played_at),
            icon_url=row.icon_url,
            achievements=achievements,
            last_sync=last_sync,
        )
    taken_at = latest or as_utc(game_rows[0].added_at) or game_rows[0].added_at
    return UserSnapshot(user_id=user_id, taken_at=taken_at, games=games)


async def save_schemas(db: AsyncSession, schemas: Mapping[int, list[SchemaEntry]], cached_at: datetime) -> None:
    """Insert or refresh schema rows. Keys the provider dropped are kept."""
    rows = [
        {
            "game_id": game_id,
            "achievement_key": entry.achievement_key,
            "display_name": entry.name,
            "description": entry.description,
            "icon": entry.icon,
            "icon_gray": entry.icon_gray,
            "position": position,
            "cached_at": cached_at,
        }
        for game_id, entries in schemas.items()
        for position, entry in enumerate(entries)
    ]
    if not rows:
        return
    # Shared across users: concurrent scans of one game both write here
    for start in range(0, len(rows), _UPSERT_BATCH):
        stmt = insert_for(db, AchievementSchema).values(rows[start : start + _UPSERT_BATCH])
        stmt = stmt.on_conflict_do_update(
            index_elements=[AchievementSchema.game_id, AchievementSchema.achievement_key],
            set_={
                "display_name": stmt.excluded.display_name,
                "description": stmt.excluded.description,
                "icon": stmt.excluded.icon,
                "icon_gray": stmt.excluded.icon_gray,
                "position": stmt.excluded.position,
                "cached_at": stmt.excluded.cached_at,
            },
        )
        await db.execute(stmt)


async def save_user_snapshot(
    db: AsyncSession,
    snapshot: UserSnapshot,
    refreshed_game_ids: Collection[int],
    scanned_at: datetime,
) -> None:
    """Write every game of a merged snapshot and the achievements of refreshed games."""
    user = await db.get(User, snapshot.user_id)
    if user is None:
        user = User(steam_id=snapshot.user_id, display_name=str(snapshot.user_id))
        db.add(user)
    user.last_scan_at = scanned_at

    result = await db.execute(select(UserGame).where(UserGame.steam_id == snapshot.user_id))
    stored_games = {row.game_id: row for row in result.scalars().all()}
    for game in snapshot.games.values():
        row = stored_games.get(game.game_id)
        if row is None:
            row = UserGame(steam_id=snapshot.user_id, game_id=game.game_id, added_at=scanned_at)
            db.add(row)
        elif row.first_played_at is None and row.playtime_minutes == 0 and (game.playtime_minutes or 0) > 0:
            # Owned but unplayed until now
            row.first_played_at = game.last_played or scanned_at
        row.name = game.name
        row.playtime_minutes = game.playtime_minutes or 0
        row.last_played_at = game.last_played
        row.icon_url = game.icon_url
        row.achievements_total = game.achievements_total
        row.achievements_unlocked = game.achievements_unlocked
        row.last_sync = game.last_sync

    refreshed = [gid for gid in refreshed_game_ids if gid in snapshot.games]
    if refreshed:
        result = await db.execute(
            select(UserAchievement)
            .where(UserAchievement.steam_id == snapshot.user_id)
            .where(UserAchievement.game_id.in_(refreshed))
        )
        stored_achs = {(r.game_id, r.achievement_key): r for r in result.scalars().all()}
        for game_id in refreshed:
            for ach in snapshot.games[game_id].achievements or []:
                row = stored_achs.get((game_id, ach.key))
                if row is None:
                    row = UserAchievement(steam_id=snapshot.user_id, game_id=game_id, achievement_key=ach.key)
                    db.add(row)
                row.unlocked = ach.unlocked
                row.unlock_time = ach.unlock_time
                row.unlock_time_estimated = ach.unlock_time_estimated
    await db.flush()
