"""Games Pydantic schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class GameResponse(BaseModel):
    """One game in the user's library."""

    game_id: int
    name: str
    playtime_minutes: int
    last_played_at: datetime | None = None
    first_played_at: datetime | None = None
    icon_url: str | None = None
    achievements_total: int | None = None
    achievements_unlocked: int | None = None
    completion_percent: float | None = None
    last_sync: datetime | None = None


class LibrarySummaryResponse(BaseModel):
    has_data: bool
    game_count: int
    achievement_count: int
    unlocked_count: int
    last_sync: datetime | None = None


class AchievementResponse(BaseModel):
    achievement_key: str
    name: str
    description: str | None = None
    icon: str = ""
    unlocked: bool
    unlock_time: datetime | None = None
    unlock_time_estimated: bool = False


class ActivityEntryResponse(BaseModel):
    """An unlock (``type == "achievement"``) or a first play (``type == "first_play"``)."""

    type: str
    timestamp: datetime
    game_id: int
    game_name: str
    game_icon_url: str | None = None
    achievement_key: str | None = None
    achievement_name: str | None = None
    achievement_icon: str | None = None
    estimated: bool = False
