"""Typed records returned by a ProviderClient.

Every field the provider may omit is optional here; parsing never
assumes a clean payload.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class LibraryEntry:
    """One owned game from the library listing."""

    game_id: int
    name: str
    playtime_minutes: int | None = None
    last_played: datetime | None = None
    icon_url: str | None = None


@dataclass(frozen=True)
class SchemaEntry:
    """Static metadata for one achievement, in provider declaration order."""

    achievement_key: str
    name: str
    description: str | None = None
    icon: str = ""
    icon_gray: str = ""


@dataclass(frozen=True)
class UnlockEntry:
    """A user's unlock state for one achievement."""

    achievement_key: str
    unlocked: bool
    unlock_time: datetime | None = None
