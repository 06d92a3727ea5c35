"""Steam Web API implementation of ProviderClient."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from overachiever.provider.client import (
    Malformed,
    NotFound,
    ProviderError,
    RateLimited,
    Transient,
    Unauthorized,
)
from overachiever.provider.models import LibraryEntry, SchemaEntry, UnlockEntry

logger = structlog.get_logger()

OWNED_GAMES_PATH = "/IPlayerService/GetOwnedGames/v1/"
SCHEMA_PATH = "/ISteamUserStats/GetSchemaForGame/v2/"
PLAYER_ACHIEVEMENTS_PATH = "/ISteamUserStats/GetPlayerAchievements/v1/"
ICON_URL_TEMPLATE = "https://media.steampowered.com/steamcommunity/public/images/apps/{appid}/{hash}.jpg"

# Steam answers 400 with this message for games that have no achievements
_NO_STATS_MARKERS = ("no stats", "has no stats")


def _from_unix(value: Any) -> datetime | None:
    """Steam uses 0 for "never"; anything unparseable is treated as absent."""
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_library(body: Any) -> list[LibraryEntry]:
    """Parse a GetOwnedGames body. Entries without an appid are skipped."""
    if not isinstance(body, dict) or not isinstance(body.get("response"), dict):
        raise Malformed("GetOwnedGames: missing 'response' object")
    games = body["response"].get("games", [])
    if not isinstance(games, list):
        raise Malformed("GetOwnedGames: 'games' is not a list")

    entries: list[LibraryEntry] = []
    for raw in games:
        if not isinstance(raw, dict):
            continue
        appid = _as_int(raw.get("appid"))
        if appid is None:
            continue
        icon_hash = raw.get("img_icon_url") or None
        entries.append(
            LibraryEntry(
                game_id=appid,
                name=str(raw.get("name") or f"App {appid}"),
                playtime_minutes=_as_int(raw.get("playtime_forever")),
                last_played=_from_unix(raw.get("rtime_last_played")),
                icon_url=ICON_URL_TEMPLATE.format(appid=appid, hash=icon_hash) if icon_hash else None,
            )
        )
    return entries


def parse_schema(body: Any) -> list[SchemaEntry]:
    """Parse a GetSchemaForGame body, preserving declaration order."""
    if not isinstance(body, dict) or not isinstance(body.get("game"), dict):
        raise Malformed("GetSchemaForGame: missing 'game' object")
    stats = body["game"].get("availableGameStats") or {}
    achievements = stats.get("achievements", []) if isinstance(stats, dict) else []
    if not isinstance(achievements, list):
        raise Malformed("GetSchemaForGame: 'achievements' is not a list")

    entries: list[SchemaEntry] = []
    seen: set[str] = set()
    for raw in achievements:
        if not isinstance(raw, dict) or not raw.get("name"):
            continue
        key = str(raw["name"])
        if key in seen:
            continue
        seen.add(key)
        entries.append(
            SchemaEntry(
                achievement_key=key,
                name=str(raw.get("displayName") or key),
                description=raw.get("description") or None,
                icon=str(raw.get("icon") or ""),
                icon_gray=str(raw.get("icongray") or ""),
            )
        )
    return entries


def parse_unlocks(body: Any) -> list[UnlockEntry]:
    """Parse a GetPlayerAchievements body."""
    if not isinstance(body, dict) or not isinstance(body.get("playerstats"), dict):
        raise Malformed("GetPlayerAchievements: missing 'playerstats' object")
    achievements = body["playerstats"].get("achievements", [])
    if not isinstance(achievements, list):
        raise Malformed("GetPlayerAchievements: 'achievements' is not a list")

    entries: list[UnlockEntry] = []
    for raw in achievements:
        if not isinstance(raw, dict) or not raw.get("apiname"):
            continue
        unlocked = _as_int(raw.get("achieved")) == 1
        entries.append(
            UnlockEntry(
                achievement_key=str(raw["apiname"]),
                unlocked=unlocked,
                unlock_time=_from_unix(raw.get("unlocktime")) if unlocked else None,
            )
        )
    return entries


class SteamClient:
    """Performs single Steam Web API calls and maps failures to ProviderError."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.steampowered.com",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, params: dict[str, Any]) -> tuple[int, Any]:
        try:
            response = await self._client.get(path, params={"key": self.api_key, "format": "json", **params})
        except httpx.TimeoutException as e:
            raise Transient(f"{path}: timed out") from e
        except httpx.TransportError as e:
            raise Transient(f"{path}: {e}") from e

        status = response.status_code
        if status == 429:
            raise RateLimited(f"{path}: throttled", status_code=status)
        if status in (401, 403):
            raise Unauthorized(f"{path}: access denied", status_code=status)
        if status == 404:
            raise NotFound(f"{path}: not found", status_code=status)
        if status >= 500:
            raise Transient(f"{path}: upstream error {status}", status_code=status)

        try:
            body = response.json()
        except ValueError as e:
            raise Malformed(f"{path}: response is not JSON", status_code=status) from e
        return status, body

    async def fetch_library(self, user_ref: int) -> list[LibraryEntry]:
        status, body = await self._get(
            OWNED_GAMES_PATH,
            {"steamid": user_ref, "include_appinfo": 1, "include_played_free_games": 1},
        )
        if status >= 400:
            raise ProviderError(f"GetOwnedGames: unexpected status {status}", status_code=status)
        entries = parse_library(body)
        logger.debug("steam_library_fetched", steam_id=user_ref, games=len(entries))
        return entries

    async def fetch_schema(self, game_id: int) -> list[SchemaEntry]:
        status, body = await self._get(SCHEMA_PATH, {"appid": game_id})
        if status >= 400:
            raise NotFound(f"GetSchemaForGame: status {status} for app {game_id}", status_code=status)
        return parse_schema(body)

    async def fetch_unlocks(self, user_ref: int, game_id: int) -> list[UnlockEntry]:
        status, body = await self._get(PLAYER_ACHIEVEMENTS_PATH, {"steamid": user_ref, "appid": game_id})
        if status >= 400:
            stats = body.get("playerstats", {}) if isinstance(body, dict) else {}
            error = str(stats.get("error", "")).lower() if isinstance(stats, dict) else ""
            if any(marker in error for marker in _NO_STATS_MARKERS):
                return []
            if "not public" in error:
                raise Unauthorized(f"GetPlayerAchievements: {error}", status_code=status)
            raise NotFound(f"GetPlayerAchievements: status {status} for app {game_id}", status_code=status)
        return parse_unlocks(body)
