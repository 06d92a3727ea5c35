"""Tests for the Steam Web API client and its payload parsers."""

from __future__ import annotations

from datetime import datetime, timezone

import httpx
import pytest

from overachiever.provider.client import Malformed, NotFound, RateLimited, Transient, Unauthorized
from overachiever.provider.steam import (
    OWNED_GAMES_PATH,
    PLAYER_ACHIEVEMENTS_PATH,
    SCHEMA_PATH,
    SteamClient,
    parse_library,
    parse_schema,
    parse_unlocks,
)

STEAM_ID = 76561197960287930

OWNED_GAMES = {
    "response": {
        "game_count": 3,
        "games": [
            {
                "appid": 620,
                "name": "Portal 2",
                "playtime_forever": 1340,
                "rtime_last_played": 1700000000,
                "img_icon_url": "abc123",
            },
            {"appid": 400, "name": "Portal", "playtime_forever": 0, "rtime_last_played": 0},
            {"name": "no appid"},
        ],
    }
}

SCHEMA = {
    "game": {
        "gameName": "Portal 2",
        "availableGameStats": {
            "achievements": [
                {"name": "ACH.SURVIVE_CONTAINER_RIDE", "displayName": "Wake Up Call", "icon": "i1", "icongray": "g1"},
                {"name": "ACH.WAKE_UP", "displayName": "You Monster", "description": "Reunite with GLaDOS"},
                {"name": "ACH.SURVIVE_CONTAINER_RIDE", "displayName": "duplicate"},
            ]
        },
    }
}

PLAYER_ACHIEVEMENTS = {
    "playerstats": {
        "steamID": str(STEAM_ID),
        "achievements": [
            {"apiname": "ACH.SURVIVE_CONTAINER_RIDE", "achieved": 1, "unlocktime": 1700000100},
            {"apiname": "ACH.WAKE_UP", "achieved": 0, "unlocktime": 0},
        ],
        "success": True,
    }
}


def _client(handler) -> SteamClient:
    return SteamClient(api_key="k", base_url="https://steam.test", transport=httpx.MockTransport(handler))


class TestParsers:
    def test_library(self) -> None:
        entries = parse_library(OWNED_GAMES)
        assert [e.game_id for e in entries] == [620, 400]
        portal2 = entries[0]
        assert portal2.playtime_minutes == 1340
        assert portal2.last_played == datetime.fromtimestamp(1700000000, tz=timezone.utc)
        assert portal2.icon_url.endswith("/620/abc123.jpg")
        assert entries[1].last_played is None
        assert entries[1].icon_url is None

    def test_library_without_games_key(self) -> None:
        assert parse_library({"response": {}}) == []

    def test_library_malformed(self) -> None:
        with pytest.raises(Malformed):
            parse_library({"unexpected": True})

    def test_schema_keeps_order_and_drops_duplicates(self) -> None:
        entries = parse_schema(SCHEMA)
        assert [e.achievement_key for e in entries] == ["ACH.SURVIVE_CONTAINER_RIDE", "ACH.WAKE_UP"]
        assert entries[0].name == "Wake Up Call"
        assert entries[0].icon_gray == "g1"
        assert entries[1].description == "Reunite with GLaDOS"

    def test_schema_for_game_without_stats(self) -> None:
        assert parse_schema({"game": {}}) == []

    def test_unlocks(self) -> None:
        entries = parse_unlocks(PLAYER_ACHIEVEMENTS)
        assert entries[0].unlocked is True
        assert entries[0].unlock_time == datetime.fromtimestamp(1700000100, tz=timezone.utc)
        assert entries[1].unlocked is False
        assert entries[1].unlock_time is None

    def test_unlock_without_timestamp(self) -> None:
        (entry,) = parse_unlocks({"playerstats": {"achievements": [{"apiname": "X", "achieved": 1}]}})
        assert entry.unlocked is True
        assert entry.unlock_time is None


class TestSteamClient:
    @pytest.mark.asyncio
    async def test_fetch_library_sends_key_and_steamid(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=OWNED_GAMES)

        client = _client(handler)
        entries = await client.fetch_library(STEAM_ID)
        await client.aclose()

        assert len(entries) == 2
        assert seen[0].url.path == OWNED_GAMES_PATH
        assert seen[0].url.params["key"] == "k"
        assert seen[0].url.params["steamid"] == str(STEAM_ID)

    @pytest.mark.asyncio
    async def test_fetch_schema_and_unlocks(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == SCHEMA_PATH:
                return httpx.Response(200, json=SCHEMA)
            assert request.url.path == PLAYER_ACHIEVEMENTS_PATH
            return httpx.Response(200, json=PLAYER_ACHIEVEMENTS)

        client = _client(handler)
        schema = await client.fetch_schema(620)
        unlocks = await client.fetch_unlocks(STEAM_ID, 620)
        await client.aclose()
        assert len(schema) == 2
        assert sum(u.unlocked for u in unlocks) == 1

    @pytest.mark.asyncio
    async def test_game_without_stats_has_no_unlocks(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400, json={"playerstats": {"error": "Requested app has no stats", "success": False}}
            )

        client = _client(handler)
        assert await client.fetch_unlocks(STEAM_ID, 400) == []
        await client.aclose()

    @pytest.mark.asyncio
    async def test_private_profile_is_unauthorized(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, json={})

        client = _client(handler)
        with pytest.raises(Unauthorized) as exc_info:
            await client.fetch_library(STEAM_ID)
        await client.aclose()
        assert exc_info.value.retryable is False
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "error"),
        [(429, RateLimited), (500, Transient), (503, Transient), (404, NotFound)],
    )
    async def test_status_mapping(self, status: int, error: type[Exception]) -> None:
        client = _client(lambda request: httpx.Response(status, json={}))
        with pytest.raises(error):
            await client.fetch_schema(620)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler)
        with pytest.raises(Transient) as exc_info:
            await client.fetch_library(STEAM_ID)
        await client.aclose()
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_non_json_body_is_malformed(self) -> None:
        client = _client(lambda request: httpx.Response(200, content=b"<html>maintenance</html>"))
        with pytest.raises(Malformed):
            await client.fetch_library(STEAM_ID)
        await client.aclose()
