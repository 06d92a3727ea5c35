"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncGenerator, Iterable
from dataclasses import replace
from datetime import datetime

os.environ["OVR_JWT_SECRET"] = "test-secret"
os.environ["OVR_STEAM_API_KEY"] = "test-key"
os.environ["OVR_LOG_FORMAT"] = "console"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from overachiever.auth.jwt import create_access_token
from overachiever.config import Settings, get_settings
from overachiever.database import close_db, get_engine, init_db, new_session
from overachiever.db import models  # noqa: F401
from overachiever.db.base import Base
from overachiever.main import create_app
from overachiever.provider.models import LibraryEntry, SchemaEntry, UnlockEntry
from overachiever.sync.engine import SyncEngine
from overachiever.sync.orchestrator import SyncOrchestrator
from overachiever.sync.rate_limiter import RateLimiter
from overachiever.sync.scan_queue import ScanQueue

get_settings.cache_clear()

STEAM_ID = 76561197960287930
OTHER_STEAM_ID = 76561197960287931


class FakeProvider:
    """Scripted ProviderClient.

    Errors queued with ``fail`` are raised once each, in order, by the
    matching call before it falls back to the scripted data.
    """

    def __init__(self) -> None:
        self.libraries: dict[int, list[LibraryEntry]] = {}
        self.schemas: dict[int, list[SchemaEntry]] = {}
        self.unlocks: dict[tuple[int, int], list[UnlockEntry]] = {}
        self.errors: dict[tuple[str, int | None], list[Exception]] = {}
        self.calls: list[tuple[str, int | None]] = []
        self.library_gate: asyncio.Event | None = None
        self.closed = False

    def add_game(
        self,
        user_id: int,
        game_id: int,
        name: str,
        *,
        playtime: int | None = 0,
        last_played: datetime | None = None,
        achievements: Iterable[tuple[str, bool, datetime | None]] = (),
    ) -> None:
        """Script one owned game. ``achievements`` is ``(key, unlocked, unlock_time)``."""
        entry = LibraryEntry(game_id=game_id, name=name, playtime_minutes=playtime, last_played=last_played)
        library = [e for e in self.libraries.get(user_id, []) if e.game_id != game_id]
        library.append(entry)
        self.libraries[user_id] = library

        achievements = list(achievements)
        self.schemas[game_id] = [SchemaEntry(achievement_key=key, name=key.title()) for key, _, _ in achievements]
        self.unlocks[(user_id, game_id)] = [
            UnlockEntry(achievement_key=key, unlocked=unlocked, unlock_time=when)
            for key, unlocked, when in achievements
        ]

    def set_playtime(self, user_id: int, game_id: int, minutes: int) -> None:
        self.libraries[user_id] = [
            replace(e, playtime_minutes=minutes) if e.game_id == game_id else e for e in self.libraries[user_id]
        ]

    def unlock(self, user_id: int, game_id: int, key: str, when: datetime | None) -> None:
        self.unlocks[(user_id, game_id)] = [
            UnlockEntry(achievement_key=u.achievement_key, unlocked=True, unlock_time=when)
            if u.achievement_key == key
            else u
            for u in self.unlocks[(user_id, game_id)]
        ]

    def fail(self, call: str, game_id: int | None = None, *errors: Exception) -> None:
        self.errors.setdefault((call, game_id), []).extend(errors)

    def count(self, call: str, game_id: int | None = None) -> int:
        return sum(1 for c in self.calls if c == (call, game_id))

    def _raise_queued(self, call: str, game_id: int | None) -> None:
        queued = self.errors.get((call, game_id))
        if queued:
            raise queued.pop(0)

    async def fetch_library(self, user_ref: int) -> list[LibraryEntry]:
        self.calls.append(("library", None))
        if self.library_gate is not None:
            await self.library_gate.wait()
        self._raise_queued("library", None)
        return list(self.libraries.get(user_ref, []))

    async def fetch_schema(self, game_id: int) -> list[SchemaEntry]:
        self.calls.append(("schema", game_id))
        self._raise_queued("schema", game_id)
        return list(self.schemas.get(game_id, []))

    async def fetch_unlocks(self, user_ref: int, game_id: int) -> list[UnlockEntry]:
        self.calls.append(("unlocks", game_id))
        self._raise_queued("unlocks", game_id)
        return list(self.unlocks.get((user_ref, game_id), []))

    async def aclose(self) -> None:
        self.closed = True


class RecordingHub:
    """Stands in for NotificationHub and keeps every published event."""

    def __init__(self) -> None:
        self.events: list[tuple[int, dict]] = []

    async def publish(self, user_id: int, event: dict) -> int:
        self.events.append((user_id, event))
        return 1

    def of_type(self, event_type: str) -> list[dict]:
        return [e for _, e in self.events if e["type"] == event_type]


async def wait_idle(engine: SyncEngine, timeout: float = 5.0) -> None:
    """Wait until every scan task the engine started has finished."""

    async def _poll() -> None:
        while engine.stats()["running_tasks"]:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'overachiever.db'}"


@pytest_asyncio.fixture
async def db(database_url: str) -> AsyncGenerator[None, None]:
    """Fresh SQLite schema for one test."""
    await init_db(database_url)
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await close_db()


@pytest_asyncio.fixture
async def db_session(db) -> AsyncGenerator[object, None]:
    """Direct database session for test setup and assertions."""
    async with new_session() as session:
        yield session


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def hub() -> RecordingHub:
    return RecordingHub()


@pytest.fixture
def orchestrator(db, provider: FakeProvider, hub: RecordingHub) -> SyncOrchestrator:
    return SyncOrchestrator(
        provider,
        RateLimiter(max_units=1000, window_seconds=60),
        hub,
        new_session,
        fanout=2,
        call_timeout=2.0,
        retry_attempts=2,
        retry_backoff=0,
    )


@pytest_asyncio.fixture
async def engine(orchestrator: SyncOrchestrator) -> AsyncGenerator[SyncEngine, None]:
    sync_engine = SyncEngine(ScanQueue(), orchestrator, persistence_retry_delay=0.01)
    yield sync_engine
    await sync_engine.shutdown()


@pytest.fixture
def settings(database_url: str) -> Settings:
    return Settings(
        database_url=database_url,
        steam_api_key="test-key",
        log_format="console",
        scan_min_interval_seconds=0,
        provider_retry_attempts=2,
        provider_retry_backoff_seconds=0,
        provider_call_timeout_seconds=2.0,
        persistence_retry_delay_seconds=0.01,
    )


@pytest_asyncio.fixture
async def app(db, settings: Settings, provider: FakeProvider) -> AsyncGenerator[object, None]:
    """App wired to the fake provider. The lifespan is not run; ``db`` initialises the database."""
    application = create_app(settings, provider=provider)
    yield application
    await application.state.sync_engine.shutdown()


@pytest.fixture
def token() -> str:
    return create_access_token(STEAM_ID, display_name="Gordon")


@pytest.fixture
def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated async HTTP client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def authed_client(client: AsyncClient, auth_headers: dict[str, str]) -> AsyncClient:
    client.headers.update(auth_headers)
    return client
