"""FastAPI application factory."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI

from overachiever.community.router import router as community_router
from overachiever.config import Settings, get_settings
from overachiever.database import close_db, init_db, new_session
from overachiever.games.router import router as games_router
from overachiever.health.router import router as health_router
from overachiever.middleware import setup_middleware
from overachiever.provider.client import ProviderClient
from overachiever.provider.steam import SteamClient
from overachiever.redis_client import close_redis, get_redis, init_redis
from overachiever.sync.engine import SyncEngine
from overachiever.sync.orchestrator import SyncOrchestrator
from overachiever.sync.rate_limiter import RateLimiter
from overachiever.sync.router import router as sync_router
from overachiever.sync.scan_queue import ScanQueue
from overachiever.ws.bridge import ScanRequestBridge
from overachiever.ws.manager import NotificationHub
from overachiever.ws.router import router as ws_router

logger = logging.getLogger(__name__)


def build_engine(settings: Settings, hub: NotificationHub, provider: ProviderClient) -> SyncEngine:
    """Wire the shared RateLimiter, ScanQueue and SyncOrchestrator into a SyncEngine."""
    limiter = RateLimiter(
        max_units=settings.provider_quota_units,
        window_seconds=settings.provider_quota_window_seconds,
        max_wait_seconds=settings.provider_quota_max_wait_seconds,
    )
    orchestrator = SyncOrchestrator(
        provider,
        limiter,
        hub,
        new_session,
        fanout=settings.scan_fanout,
        call_timeout=settings.provider_call_timeout_seconds,
        retry_attempts=settings.provider_retry_attempts,
        retry_backoff=settings.provider_retry_backoff_seconds,
        schema_ttl=timedelta(hours=settings.schema_cache_ttl_hours),
    )
    return SyncEngine(
        ScanQueue(min_interval_seconds=settings.scan_min_interval_seconds),
        orchestrator,
        enabled=bool(settings.steam_api_key),
        max_concurrent_scans=settings.max_concurrent_scans,
        persistence_retry_attempts=settings.persistence_retry_attempts,
        persistence_retry_delay=settings.persistence_retry_delay_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings.redis_url)

    # Feed scheduled scan requests from the arq worker into the local engine
    bridge = ScanRequestBridge(get_redis(), app.state.sync_engine, settings.scan_request_channel)
    bridge_task = asyncio.create_task(bridge.start())

    yield

    await bridge.stop()
    bridge_task.cancel()
    try:
        await bridge_task
    except asyncio.CancelledError:
        pass

    await app.state.sync_engine.shutdown()
    await app.state.provider.aclose()
    await close_db()
    await close_redis()


def create_app(settings: Settings | None = None, provider: ProviderClient | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    ``provider`` replaces the Steam client (tests pass a fake).
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Overachiever API",
        description="Steam library and achievement progress tracking",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    if provider is None:
        provider = SteamClient(
            api_key=settings.steam_api_key,
            base_url=settings.steam_api_base_url,
            timeout=settings.provider_call_timeout_seconds,
        )
    hub = NotificationHub(max_connections_per_user=settings.ws_max_connections_per_user)
    app.state.provider = provider
    app.state.hub = hub
    app.state.sync_engine = build_engine(settings, hub, provider)
    if not app.state.sync_engine.enabled:
        logger.warning("Steam API key not configured, scans are disabled")

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(sync_router)
    app.include_router(games_router)
    app.include_router(community_router)
    app.include_router(ws_router)

    return app


app = create_app()
