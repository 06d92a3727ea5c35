"""arq worker that triggers periodic library scans.

The worker never talks to Steam itself. It selects users whose last scan
is older than the configured interval and publishes a scheduled request
for each; API processes pick those up through ScanRequestBridge and apply
their own admission and cooldown rules.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import redis.asyncio as aioredis
from arq import cron
from sqlalchemy import or_, select

from overachiever.config import get_settings
from overachiever.database import close_db, init_db, new_session
from overachiever.db.models import User
from overachiever.redis_client import publish_json

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


async def select_due_users(db: AsyncSession, cutoff: datetime, limit: int) -> list[int]:
    """Users never scanned or last scanned before ``cutoff``, stalest first."""
    result = await db.execute(
        select(User.steam_id)
        .where(or_(User.last_scan_at.is_(None), User.last_scan_at < cutoff))
        .order_by(User.last_scan_at.asc().nulls_first(), User.steam_id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def enqueue_scheduled_scans(ctx: dict) -> int:  # type: ignore[type-arg]
    """Publish a scheduled scan request for every user that is due."""
    settings = get_settings()
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=settings.scheduled_scan_interval_minutes)

    async with new_session() as db:
        user_ids = await select_due_users(db, cutoff, settings.scheduled_scan_batch_size)

    redis_client: aioredis.Redis = ctx["redis"]
    for user_id in user_ids:
        await publish_json(
            redis_client,
            settings.scan_request_channel,
            {"user_id": user_id, "reason": "scheduled"},
        )

    if user_ids:
        logger.info("Published %d scheduled scan requests", len(user_ids))
    return len(user_ids)


async def startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize Redis + DB connections on worker startup."""
    settings = get_settings()
    await init_db(settings.database_url)
    ctx["redis"] = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=10,
    )
    logger.info("Scan scheduler started (interval=%d min)", settings.scheduled_scan_interval_minutes)


async def shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    redis_client = ctx.get("redis")
    if redis_client:
        await redis_client.aclose()
    await close_db()
    logger.info("Scan scheduler shut down")


class WorkerSettings:
    """arq worker settings for the scan scheduler."""

    functions = [enqueue_scheduled_scans]
    cron_jobs = [
        # Every 15 minutes; staleness is decided by scheduled_scan_interval_minutes
        cron(enqueue_scheduled_scans, minute={0, 15, 30, 45}, run_at_startup=True),
    ]
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = 1
    job_timeout = 120
