"""User records for authenticated Steam identities."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import select

from overachiever.database import insert_for
from overachiever.db.models import User

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()


async def get_user_by_id(db: AsyncSession, user_id: int) -> User | None:
    """Fetch a user by Steam id."""
    result = await db.execute(select(User).where(User.steam_id == user_id))
    return result.scalar_one_or_none()


async def get_or_create_user(db: AsyncSession, user_id: int, display_name: str | None = None) -> User:
    """Return the user row for ``user_id``, creating it on first sight.

    Touches ``last_seen`` and refreshes the display name when one is given.
    """
    now = datetime.now(timezone.utc)
    existing = await get_user_by_id(db, user_id)
    update: dict[str, object] = {"last_seen": now}
    if display_name:
        update["display_name"] = display_name
    stmt = insert_for(db, User).values(steam_id=user_id, display_name=display_name or str(user_id), last_seen=now)
    stmt = stmt.on_conflict_do_update(index_elements=[User.steam_id], set_=update)
    await db.execute(stmt)
    await db.commit()
    if existing is None:
        logger.info("user_created", user_id=user_id)

    result = await db.execute(
        select(User).where(User.steam_id == user_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()
