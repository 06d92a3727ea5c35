"""Shared FastAPI dependencies for app-scoped services."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

if TYPE_CHECKING:
    from overachiever.sync.engine import SyncEngine


def get_sync_engine(request: Request) -> SyncEngine:
    """Return the process-wide SyncEngine attached to the app."""
    engine: SyncEngine | None = getattr(request.app.state, "sync_engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Sync engine not available")
    return engine
