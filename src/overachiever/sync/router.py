"""Scan control and progress history endpoints."""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from overachiever.auth.dependencies import get_current_user
from overachiever.database import get_session
from overachiever.dependencies import get_sync_engine
from overachiever.sync import history_store
from overachiever.sync.engine import REJECT_NOT_CONFIGURED, SyncEngine
from overachiever.sync.models import ScanReason
from overachiever.sync.scan_queue import AdmissionOutcome
from overachiever.sync.schemas import (
    AdmissionResponse,
    HistorySnapshotResponse,
    ScanRequest,
    ScanRunResponse,
    TicketStatusResponse,
)

router = APIRouter(prefix="/api/v1", tags=["Scans"])


@router.post("/scans", response_model=AdmissionResponse, status_code=202)
async def start_scan(
    response: Response,
    body: ScanRequest | None = None,
    user=Depends(get_current_user),
    engine: SyncEngine = Depends(get_sync_engine),
) -> dict:
    """Request a scan of the current user's library.

    Progress is pushed over ``/ws``; this call only reports admission.
    """
    force = body.force if body is not None else False
    admission = engine.request_scan(user.steam_id, ScanReason.MANUAL, force=force)
    if admission.outcome == AdmissionOutcome.REJECTED:
        response.status_code = 503 if admission.reason == REJECT_NOT_CONFIGURED else 429
    return admission.to_dict()


@router.get("/scans/current", response_model=TicketStatusResponse)
async def current_scan(
    user=Depends(get_current_user),
    engine: SyncEngine = Depends(get_sync_engine),
) -> dict:
    status = engine.status(user.steam_id)
    if status is None:
        raise HTTPException(status_code=404, detail="No active scan")
    return status


@router.delete("/scans/current", status_code=202)
async def cancel_scan(
    user=Depends(get_current_user),
    engine: SyncEngine = Depends(get_sync_engine),
) -> dict:
    """Request cancellation of the active scan. Takes effect between game fetches."""
    try:
        ticket = engine.cancel(user.steam_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return {"ticket_id": ticket.id, "cancel_requested": True}


@router.get("/history", response_model=list[HistorySnapshotResponse])
async def history(
    since: datetime | None = Query(None),
    until: datetime | None = Query(None),
    user=Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> list[dict]:
    """Progress snapshots, oldest first."""
    if since is not None and until is not None and since > until:
        raise HTTPException(status_code=422, detail="since must not be after until")
    snapshots = await history_store.query(db, user.steam_id, since, until)
    return [s.to_dict() for s in snapshots]


@router.get("/history/runs", response_model=list[ScanRunResponse])
async def scan_runs(
    limit: int = Query(20, ge=1, le=100),
    user=Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> list[dict]:
    """Recent scans, newest first."""
    return await history_store.query_runs(db, user.steam_id, limit)
