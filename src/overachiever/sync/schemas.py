"""Scan and history Pydantic schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class ScanRequest(BaseModel):
    force: bool = False


class AdmissionResponse(BaseModel):
    """Outcome of a scan request."""

    outcome: str
    ticket_id: str | None = None
    reason: str | None = None


class TicketStatusResponse(BaseModel):
    ticket_id: str
    user_id: int
    reason: str
    force: bool
    state: str
    enqueued_at: datetime
    games_done: int
    games_total: int
    subscribers: int


class HistorySnapshotResponse(BaseModel):
    """One point of the user's progress history."""

    id: int | None = None
    recorded_at: datetime
    total_games: int
    total_achievements: int
    unlocked_achievements: int
    games_with_achievements: int
    avg_completion_percent: float | None = None
    unresolved_games: int = 0


class ScanRunResponse(BaseModel):
    ticket_id: str
    reason: str
    forced: bool
    status: str
    started_at: datetime
    finished_at: datetime
    games_total: int
    games_scanned: int
    games_failed: int
    new_games: int
    new_unlocks: int
    error_kind: str | None = None
