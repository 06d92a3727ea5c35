"""Append-only progress history and scan run log.

Writes go through the caller's session so a scan's state update, history
row and run row commit together. Reads are plain queries with no cursor
state kept between calls.
"""

from __future__ import annotations

from collections.abc import Collection
from dataclasses import replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from overachiever.db.models import AchievementHistory, ScanRun
from overachiever.sync.models import HistorySnapshot, ScanResult, ScanTicket, UserSnapshot, as_utc, utcnow

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession


def summarize(
    snapshot: UserSnapshot,
    recorded_at: datetime | None = None,
    unresolved_ids: Collection[int] = (),
) -> HistorySnapshot:
    """Aggregate a snapshot into a HistorySnapshot.

    Covered games are those with known achievements that are not listed in
    ``unresolved_ids`` (games whose fetch failed in this scan). The average
    is the mean of per-game ``unlocked / total`` over covered games with
    ``total > 0``; games with no achievements are excluded from it entirely.
    """
    failed = set(unresolved_ids)
    covered = [
        g for g in snapshot.games.values() if g.achievements is not None and g.game_id not in failed
    ]
    unresolved = len(snapshot.games) - len(covered)
    with_achievements = [g for g in covered if g.achievements_total]

    total = sum(g.achievements_total or 0 for g in with_achievements)
    unlocked = sum(g.achievements_unlocked or 0 for g in with_achievements)
    avg: float | None = None
    if with_achievements:
        ratios = [(g.achievements_unlocked or 0) / (g.achievements_total or 1) for g in with_achievements]
        avg = round(sum(ratios) / len(ratios) * 100, 4)

    return HistorySnapshot(
        user_id=snapshot.user_id,
        recorded_at=recorded_at or snapshot.taken_at,
        total_games=len(covered),
        total_achievements=total,
        unlocked_achievements=unlocked,
        games_with_achievements=len(with_achievements),
        avg_completion_percent=avg,
        unresolved_games=unresolved,
    )


def _to_utc(value: datetime) -> datetime:
    return (as_utc(value) or value).astimezone(timezone.utc)


def _to_snapshot(row: AchievementHistory) -> HistorySnapshot:
    return HistorySnapshot(
        id=row.id,
        user_id=row.steam_id,
        recorded_at=as_utc(row.recorded_at) or row.recorded_at,
        total_games=row.total_games,
        total_achievements=row.total_achievements,
        unlocked_achievements=row.unlocked_achievements,
        games_with_achievements=row.games_with_achievements,
        avg_completion_percent=row.avg_completion_percent,
        unresolved_games=row.unresolved_games,
    )


async def append(db: AsyncSession, snapshot: HistorySnapshot) -> HistorySnapshot:
    """Insert a new history row. Existing rows are never touched."""
    row = AchievementHistory(
        steam_id=snapshot.user_id,
        recorded_at=snapshot.recorded_at,
        total_games=snapshot.total_games,
        total_achievements=snapshot.total_achievements,
        unlocked_achievements=snapshot.unlocked_achievements,
        games_with_achievements=snapshot.games_with_achievements,
        avg_completion_percent=snapshot.avg_completion_percent,
        unresolved_games=snapshot.unresolved_games,
    )
    db.add(row)
    await db.flush()
    return replace(snapshot, id=row.id)


async def query(
    db: AsyncSession,
    user_id: int,
    since: datetime | None = None,
    until: datetime | None = None,
) -> list[HistorySnapshot]:
    """Snapshots for ``user_id`` within ``[since, until]``, oldest first."""
    stmt = select(AchievementHistory).where(AchievementHistory.steam_id == user_id)
    if since is not None:
        stmt = stmt.where(AchievementHistory.recorded_at >= _to_utc(since))
    if until is not None:
        stmt = stmt.where(AchievementHistory.recorded_at <= _to_utc(until))
    stmt = stmt.order_by(AchievementHistory.recorded_at.asc(), AchievementHistory.id.asc())
    result = await db.execute(stmt)
    return [_to_snapshot(row) for row in result.scalars().all()]


async def latest(db: AsyncSession, user_id: int) -> HistorySnapshot | None:
    result = await db.execute(
        select(AchievementHistory)
        .where(AchievementHistory.steam_id == user_id)
        .order_by(AchievementHistory.recorded_at.desc(), AchievementHistory.id.desc())
        .limit(1)
    )
    row = result.scalar_one_or_none()
    return _to_snapshot(row) if row is not None else None


# ---------------------------------------------------------------------------
# Run log
# ---------------------------------------------------------------------------


async def record_run(db: AsyncSession, ticket: ScanTicket, result: ScanResult) -> ScanRun:
    """Append the run-log row for a ticket that reached a terminal state."""
    delta = result.delta
    row = ScanRun(
        ticket_id=ticket.id,
        steam_id=ticket.user_id,
        reason=ticket.reason.value,
        forced=ticket.force,
        status=result.status,
        started_at=result.started_at,
        finished_at=result.finished_at or utcnow(),
        games_total=result.games_total,
        games_scanned=result.games_scanned,
        games_failed=len(result.failures),
        new_games=len(delta.new_games) if delta else 0,
        new_unlocks=len(delta.unlocked) if delta else 0,
        error_kind=result.error_kind,
    )
    db.add(row)
    await db.flush()
    return row


async def query_runs(db: AsyncSession, user_id: int, limit: int = 50) -> list[dict[str, Any]]:
    """Most recent runs first."""
    result = await db.execute(
        select(ScanRun)
        .where(ScanRun.steam_id == user_id)
        .order_by(ScanRun.finished_at.desc(), ScanRun.id.desc())
        .limit(limit)
    )
    return [
        {
            "ticket_id": run.ticket_id,
            "reason": run.reason,
            "forced": run.forced,
            "status": run.status,
            "started_at": as_utc(run.started_at),
            "finished_at": as_utc(run.finished_at),
            "games_total": run.games_total,
            "games_scanned": run.games_scanned,
            "games_failed": run.games_failed,
            "new_games": run.new_games,
            "new_unlocks": run.new_unlocks,
            "error_kind": run.error_kind,
        }
        for run in result.scalars().all()
    ]
