"""HistoryStore persistence tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import OTHER_STEAM_ID, STEAM_ID
from overachiever.sync import history_store
from overachiever.sync.models import HistorySnapshot, ScanReason, ScanResult, ScanTicket

T0 = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


def _snapshot(recorded_at: datetime, unlocked: int = 1, user_id: int = STEAM_ID) -> HistorySnapshot:
    return HistorySnapshot(
        user_id=user_id,
        recorded_at=recorded_at,
        total_games=2,
        total_achievements=4,
        unlocked_achievements=unlocked,
        games_with_achievements=1,
        avg_completion_percent=unlocked / 4 * 100,
    )


class TestAppendAndQuery:
    @pytest.mark.asyncio
    async def test_append_assigns_id(self, db_session) -> None:
        stored = await history_store.append(db_session, _snapshot(T0))
        await db_session.commit()
        assert stored.id is not None
        assert stored.recorded_at == T0

    @pytest.mark.asyncio
    async def test_query_orders_oldest_first(self, db_session) -> None:
        for hours in (3, 1, 2):
            await history_store.append(db_session, _snapshot(T0 + timedelta(hours=hours), unlocked=hours))
        await db_session.commit()

        rows = await history_store.query(db_session, STEAM_ID)
        assert [r.unlocked_achievements for r in rows] == [1, 2, 3]
        assert all(r.recorded_at.tzinfo is not None for r in rows)

    @pytest.mark.asyncio
    async def test_equal_timestamps_keep_insertion_order(self, db_session) -> None:
        await history_store.append(db_session, _snapshot(T0, unlocked=2))
        await history_store.append(db_session, _snapshot(T0, unlocked=1))
        await db_session.commit()

        rows = await history_store.query(db_session, STEAM_ID)
        assert [r.unlocked_achievements for r in rows] == [2, 1]

    @pytest.mark.asyncio
    async def test_query_range_is_inclusive(self, db_session) -> None:
        for hours in range(5):
            await history_store.append(db_session, _snapshot(T0 + timedelta(hours=hours), unlocked=hours))
        await db_session.commit()

        rows = await history_store.query(
            db_session, STEAM_ID, since=T0 + timedelta(hours=1), until=T0 + timedelta(hours=3)
        )
        assert [r.unlocked_achievements for r in rows] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_query_accepts_other_timezones(self, db_session) -> None:
        await history_store.append(db_session, _snapshot(T0))
        await db_session.commit()

        plus_two = timezone(timedelta(hours=2))
        since = (T0 - timedelta(minutes=1)).astimezone(plus_two)
        rows = await history_store.query(db_session, STEAM_ID, since=since)
        assert len(rows) == 1

    @pytest.mark.asyncio
    async def test_query_is_per_user(self, db_session) -> None:
        await history_store.append(db_session, _snapshot(T0))
        await history_store.append(db_session, _snapshot(T0, user_id=OTHER_STEAM_ID))
        await db_session.commit()

        assert len(await history_store.query(db_session, STEAM_ID)) == 1
        assert await history_store.query(db_session, 1) == []

    @pytest.mark.asyncio
    async def test_latest(self, db_session) -> None:
        assert await history_store.latest(db_session, STEAM_ID) is None
        await history_store.append(db_session, _snapshot(T0, unlocked=1))
        await history_store.append(db_session, _snapshot(T0 + timedelta(days=1), unlocked=3))
        await db_session.commit()

        latest = await history_store.latest(db_session, STEAM_ID)
        assert latest.unlocked_achievements == 3


class TestRunLog:
    @pytest.mark.asyncio
    async def test_record_and_query_runs(self, db_session) -> None:
        for minutes in (0, 5):
            ticket = ScanTicket(user_id=STEAM_ID, reason=ScanReason.SCHEDULED)
            result = ScanResult(
                ticket_id=ticket.id,
                user_id=STEAM_ID,
                status="done",
                started_at=T0 + timedelta(minutes=minutes),
                finished_at=T0 + timedelta(minutes=minutes, seconds=30),
                games_total=3,
                scanned_game_ids=[1, 2],
            )
            await history_store.record_run(db_session, ticket, result)
        await db_session.commit()

        runs = await history_store.query_runs(db_session, STEAM_ID, limit=10)
        assert len(runs) == 2
        assert runs[0]["finished_at"] == T0 + timedelta(minutes=5, seconds=30)
        assert runs[0]["reason"] == "scheduled"
        assert runs[0]["games_scanned"] == 2
        assert runs[0]["new_unlocks"] == 0

        assert len(await history_store.query_runs(db_session, STEAM_ID, limit=1)) == 1
