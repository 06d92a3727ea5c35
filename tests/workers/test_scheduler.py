"""Tests for the scheduled scan worker."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from overachiever.db.models import User
from overachiever.workers import scheduler

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


async def _seed(db_session) -> None:
    db_session.add_all(
        [
            User(steam_id=1, display_name="never", last_scan_at=None),
            User(steam_id=2, display_name="stale", last_scan_at=NOW - timedelta(days=2)),
            User(steam_id=3, display_name="fresh", last_scan_at=NOW - timedelta(minutes=5)),
            User(steam_id=4, display_name="older", last_scan_at=NOW - timedelta(days=5)),
        ]
    )
    await db_session.commit()


class TestSelectDueUsers:
    @pytest.mark.asyncio
    async def test_never_scanned_then_stalest_first(self, db_session) -> None:
        await _seed(db_session)
        due = await scheduler.select_due_users(db_session, NOW - timedelta(hours=6), limit=10)
        assert due == [1, 4, 2]

    @pytest.mark.asyncio
    async def test_limit(self, db_session) -> None:
        await _seed(db_session)
        due = await scheduler.select_due_users(db_session, NOW - timedelta(hours=6), limit=2)
        assert due == [1, 4]


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_publishes_one_request_per_due_user(self, db_session, monkeypatch) -> None:
        await _seed(db_session)
        monkeypatch.setattr(scheduler, "datetime", _FrozenDatetime)

        redis = AsyncMock()
        count = await scheduler.enqueue_scheduled_scans({"redis": redis})

        assert count == 3
        channels = {call.args[0] for call in redis.publish.await_args_list}
        assert channels == {"scan:requests"}
        payloads = [json.loads(call.args[1]) for call in redis.publish.await_args_list]
        assert payloads == [
            {"user_id": 1, "reason": "scheduled"},
            {"user_id": 4, "reason": "scheduled"},
            {"user_id": 2, "reason": "scheduled"},
        ]

    def test_cron_registered(self) -> None:
        assert scheduler.WorkerSettings.functions == [scheduler.enqueue_scheduled_scans]
        assert len(scheduler.WorkerSettings.cron_jobs) == 1


class _FrozenDatetime(datetime):
    @classmethod
    def now(cls, tz=None):
        return NOW if tz is not None else NOW.replace(tzinfo=None)
