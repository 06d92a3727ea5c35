"""Scan control and history endpoint tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from conftest import STEAM_ID, wait_idle
from overachiever.main import create_app

T100 = datetime.fromtimestamp(100, tz=timezone.utc)


@pytest.fixture
def library(provider):
    provider.add_game(STEAM_ID, 10, "Alpha", playtime=60, achievements=[("A1", False, None), ("A2", True, T100)])
    provider.add_game(STEAM_ID, 20, "Bravo", playtime=5)
    return provider


@pytest.mark.asyncio
async def test_scan_requires_auth(client: AsyncClient) -> None:
    response = await client.post("/api/v1/scans")
    assert response.status_code in (401, 403)


@pytest.mark.asyncio
async def test_invalid_token_rejected(client: AsyncClient) -> None:
    response = await client.post("/api/v1/scans", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_scan_then_history(authed_client: AsyncClient, app, library) -> None:
    response = await authed_client.post("/api/v1/scans")
    assert response.status_code == 202
    data = response.json()
    assert data["outcome"] == "admitted"
    assert data["ticket_id"]

    await wait_idle(app.state.sync_engine)

    history = (await authed_client.get("/api/v1/history")).json()
    assert len(history) == 1
    assert history[0]["unlocked_achievements"] == 1
    assert history[0]["total_achievements"] == 2
    assert history[0]["avg_completion_percent"] == 50.0

    runs = (await authed_client.get("/api/v1/history/runs")).json()
    assert len(runs) == 1
    assert runs[0]["ticket_id"] == data["ticket_id"]
    assert runs[0]["status"] == "done"
    assert runs[0]["new_games"] == 2


@pytest.mark.asyncio
async def test_second_request_coalesces(authed_client: AsyncClient, app, library) -> None:
    library.library_gate = asyncio.Event()
    first = (await authed_client.post("/api/v1/scans")).json()
    second = (await authed_client.post("/api/v1/scans", json={"force": True})).json()

    assert second["outcome"] == "coalesced"
    assert second["ticket_id"] == first["ticket_id"]

    library.library_gate.set()
    await wait_idle(app.state.sync_engine)
    assert library.count("library") == 1


@pytest.mark.asyncio
async def test_current_scan_status_and_cancel(authed_client: AsyncClient, app, library) -> None:
    library.library_gate = asyncio.Event()
    ticket_id = (await authed_client.post("/api/v1/scans")).json()["ticket_id"]
    await asyncio.sleep(0.01)

    current = await authed_client.get("/api/v1/scans/current")
    assert current.status_code == 200
    assert current.json()["ticket_id"] == ticket_id
    assert current.json()["state"] == "fetching_games"

    cancel = await authed_client.delete("/api/v1/scans/current")
    assert cancel.status_code == 202
    assert cancel.json() == {"ticket_id": ticket_id, "cancel_requested": True}

    library.library_gate.set()
    await wait_idle(app.state.sync_engine)

    assert (await authed_client.get("/api/v1/scans/current")).status_code == 404
    runs = (await authed_client.get("/api/v1/history/runs")).json()
    assert runs[0]["status"] == "cancelled"
    assert (await authed_client.get("/api/v1/history")).json() == []


@pytest.mark.asyncio
async def test_cancel_without_scan_is_404(authed_client: AsyncClient) -> None:
    response = await authed_client.delete("/api/v1/scans/current")
    assert response.status_code == 404
    assert response.json()["detail"] == "No active scan"


@pytest.mark.asyncio
async def test_scans_disabled_without_api_key(db, settings, provider, auth_headers) -> None:
    app = create_app(settings.model_copy(update={"steam_api_key": ""}), provider=provider)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        response = await ac.post("/api/v1/scans", headers=auth_headers)
    assert response.status_code == 503
    assert response.json()["reason"] == "provider_not_configured"


@pytest.mark.asyncio
async def test_history_range_filters(authed_client: AsyncClient, app, library) -> None:
    await authed_client.post("/api/v1/scans")
    await wait_idle(app.state.sync_engine)

    future = "2999-01-01T00:00:00Z"
    assert (await authed_client.get("/api/v1/history", params={"since": future})).json() == []
    assert len((await authed_client.get("/api/v1/history", params={"until": future})).json()) == 1


@pytest.mark.asyncio
async def test_history_rejects_inverted_range(authed_client: AsyncClient) -> None:
    response = await authed_client.get(
        "/api/v1/history",
        params={"since": "2026-02-01T00:00:00Z", "until": "2026-01-01T00:00:00Z"},
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_history_is_empty_for_new_user(authed_client: AsyncClient) -> None:
    response = await authed_client.get("/api/v1/history")
    assert response.status_code == 200
    assert response.json() == []
