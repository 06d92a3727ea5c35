"""Community ratings and tips endpoint tests."""

from __future__ import annotations

import asyncio

import pytest
from httpx import AsyncClient

from conftest import STEAM_ID


class TestRatings:
    @pytest.mark.asyncio
    async def test_rate_and_read_back(self, authed_client: AsyncClient) -> None:
        response = await authed_client.put("/api/v1/community/ratings/620", json={"rating": 4, "comment": "great"})
        assert response.status_code == 200
        assert response.json() == {"game_id": 620, "rating": 4, "comment": "great"}

        data = (await authed_client.get("/api/v1/community/ratings/620")).json()
        assert data["avg_rating"] == 4.0
        assert data["rating_count"] == 1
        assert data["ratings"][0]["user_id"] == STEAM_ID
        assert data["ratings"][0]["display_name"] == "Gordon"

    @pytest.mark.asyncio
    async def test_second_rating_replaces_first(self, authed_client: AsyncClient) -> None:
        await authed_client.put("/api/v1/community/ratings/620", json={"rating": 5})
        await authed_client.put("/api/v1/community/ratings/620", json={"rating": 2})

        data = (await authed_client.get("/api/v1/community/ratings/620")).json()
        assert data["rating_count"] == 1
        assert data["avg_rating"] == 2.0

    @pytest.mark.asyncio
    async def test_double_submit_keeps_one_rating(self, authed_client: AsyncClient) -> None:
        responses = await asyncio.gather(
            *(authed_client.put("/api/v1/community/ratings/620", json={"rating": 3}) for _ in range(2))
        )
        assert [r.status_code for r in responses] == [200, 200]

        data = (await authed_client.get("/api/v1/community/ratings/620")).json()
        assert data["rating_count"] == 1
        assert data["avg_rating"] == 3.0

    @pytest.mark.asyncio
    async def test_unrated_game(self, authed_client: AsyncClient) -> None:
        data = (await authed_client.get("/api/v1/community/ratings/400")).json()
        assert data == {"game_id": 400, "avg_rating": None, "rating_count": 0, "ratings": []}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("rating", [0, 6])
    async def test_out_of_range_rejected(self, authed_client: AsyncClient, rating: int) -> None:
        response = await authed_client.put("/api/v1/community/ratings/620", json={"rating": rating})
        assert response.status_code == 422
        assert response.json()["detail"] == "Validation error"


class TestTips:
    @pytest.mark.asyncio
    async def test_submit_and_list(self, authed_client: AsyncClient) -> None:
        response = await authed_client.put(
            "/api/v1/community/tips/620/ACH.WAKE_UP", json={"difficulty": 3, "tip": "  Look up.  "}
        )
        assert response.status_code == 200
        assert response.json()["tip"] == "Look up."

        tips = (await authed_client.get("/api/v1/community/tips/620/ACH.WAKE_UP")).json()
        assert len(tips) == 1
        assert tips[0]["difficulty"] == 3
        assert tips[0]["display_name"] == "Gordon"

    @pytest.mark.asyncio
    async def test_blank_tip_rejected(self, authed_client: AsyncClient) -> None:
        response = await authed_client.put(
            "/api/v1/community/tips/620/ACH.WAKE_UP", json={"difficulty": 3, "tip": "   "}
        )
        assert response.status_code == 422
        assert response.json()["detail"] == "tip must not be empty"

    @pytest.mark.asyncio
    async def test_double_submit_keeps_one_tip(self, authed_client: AsyncClient) -> None:
        responses = await asyncio.gather(
            *(
                authed_client.put("/api/v1/community/tips/620/A", json={"difficulty": 2, "tip": "jump"})
                for _ in range(2)
            )
        )
        assert [r.status_code for r in responses] == [200, 200]
        assert len((await authed_client.get("/api/v1/community/tips/620/A")).json()) == 1

    @pytest.mark.asyncio
    async def test_tips_are_per_achievement(self, authed_client: AsyncClient) -> None:
        await authed_client.put("/api/v1/community/tips/620/A", json={"difficulty": 1, "tip": "easy"})
        assert (await authed_client.get("/api/v1/community/tips/620/B")).json() == []
