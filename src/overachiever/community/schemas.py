"""Community Pydantic schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class RatingRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str | None = Field(None, max_length=2000)


class RatingEntry(BaseModel):
    user_id: int
    display_name: str
    rating: int
    comment: str | None = None
    updated_at: datetime


class GameRatingsResponse(BaseModel):
    """Average and individual ratings for a game."""

    game_id: int
    avg_rating: float | None = None
    rating_count: int
    ratings: list[RatingEntry]


class TipRequest(BaseModel):
    difficulty: int = Field(..., ge=1, le=5)
    tip: str = Field(..., min_length=1, max_length=4000)


class TipEntry(BaseModel):
    user_id: int
    display_name: str
    difficulty: int
    tip: str
    updated_at: datetime
