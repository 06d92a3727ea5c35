"""Community endpoints: game ratings and achievement tips."""

from fastapi import APIRouter, Depends, HTTPException, Path
from sqlalchemy.ext.asyncio import AsyncSession

from overachiever.auth.dependencies import get_current_user
from overachiever.community.schemas import GameRatingsResponse, RatingRequest, TipEntry, TipRequest
from overachiever.community.service import get_ratings, get_tips, upsert_rating, upsert_tip
from overachiever.database import get_session

router = APIRouter(prefix="/api/v1/community", tags=["Community"])


@router.put("/ratings/{game_id}")
async def rate_game(
    body: RatingRequest,
    game_id: int = Path(..., ge=1),
    user=Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> dict:
    """Rate a game. Submitting again replaces the previous rating."""
    try:
        row = await upsert_rating(db, user.steam_id, game_id, body.rating, body.comment)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return {"game_id": row.game_id, "rating": row.rating, "comment": row.comment}


@router.get("/ratings/{game_id}", response_model=GameRatingsResponse)
async def game_ratings(
    game_id: int = Path(..., ge=1),
    user=Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> dict:
    return await get_ratings(db, game_id)


@router.put("/tips/{game_id}/{achievement_key}")
async def submit_tip(
    body: TipRequest,
    achievement_key: str,
    game_id: int = Path(..., ge=1),
    user=Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> dict:
    """Submit a difficulty rating and tip. Submitting again replaces the previous one."""
    try:
        row = await upsert_tip(db, user.steam_id, game_id, achievement_key, body.difficulty, body.tip)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return {
        "game_id": row.game_id,
        "achievement_key": row.achievement_key,
        "difficulty": row.difficulty,
        "tip": row.tip,
    }


@router.get("/tips/{game_id}/{achievement_key}", response_model=list[TipEntry])
async def achievement_tips(
    achievement_key: str,
    game_id: int = Path(..., ge=1),
    user=Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> list[dict]:
    """Tips for an achievement, newest first."""
    return await get_tips(db, game_id, achievement_key)
