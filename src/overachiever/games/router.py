"""Library endpoints: games, achievements, activity log."""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from overachiever.auth.dependencies import get_current_user
from overachiever.database import get_session
from overachiever.games.schemas import (
    AchievementResponse,
    ActivityEntryResponse,
    GameResponse,
    LibrarySummaryResponse,
)
from overachiever.games.service import get_activity, get_game_achievements, get_summary, list_games

router = APIRouter(prefix="/api/v1", tags=["Games"])


@router.get("/games", response_model=list[GameResponse])
async def games(
    user=Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> list[dict]:
    """The current user's games, ordered by name."""
    return await list_games(db, user.steam_id)


@router.get("/games/summary", response_model=LibrarySummaryResponse)
async def games_summary(
    user=Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> dict:
    return await get_summary(db, user.steam_id)


@router.get("/games/{game_id}/achievements", response_model=list[AchievementResponse])
async def game_achievements(
    game_id: int,
    user=Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> list[dict]:
    """Achievements of one game in declaration order."""
    try:
        return await get_game_achievements(db, user.steam_id, game_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@router.get("/activity", response_model=list[ActivityEntryResponse])
async def activity(
    limit: int = Query(50, ge=1, le=200),
    user=Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> list[dict]:
    """Recent unlocks and first plays, newest first."""
    return await get_activity(db, user.steam_id, limit)
