from __future__ import annotations
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession
from talentvote.db import get_session
from talentvote.schemas.vote import LeaderboardRow, CandidacyStats
from talentvote.services.standings import leaderboard, candidacy_stats, CandidacyNotFound

router = APIRouter(tags=["standings"])

@router.get("/editions/{edition_id}/leaderboard", response_model=list[LeaderboardRow])
async def edition_leaderboard(
    edition_id: int,
    category_id: int | None = Query(None, gt=0),
    session: AsyncSession = Depends(get_session),
):
    return await leaderboard(session, edition_id, category_id)

@router.get("/candidacies/{candidacy_id}/stats", response_model=CandidacyStats)
async def stats(candidacy_id: int, session: AsyncSession = Depends(get_session)):
    try:
        return await candidacy_stats(session, candidacy_id)
    except CandidacyNotFound:
        raise HTTPException(status_code=404, detail="Candidacy not found")
