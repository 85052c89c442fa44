from __future__ import annotations
from typing import Any
from fastapi import APIRouter, Body, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from talentvote.db import get_sessionmaker
from talentvote.auth_deps import get_current_user
from talentvote.models.user import User
from talentvote.routes.payments import client_info
from talentvote.schemas.vote import VoteResponse, RemainingVotes
from talentvote.services.validation import validate_vote_request
from talentvote.services.voting import cast_vote, remaining_free_votes

router = APIRouter(prefix="/votes", tags=["votes"])

@router.post("", response_model=VoteResponse)
async def vote(
    request: Request,
    payload: dict[str, Any] = Body(...),
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
    user: User = Depends(get_current_user),
):
    req = validate_vote_request(payload)
    ip, ua = client_info(request)
    result = await cast_vote(sessions, req, user, ip_address=ip, user_agent=ua)
    return {"success": True, "data": result}

@router.get("/remaining", response_model=RemainingVotes)
async def remaining(
    edition_id: int = Query(..., gt=0),
    category_id: int | None = Query(None, gt=0),
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
    user: User = Depends(get_current_user),
):
    return await remaining_free_votes(sessions, user, edition_id, category_id)
