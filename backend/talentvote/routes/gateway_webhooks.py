from __future__ import annotations
from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from talentvote.db import get_sessionmaker
from talentvote.schemas.payment import WebhookAck
from talentvote.services.payments import handle_webhook

router = APIRouter(tags=["fedapay"])

@router.post("/payments/webhook", response_model=WebhookAck)
async def fedapay_webhook(
    request: Request,
    signature: str | None = Header(None, alias="X-FEDAPAY-SIGNATURE"),
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
):
    # signature is computed over the exact bytes received
    payload = await request.body()
    return await handle_webhook(sessions, payload, signature)
