from __future__ import annotations
from typing import Any
import structlog
from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from talentvote.config import settings
from talentvote.db import get_sessionmaker
from talentvote.auth_deps import get_optional_user
from talentvote.models.user import User
from talentvote.schemas.payment import PaymentResponse, CheckoutResponse, GatewayPing
from talentvote.services import payments
from talentvote.services.gateway import FedaPayClient, get_gateway
from talentvote.services.validation import validate_payment_intent, validate_process_request

router = APIRouter(prefix="/payments", tags=["payments"])
log = structlog.get_logger()

def client_info(request: Request) -> tuple[str | None, str | None]:
    ip = request.client.host if request.client else None
    return ip, request.headers.get("user-agent")

@router.post("/initiate", response_model=PaymentResponse, status_code=201)
async def initiate(
    request: Request,
    payload: dict[str, Any] = Body(...),
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
    user: User | None = Depends(get_optional_user),
):
    intent = validate_payment_intent(payload)
    ip, ua = client_info(request)
    payment = await payments.initiate_payment(sessions, intent, voter=user, ip_address=ip, user_agent=ua)
    return {"success": True, "data": payments.payment_view(payment)}

@router.post("/process", response_model=CheckoutResponse)
async def process(
    payload: dict[str, Any] = Body(...),
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
    gateway: FedaPayClient = Depends(get_gateway),
):
    req = validate_process_request(payload)
    checkout = await payments.process_payment(sessions, gateway, req)
    return {"success": True, "data": checkout}

@router.get("/gateway/ping", response_model=GatewayPing)
async def gateway_ping(gateway: FedaPayClient = Depends(get_gateway)):
    return await gateway.ping()

@router.get("/callback")
async def gateway_redirect(
    id: str | None = None,
    payment_token: str | None = None,
    status: str | None = None,
    close: bool = False,
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
    gateway: FedaPayClient = Depends(get_gateway),
):
    """Browser lands here after checkout; the query string is a hint only."""
    base = settings.frontend_url.rstrip("/")
    try:
        landing, payment = await payments.handle_redirect(
            sessions, gateway, payment_token=payment_token, transaction_id=id, status_hint=status, close=close,
        )
    except payments.PaymentNotFound:
        log.warning("redirect_unknown_payment", transaction_id=id, has_token=bool(payment_token))
        return RedirectResponse(f"{base}/payment/failed", status_code=303)
    return RedirectResponse(f"{base}/payment/{landing}?token={payment.payment_token}", status_code=303)

@router.get("/{token}/status", response_model=PaymentResponse)
async def status(
    token: str,
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
    gateway: FedaPayClient = Depends(get_gateway),
):
    return {"success": True, "data": await payments.payment_status(sessions, gateway, token)}

@router.get("/{token}/verify", response_model=PaymentResponse)
async def verify(token: str, sessions: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker)):
    return {"success": True, "data": await payments.verify_payment(sessions, token)}

@router.post("/{token}/cancel", response_model=PaymentResponse)
async def cancel(token: str, sessions: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker)):
    return {"success": True, "data": await payments.cancel_payment(sessions, token)}
