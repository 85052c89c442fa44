from __future__ import annotations
from fastapi import APIRouter, Depends, Request
from datetime import datetime, timezone
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from talentvote.config import settings
from talentvote.db import get_session
import structlog

log = structlog.get_logger()

router = APIRouter()

@router.get("/health")
async def health(request: Request, session: AsyncSession = Depends(get_session)):
    # liveness plus a round trip to the database; the gateway has its own ping
    try:
        await session.execute(text("SELECT 1"))
        database = "ok"
    except Exception as e:
        database = "unavailable"
        log.warning("health_db_unavailable", error=str(e))
    return {
        "status": "ok" if database == "ok" else "degraded",
        "database": database,
        "env": settings.environment,
        "time": datetime.now(timezone.utc).isoformat(),
        "request_id": request.headers.get("x-request-id") or request.state.request_id,
    }

@router.get("/version")
async def version():
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "git_sha": settings.git_sha,
        "gateway": f"fedapay:{settings.fedapay_environment}",
        "currency": settings.currency,
    }
