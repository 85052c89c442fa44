from __future__ import annotations
import uuid
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from talentvote.config import settings
from talentvote.logging_setup import configure_logging
from talentvote.routes.system import router as system_router
from talentvote.routes.votes import router as votes_router
from talentvote.routes.payments import router as payments_router
from talentvote.routes.gateway_webhooks import router as webhooks_router
from talentvote.routes.standings import router as standings_router
from talentvote.services.gateway import GatewayUnavailable
from talentvote.services.reconciliation import PaymentError
from talentvote.services.validation import ValidationFailed
from talentvote.services.vote_policy import VoteRuleError
import structlog

configure_logging(settings.log_level)
log = structlog.get_logger()

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    log.info("startup", env=settings.environment, version=settings.app_version, git_sha=settings.git_sha,
             gateway_env=settings.fedapay_environment)
    yield
    # Shutdown
    log.info("shutdown")

app = FastAPI(
    title=f"{settings.app_display_name} API",
    version=settings.app_version,
    lifespan=lifespan,
    description=f"{settings.app_display_name} API for contest voting and vote payments"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.environment == "dev" else settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(system_router)
app.include_router(votes_router)
app.include_router(webhooks_router)
app.include_router(payments_router)
app.include_router(standings_router)

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = rid
    structlog.contextvars.bind_contextvars(request_id=rid)
    response: Response = await call_next(request)
    response.headers["X-Request-ID"] = rid
    structlog.contextvars.clear_contextvars()
    return response

# ---------- error envelopes ----------

def _validation_response(errors: dict[str, list[str]]) -> JSONResponse:
    return JSONResponse(status_code=422, content={"success": False, "message": "Validation failed", "errors": errors})

@app.exception_handler(ValidationFailed)
async def on_validation_failed(request: Request, exc: ValidationFailed):
    return _validation_response(exc.errors)

@app.exception_handler(RequestValidationError)
async def on_request_validation(request: Request, exc: RequestValidationError):
    errors: dict[str, list[str]] = {}
    for err in exc.errors():
        field = ".".join(str(p) for p in err["loc"] if p not in ("body", "query", "path")) or "__root__"
        errors.setdefault(field, []).append(err["msg"])
    return _validation_response(errors)

@app.exception_handler(VoteRuleError)
async def on_vote_rule(request: Request, exc: VoteRuleError):
    log.info("vote_rejected", rule=exc.code, path=request.url.path)
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.code, "message": exc.message})

@app.exception_handler(PaymentError)
async def on_payment_error(request: Request, exc: PaymentError):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.code, "message": exc.message})

@app.exception_handler(GatewayUnavailable)
async def on_gateway_unavailable(request: Request, exc: GatewayUnavailable):
    log.warning("gateway_unavailable", path=request.url.path, error=exc.message)
    return JSONResponse(
        status_code=503,
        content={
            "success": False,
            "error": exc.code,
            "message": "The payment provider is temporarily unavailable. Please try again.",
            "retryable": True,
        },
    )

@app.exception_handler(Exception)
async def on_unexpected(request: Request, exc: Exception):
    log.exception("unhandled_error", path=request.url.path)
    content = {"success": False, "message": "Internal server error"}
    if settings.is_development:
        content["detail"] = f"{type(exc).__name__}: {exc}"
    return JSONResponse(status_code=500, content=content)
