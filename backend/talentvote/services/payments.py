from __future__ import annotations
import json
from datetime import datetime
from typing import Any
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from talentvote.config import settings
from talentvote.db import unit_of_work, get_sessionmaker
from talentvote.models.contest import Edition, Category
from talentvote.models.payment import Payment, PaymentStatus, OPEN_STATUSES
from talentvote.models.user import User
from talentvote.services import reconciliation, vote_policy
from talentvote.services.gateway import (
    FedaPayClient, Customer, GatewayUnavailable, verify_webhook_signature, webhook_event_status,
)
from talentvote.services.reconciliation import PaymentError, PaymentNotFound
from talentvote.services.time_windows import utcnow, as_utc, is_past, expiry_from
from talentvote.services.validation import PaymentIntentPayload, ProcessPaymentPayload

log = structlog.get_logger()

__all__ = [
    "PaymentError", "PaymentNotFound", "PaymentNotRetryable", "PaymentExpired", "InvalidWebhook",
    "initiate_payment", "process_payment", "payment_status", "verify_payment", "cancel_payment",
    "handle_webhook", "handle_redirect",
]


class PaymentNotRetryable(PaymentError):
    code = "payment_not_retryable"
    status_code = 409
    default_message = "This payment can no longer be processed."

class PaymentExpired(PaymentError):
    code = "payment_expired"
    status_code = 410
    default_message = "This payment has expired. Please start a new one."

class InvalidWebhook(PaymentError):
    code = "invalid_webhook"
    status_code = 400
    default_message = "Invalid webhook payload."

    def __init__(self, message: str | None = None, *, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


def _sessions(sessions: async_sessionmaker[AsyncSession] | None) -> async_sessionmaker[AsyncSession]:
    return sessions or get_sessionmaker()


async def _by_token(sessions, token: str) -> Payment:
    async with _sessions(sessions)() as session:
        payment = await reconciliation.find_by_token(session, token)
    if payment is None:
        raise PaymentNotFound()
    return payment


def _iso(dt: datetime | None) -> str | None:
    return as_utc(dt).isoformat() if dt else None


def payment_view(payment: Payment) -> dict[str, Any]:
    meta = payment.meta or {}
    status = payment.status_enum
    return {
        "payment_token": payment.payment_token,
        "reference": payment.reference,
        "status": status.value,
        "is_successful": status.is_success,
        "is_expired": status is PaymentStatus.EXPIRED,
        "amount": payment.amount,
        "currency": payment.currency,
        "votes_count": payment.votes_count,
        "candidate_name": meta.get("candidate_name"),
        "edition_name": meta.get("edition_name"),
        "category_name": meta.get("category_name"),
        "payment_method": payment.payment_method,
        "transaction_id": payment.transaction_id,
        "created_at": _iso(payment.created_at),
        "expires_at": _iso(payment.expires_at),
        "paid_at": _iso(payment.paid_at),
        "check_interval_ms": settings.status_check_interval_ms,
    }

# ---------- initiate ----------

async def initiate_payment(
    sessions: async_sessionmaker[AsyncSession] | None,
    intent: PaymentIntentPayload,
    *,
    voter: User | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> Payment:
    """
    Create a pending payment for `intent.votes_count` votes. The amount is
    computed here from the vote setting; clients never send a price.
    """
    now = now or utcnow()
    voter_id = voter.id if voter else None
    rules = dict(
        voter_id=voter_id,
        candidate_id=intent.candidate_id,
        edition_id=intent.edition_id,
        category_id=intent.category_id,
        requested=intent.votes_count,
        require_paid=True,
        now=now,
    )
    async with _sessions(sessions)() as session:
        decision = await vote_policy.evaluate(session, **rules)

    async with unit_of_work(sessions) as session:
        # the pending payment reserves votes, so the caps are re-checked under the lock
        await vote_policy.lock_counters(session, decision.setting, decision.candidacy, voter_id)
        decision = await vote_policy.evaluate(session, **rules)
        cand = decision.candidacy
        candidate = await session.get(User, cand.candidate_id)
        edition = await session.get(Edition, cand.edition_id)
        category = await session.get(Category, cand.category_id)
        payment = Payment(
            user_id=voter_id,
            candidate_id=cand.candidate_id,
            edition_id=cand.edition_id,
            category_id=cand.category_id,
            amount=decision.amount,
            currency=decision.setting.currency,
            votes_count=intent.votes_count,
            status=PaymentStatus.PENDING.value,
            customer_email=intent.email,
            customer_phone=intent.phone,
            customer_firstname=intent.firstname,
            customer_lastname=intent.lastname,
            expires_at=expiry_from(now, settings.payment_ttl_minutes),
            meta={
                "vote_price": decision.setting.vote_price,
                "votes_count": intent.votes_count,
                "candidate_name": candidate.full_name if candidate else None,
                "edition_name": edition.name if edition else None,
                "category_name": category.name if category else None,
                "ip_address": ip_address,
                "user_agent": user_agent,
                "created_at": now.isoformat(),
            },
        )
        session.add(payment)
        await session.flush()
        await session.refresh(payment)  # server-side timestamps
    log.info("payment_initiated", payment_id=payment.id, reference=payment.reference,
             amount=payment.amount, votes_count=payment.votes_count, candidate_id=payment.candidate_id)
    return payment

# ---------- process (create / resume checkout) ----------

def _callback_urls(payment: Payment) -> tuple[str, str, str]:
    base = settings.public_base_url.rstrip("/")
    return (
        f"{base}/payments/webhook",
        f"{base}/payments/callback?payment_token={payment.payment_token}",
        f"{base}/payments/callback?payment_token={payment.payment_token}&status=cancelled",
    )


def _checkout_view(payment: Payment, *, resumed: bool) -> dict[str, Any]:
    return {
        "payment_token": payment.payment_token,
        "reference": payment.reference,
        "status": payment.status,
        "checkout_url": (payment.meta or {}).get("checkout_url"),
        "transaction_id": payment.transaction_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "resumed": resumed,
    }


async def process_payment(
    sessions: async_sessionmaker[AsyncSession] | None,
    gateway: FedaPayClient,
    req: ProcessPaymentPayload,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Create the gateway checkout for a pending payment, or hand back the one
    already created. Resubmitting is the retry mechanism: it is only allowed
    while the payment is still open and not past its expiry.
    """
    now = now or utcnow()
    payment = await _by_token(sessions, req.payment_token)
    status = payment.status_enum

    if status in OPEN_STATUSES and is_past(payment.expires_at, now):
        # a checkout already handed out may have been paid; that beats the expiry
        await _sync_with_gateway(sessions, gateway, payment, source="process", now=now)
        await reconciliation.expire_if_due(sessions, payment.id, now=now)
        payment = await _by_token(sessions, req.payment_token)
        if payment.status_enum is PaymentStatus.EXPIRED:
            raise PaymentExpired()
        raise PaymentNotRetryable(f"This payment is {payment.status} and cannot be processed.")
    if status is PaymentStatus.PROCESSING and payment.transaction_id:
        return _checkout_view(payment, resumed=True)
    if status is not PaymentStatus.PENDING:
        raise PaymentNotRetryable(f"This payment is {status.value} and cannot be processed.")

    async with _sessions(sessions)() as session:
        setting = await vote_policy.resolve_setting(session, payment.edition_id, payment.category_id)
    vote_policy.ensure_window_open(setting, now)
    if req.payment_method not in setting.payment_methods():
        raise vote_policy.PaymentMethodNotAllowed()

    callback_url, redirect_url, cancel_url = _callback_urls(payment)
    checkout = await gateway.create_transaction(
        amount=payment.amount,
        currency=payment.currency,
        description=f"{payment.votes_count} vote(s) for {(payment.meta or {}).get('candidate_name') or 'candidate'}",
        customer=Customer(
            firstname=payment.customer_firstname or "",
            lastname=payment.customer_lastname or "",
            email=payment.customer_email or "",
            phone=payment.customer_phone or "",
        ),
        callback_url=callback_url,
        redirect_url=redirect_url,
        cancel_url=cancel_url,
        reference=payment.reference,
    )

    attached = await reconciliation.attach_transaction(
        sessions, payment.id,
        transaction_id=checkout.transaction_id,
        checkout_url=checkout.checkout_url,
        payment_method=req.payment_method,
        provider_token=checkout.provider_token,
        now=now,
    )
    current = await _by_token(sessions, req.payment_token)
    if not attached:
        # a concurrent attempt won; its checkout is the one that counts
        if current.status_enum is PaymentStatus.PROCESSING and current.transaction_id:
            return _checkout_view(current, resumed=True)
        raise PaymentNotRetryable(f"This payment is {current.status} and cannot be processed.")
    return _checkout_view(current, resumed=False)

# ---------- status / verify / cancel ----------

async def _sync_with_gateway(sessions, gateway: FedaPayClient | None, payment: Payment, *, source: str,
                             now: datetime) -> bool:
    """Pull the provider's view and feed it to reconciliation. False if the gateway could not be asked."""
    if gateway is None or not payment.transaction_id or payment.status_enum not in OPEN_STATUSES:
        return True
    try:
        tx = await gateway.fetch_transaction(payment.transaction_id)
    except GatewayUnavailable as e:
        log.warning("payment_sync_skipped", payment_id=payment.id, source=source, error=e.message)
        return False
    await reconciliation.apply_signal(sessions, payment.id, tx.mapped, source=source,
                                      details={"provider_status": tx.status}, now=now)
    return True


async def payment_status(
    sessions: async_sessionmaker[AsyncSession] | None,
    gateway: FedaPayClient | None,
    token: str,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Current status for polling clients. Open payments are synced with the
    gateway first, then lazily expired; a success seen by the sync wins.
    """
    now = now or utcnow()
    payment = await _by_token(sessions, token)
    if payment.status_enum in OPEN_STATUSES:
        await _sync_with_gateway(sessions, gateway, payment, source="poll", now=now)
        await reconciliation.expire_if_due(sessions, payment.id, now=now)
        payment = await _by_token(sessions, token)
    return payment_view(payment)


async def verify_payment(sessions: async_sessionmaker[AsyncSession] | None, token: str) -> dict[str, Any]:
    """Receipt view for the success page. Read-only."""
    payment = await _by_token(sessions, token)
    view = payment_view(payment)
    view["votes_created"] = payment.votes_materialized_at is not None
    return view


async def cancel_payment(
    sessions: async_sessionmaker[AsyncSession] | None,
    token: str,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    payment = await _by_token(sessions, token)
    status = payment.status_enum
    if status is PaymentStatus.CANCELLED:
        return payment_view(payment)
    if status not in OPEN_STATUSES:
        raise PaymentNotRetryable(f"This payment is {status.value} and cannot be cancelled.")
    outcome = await reconciliation.apply_signal(sessions, payment.id, PaymentStatus.CANCELLED,
                                                source="user", now=now)
    return payment_view(outcome.payment)

# ---------- webhook ----------

async def handle_webhook(
    sessions: async_sessionmaker[AsyncSession] | None,
    raw_body: bytes,
    signature: str | None,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    if not verify_webhook_signature(
        raw_body, signature, secret=settings.fedapay_webhook_secret, environment=settings.environment,
    ):
        log.warning("webhook_rejected", reason="bad_signature")
        raise InvalidWebhook("Invalid webhook signature.", status_code=401)
    try:
        body = json.loads(raw_body or b"null")
    except ValueError as e:
        raise InvalidWebhook("Webhook body is not valid JSON.") from e
    if not isinstance(body, dict):
        raise InvalidWebhook()

    event = body.get("name") or body.get("event")
    entity = body.get("entity")
    if not isinstance(entity, dict):
        entity = (body.get("data") or {}).get("transaction") if isinstance(body.get("data"), dict) else None
    if not event or not isinstance(entity, dict) or entity.get("id") is None:
        raise InvalidWebhook("Webhook is missing the event name or the transaction.")

    transaction_id = str(entity["id"])
    close = bool(body.get("close") or entity.get("close"))
    status = webhook_event_status(event, entity, close=close)

    async with _sessions(sessions)() as session:
        payment = await reconciliation.find_by_transaction(session, transaction_id)
    if payment is None:
        # acknowledged so the gateway stops redelivering; nothing here to reconcile
        log.warning("webhook_unknown_transaction", event=event, transaction_id=transaction_id)
        return {"received": True, "status": None}

    outcome = await reconciliation.apply_signal(
        sessions, payment.id, status, source="webhook",
        details={"event": event, "provider_status": entity.get("status")}, now=now,
    )
    log.info("webhook_processed", event=event, payment_id=payment.id, applied=outcome.applied,
             status=outcome.payment.status)
    return {"received": True, "status": outcome.payment.status}

# ---------- browser redirect ----------

CANCEL_HINTS = ("canceled", "cancelled")


async def handle_redirect(
    sessions: async_sessionmaker[AsyncSession] | None,
    gateway: FedaPayClient | None,
    *,
    payment_token: str | None = None,
    transaction_id: str | None = None,
    status_hint: str | None = None,
    close: bool = False,
    now: datetime | None = None,
) -> tuple[str, Payment]:
    """
    Reconcile the payment the payer was sent back for and pick the landing
    page: success, failed, cancelled or pending. The query string is only a
    hint; the gateway is asked first and its answer wins.
    """
    now = now or utcnow()
    async with _sessions(sessions)() as session:
        payment = None
        if payment_token:
            payment = await reconciliation.find_by_token(session, payment_token)
        if payment is None and transaction_id:
            payment = await reconciliation.find_by_transaction(session, transaction_id)
    if payment is None:
        raise PaymentNotFound()

    gateway_ok = await _sync_with_gateway(sessions, gateway, payment, source="redirect", now=now)
    payment = await _by_token(sessions, payment.payment_token)

    hint = (status_hint or "").strip().lower()
    user_aborted = hint in CANCEL_HINTS or (hint == "pending" and close)
    if payment.status_enum in OPEN_STATUSES and user_aborted and gateway_ok:
        outcome = await reconciliation.apply_signal(
            sessions, payment.id, PaymentStatus.CANCELLED, source="redirect",
            details={"hint": hint, "close": close}, now=now,
        )
        payment = outcome.payment
    elif payment.status_enum in OPEN_STATUSES:
        await reconciliation.expire_if_due(sessions, payment.id, now=now)
        payment = await _by_token(sessions, payment.payment_token)

    return _landing(payment.status_enum), payment


def _landing(status: PaymentStatus) -> str:
    if status is PaymentStatus.APPROVED:
        return "success"
    if status is PaymentStatus.CANCELLED:
        return "cancelled"
    if status in (PaymentStatus.FAILED, PaymentStatus.EXPIRED):
        return "failed"
    return "pending"

