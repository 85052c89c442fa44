"""
Single entry point for every payment state change.

Webhooks, browser redirects, status polls, user cancels and lazy expiry all
end up in apply_signal()/expire_if_due(). Transitions are conditional UPDATEs
guarded on the current status, so concurrent signals for the same payment
race on the database row and exactly one of them wins:

    pending ──attach──▶ processing
    pending|processing ──▶ approved | failed | cancelled | expired

Terminal statuses never change again. A success arriving after a terminal
failure is recorded as an anomaly for manual follow-up, never applied.

No gateway call happens while a transaction here is open.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Any
import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from talentvote.db import unit_of_work
from talentvote.models.payment import Payment, PaymentStatus, OPEN_STATUSES
from talentvote.services import ledger
from talentvote.services.time_windows import utcnow, is_past

log = structlog.get_logger()

_OPEN = [s.value for s in OPEN_STATUSES]


class PaymentError(Exception):
    code = "payment_error"
    status_code = 400
    default_message = "Payment error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

class PaymentNotFound(PaymentError):
    code = "payment_not_found"
    status_code = 404
    default_message = "Payment not found."


@dataclass
class Outcome:
    payment: Payment
    applied: bool
    materialized: bool = False
    anomaly: str | None = None


def _event_key(source: str) -> str:
    return "webhook_events" if source == "webhook" else "signals"


def _with_event(meta: dict | None, key: str, event: dict[str, Any], **extra) -> dict:
    new = dict(meta or {})
    events = list(new.get(key) or [])
    events.append(event)
    new[key] = events
    new.update(extra)
    return new


async def _load(session: AsyncSession, payment_id: int) -> Payment:
    payment = await session.get(Payment, payment_id, populate_existing=True)
    if payment is None:
        raise PaymentNotFound()
    return payment


async def _transition(session: AsyncSession, payment_id: int, from_statuses: list[str], **values) -> bool:
    res = await session.execute(
        update(Payment)
        .where(Payment.id == payment_id, Payment.status.in_(from_statuses))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


async def find_by_token(session: AsyncSession, token: str) -> Payment | None:
    return await session.scalar(select(Payment).where(Payment.payment_token == token))


async def find_by_transaction(session: AsyncSession, transaction_id: str) -> Payment | None:
    return await session.scalar(select(Payment).where(Payment.transaction_id == transaction_id))

# ---------- pending -> processing ----------

async def attach_transaction(
    sessions: async_sessionmaker[AsyncSession] | None,
    payment_id: int,
    *,
    transaction_id: str,
    checkout_url: str,
    payment_method: str,
    provider_token: str | None = None,
    now: datetime | None = None,
) -> bool:
    """Record the gateway transaction. False when another attempt attached first."""
    now = now or utcnow()
    async with unit_of_work(sessions) as session:
        payment = await _load(session, payment_id)
        meta = dict(payment.meta or {})
        meta.update({
            "gateway_transaction_id": transaction_id,
            "checkout_url": checkout_url,
            "provider_token": provider_token,
            "processed_at": now.isoformat(),
        })
        ok = await session.execute(
            update(Payment)
            .where(
                Payment.id == payment_id,
                Payment.status == PaymentStatus.PENDING.value,
                Payment.transaction_id.is_(None),
            )
            .values(
                status=PaymentStatus.PROCESSING.value,
                transaction_id=transaction_id,
                payment_method=payment_method,
                meta=meta,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        attached = ok.rowcount == 1
    if attached:
        log.info("payment_processing", payment_id=payment_id, transaction_id=transaction_id,
                 payment_method=payment_method)
    else:
        log.warning("payment_attach_lost", payment_id=payment_id, transaction_id=transaction_id,
                    anomaly="orphan_gateway_transaction")
    return attached

# ---------- terminal transitions ----------

async def claim_materialization(session: AsyncSession, payment: Payment, now: datetime, meta: dict) -> bool:
    """
    The at-most-once guard: flips an open, never-materialized payment to
    approved and stamps votes_materialized_at in one statement. Only the
    caller that gets rowcount 1 may create the votes.
    """
    res = await session.execute(
        update(Payment)
        .where(
            Payment.id == payment.id,
            Payment.status.in_(_OPEN),
            Payment.votes_materialized_at.is_(None),
        )
        .values(
            status=PaymentStatus.APPROVED.value,
            paid_at=now,
            votes_materialized_at=now,
            meta=meta,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


async def materialize_votes(session: AsyncSession, payment: Payment) -> int:
    """Create the paid votes and bump the counter. Caller must hold the claim."""
    candidacy = await ledger.get_or_create_candidacy(
        session,
        candidate_id=payment.candidate_id,
        edition_id=payment.edition_id,
        category_id=payment.category_id,
    )
    meta = payment.meta or {}
    return await ledger.record_votes(
        session, candidacy, payment.votes_count,
        voter_id=payment.user_id,
        payment_id=payment.id,
        ip_address=meta.get("ip_address"),
        user_agent=meta.get("user_agent"),
    )


async def apply_signal(
    sessions: async_sessionmaker[AsyncSession] | None,
    payment_id: int,
    status: PaymentStatus | None,
    *,
    source: str,
    details: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> Outcome:
    """
    Apply one observed status to a payment. Safe to call any number of times,
    from any source, concurrently.
    """
    now = now or utcnow()
    event = {"source": source, "status": status.value if status else None, "at": now.isoformat(), **(details or {})}

    async with unit_of_work(sessions) as session:
        payment = await _load(session, payment_id)
        current = payment.status_enum
        bound = log.bind(payment_id=payment.id, reference=payment.reference, source=source,
                         old_status=current.value, new_status=event["status"])

        if status is None:
            bound.warning("payment_signal_unmapped", details=details)
            return Outcome(payment=payment, applied=False)

        if current.is_terminal:
            if status == current:
                bound.info("payment_signal_duplicate")
                return Outcome(payment=payment, applied=False)
            anomaly = "late_success_after_terminal" if status.is_success else "conflicting_terminal_signal"
            bound.warning("payment_signal_anomaly", anomaly=anomaly)
            await session.execute(
                update(Payment)
                .where(Payment.id == payment.id)
                .values(meta=_with_event(payment.meta, "anomalies", {**event, "anomaly": anomaly}))
                .execution_options(synchronize_session=False)
            )
            await session.refresh(payment)
            return Outcome(payment=payment, applied=False, anomaly=anomaly)

        if not status.is_terminal:
            # pending/processing reported while still open: nothing to do
            bound.debug("payment_signal_open")
            return Outcome(payment=payment, applied=False)

        if status.is_success:
            meta = _with_event(payment.meta, _event_key(source), event, votes_created=True, paid_at=now.isoformat())
            if not await claim_materialization(session, payment, now, meta):
                bound.info("payment_claim_lost")
                await session.refresh(payment)
                return Outcome(payment=payment, applied=False)
            created = await materialize_votes(session, payment)
            await session.refresh(payment)
            bound.info("payment_approved", votes_created=created, amount=payment.amount)
            return Outcome(payment=payment, applied=True, materialized=True)

        stamp = {f"{status.value}_at": now.isoformat()}
        meta = _with_event(payment.meta, _event_key(source), event, **stamp)
        if not await _transition(session, payment.id, _OPEN, status=status.value, meta=meta, updated_at=now):
            bound.info("payment_transition_lost")
            await session.refresh(payment)
            return Outcome(payment=payment, applied=False)
        await session.refresh(payment)
        bound.info("payment_closed", status=status.value)
        return Outcome(payment=payment, applied=True)


async def expire_if_due(
    sessions: async_sessionmaker[AsyncSession] | None,
    payment_id: int,
    *,
    now: datetime | None = None,
) -> bool:
    """Lazy expiry. True only for the call that actually expired the payment."""
    now = now or utcnow()
    async with unit_of_work(sessions) as session:
        payment = await _load(session, payment_id)
        if payment.status_enum not in OPEN_STATUSES or not is_past(payment.expires_at, now):
            return False
        meta = dict(payment.meta or {})
        meta["expired_at"] = now.isoformat()
        res = await session.execute(
            update(Payment)
            .where(
                Payment.id == payment_id,
                Payment.status.in_(_OPEN),
                Payment.votes_materialized_at.is_(None),
            )
            .values(status=PaymentStatus.EXPIRED.value, meta=meta, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        expired = res.rowcount == 1
    if expired:
        log.info("payment_expired", payment_id=payment_id)
    return expired
