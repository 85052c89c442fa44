from __future__ import annotations
from datetime import datetime
from typing import Any
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from talentvote.db import unit_of_work, get_sessionmaker
from talentvote.models.user import User
from talentvote.services import ledger, payments, vote_policy
from talentvote.services.time_windows import utcnow
from talentvote.services.validation import VoteRequestPayload, validate_payment_intent

log = structlog.get_logger()


async def cast_vote(
    sessions: async_sessionmaker[AsyncSession] | None,
    req: VoteRequestPayload,
    voter: User,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Free route: votes are written right away.
    Paid route: a pending payment is created and the client continues with
    /payments/process; votes appear once the gateway confirms.
    """
    now = now or utcnow()
    sessions = sessions or get_sessionmaker()
    async with sessions() as session:
        decision = await vote_policy.evaluate(
            session,
            voter_id=voter.id,
            candidate_id=req.candidate_id,
            edition_id=req.edition_id,
            category_id=req.category_id,
            requested=req.votes_count,
            want_free=req.use_free_votes,
            now=now,
        )

    if decision.route == "paid":
        intent = validate_payment_intent({
            "candidate_id": req.candidate_id,
            "edition_id": req.edition_id,
            "category_id": decision.candidacy.category_id,
            "votes_count": req.votes_count,
            "email": req.email or voter.email,
            "phone": req.phone or voter.phone,
            "firstname": req.firstname or voter.firstname,
            "lastname": req.lastname or voter.lastname,
        })
        payment = await payments.initiate_payment(
            sessions, intent, voter=voter, ip_address=ip_address, user_agent=user_agent, now=now,
        )
        return {
            "payment_required": True,
            "next_step": "process_payment",
            "payment": payments.payment_view(payment),
            "payment_methods": decision.setting.payment_methods(),
        }

    async with unit_of_work(sessions) as session:
        await vote_policy.lock_counters(session, decision.setting, decision.candidacy, voter.id)
        # same checks again, now serialized with every writer sharing these caps
        decision = await vote_policy.evaluate(
            session,
            voter_id=voter.id,
            candidate_id=req.candidate_id,
            edition_id=req.edition_id,
            category_id=decision.candidacy.category_id,
            requested=req.votes_count,
            want_free=True,
            now=now,
        )
        await ledger.record_votes(
            session, decision.candidacy, req.votes_count,
            voter_id=voter.id, payment_id=None, ip_address=ip_address, user_agent=user_agent,
        )
        vote_count = await ledger.counter_value(session, decision.candidacy.id)

    log.info("votes_cast", route="free", voter_id=voter.id, candidacy_id=decision.candidacy.id,
             votes=req.votes_count)
    return {
        "payment_required": False,
        "votes_created": req.votes_count,
        "candidacy_id": decision.candidacy.id,
        "vote_count": vote_count,
        "remaining_free_votes": decision.free_remaining - req.votes_count,
    }


async def remaining_free_votes(
    sessions: async_sessionmaker[AsyncSession] | None,
    voter: User,
    edition_id: int,
    category_id: int | None = None,
) -> dict[str, Any]:
    async with (sessions or get_sessionmaker())() as session:
        setting = await vote_policy.resolve_setting(session, edition_id, category_id)
        remaining = await vote_policy.remaining_free_votes(session, setting, voter.id)
        used = await vote_policy.voter_votes_in_edition(session, voter.id, edition_id)
    return {
        "edition_id": edition_id,
        "free_votes_per_user": setting.free_votes_per_user,
        "remaining_free_votes": remaining,
        "votes_cast": used,
        "max_votes_per_user": setting.max_votes_per_user,
        "is_paid": setting.is_paid,
        "vote_price": setting.vote_price,
        "currency": setting.currency,
    }


async def retract_votes(
    sessions: async_sessionmaker[AsyncSession] | None,
    vote_ids: list[int],
    *,
    reason: str,
    now: datetime | None = None,
) -> int:
    """Moderation soft delete. Returns how many votes were actually removed."""
    async with unit_of_work(sessions) as session:
        removed = await ledger.soft_delete_votes(session, vote_ids, at=now or utcnow())
    total = sum(removed.values())
    log.info("votes_retracted", requested=len(vote_ids), removed=total, reason=reason,
             candidacies=sorted(removed))
    return total
