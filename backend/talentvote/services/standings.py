from __future__ import annotations
from typing import Any
from sqlalchemy import select, func, case
from sqlalchemy.ext.asyncio import AsyncSession

from talentvote.models.contest import Candidacy, Category, VOTABLE_STATUSES
from talentvote.models.payment import Payment, PaymentStatus
from talentvote.models.user import User
from talentvote.models.vote import Vote


class CandidacyNotFound(LookupError):
    pass


async def leaderboard(session: AsyncSession, edition_id: int, category_id: int | None = None) -> list[dict[str, Any]]:
    """Votable candidacies by vote_count desc; ties go to the earlier entry."""
    q = (
        select(Candidacy, User, Category)
        .join(User, User.id == Candidacy.candidate_id)
        .join(Category, Category.id == Candidacy.category_id)
        .where(Candidacy.edition_id == edition_id, Candidacy.status.in_(VOTABLE_STATUSES))
        .order_by(Candidacy.vote_count.desc(), Candidacy.created_at.asc(), Candidacy.id.asc())
    )
    if category_id is not None:
        q = q.where(Candidacy.category_id == category_id)
    rows = (await session.execute(q)).all()
    return [
        {
            "position": i,
            "candidacy_id": cand.id,
            "candidate_id": cand.candidate_id,
            "candidate_name": user.full_name,
            "category_id": cat.id,
            "category_name": cat.name,
            "status": cand.status,
            "vote_count": cand.vote_count,
        }
        for i, (cand, user, cat) in enumerate(rows, start=1)
    ]


async def candidacy_stats(session: AsyncSession, candidacy_id: int) -> dict[str, Any]:
    cand = await session.get(Candidacy, candidacy_id)
    if cand is None:
        raise CandidacyNotFound(candidacy_id)

    paid, free = (await session.execute(
        select(
            func.coalesce(func.sum(case((Vote.is_paid.is_(True), 1), else_=0)), 0),
            func.coalesce(func.sum(case((Vote.is_paid.is_(False), 1), else_=0)), 0),
        ).where(Vote.candidacy_id == candidacy_id, Vote.deleted_at.is_(None))
    )).one()

    payments_count, revenue = (await session.execute(
        select(func.count(Payment.id), func.coalesce(func.sum(Payment.amount), 0)).where(
            Payment.candidate_id == cand.candidate_id,
            Payment.edition_id == cand.edition_id,
            Payment.category_id == cand.category_id,
            Payment.status == PaymentStatus.APPROVED.value,
        )
    )).one()

    return {
        "candidacy_id": cand.id,
        "candidate_id": cand.candidate_id,
        "edition_id": cand.edition_id,
        "category_id": cand.category_id,
        "status": cand.status,
        "vote_count": cand.vote_count,
        "paid_votes": int(paid),
        "free_votes": int(free),
        "approved_payments": int(payments_count),
        "amount_collected": int(revenue),
    }
