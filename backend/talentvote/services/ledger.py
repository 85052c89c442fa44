from __future__ import annotations
from datetime import datetime
from sqlalchemy import select, func, update, insert
from sqlalchemy.ext.asyncio import AsyncSession

from talentvote.models.contest import Candidacy
from talentvote.models.vote import Vote

# ---------- candidacy lookup ----------

class AmbiguousCandidacy(Exception):
    """Candidate competes in several categories of the edition and none was given."""


async def get_or_create_candidacy(
    session: AsyncSession, *, candidate_id: int, edition_id: int, category_id: int | None,
) -> Candidacy:
    """
    Find the candidacy for (candidate, edition, category), creating it when a
    confirmed payment targets one that does not exist yet. Creation is only
    possible when the category is known.
    """
    if category_id is None:
        rows = (await session.execute(
            select(Candidacy).where(Candidacy.candidate_id == candidate_id, Candidacy.edition_id == edition_id)
        )).scalars().all()
        if len(rows) == 1:
            return rows[0]
        raise AmbiguousCandidacy(f"candidate {candidate_id} has {len(rows)} candidacies in edition {edition_id}")

    found = await session.scalar(
        select(Candidacy).where(
            Candidacy.candidate_id == candidate_id,
            Candidacy.edition_id == edition_id,
            Candidacy.category_id == category_id,
        )
    )
    if found:
        return found
    cand = Candidacy(
        candidate_id=candidate_id, edition_id=edition_id, category_id=category_id,
        status="validated", vote_count=0,
    )
    session.add(cand)
    await session.flush()  # get cand.id
    return cand

# ---------- writes ----------

async def record_votes(
    session: AsyncSession,
    candidacy: Candidacy,
    count: int,
    *,
    voter_id: int | None,
    payment_id: int | None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> int:
    """
    Insert `count` vote rows and bump the candidacy counter by the same amount.
    Must run inside the caller's transaction so rows and counter commit together.
    """
    if count <= 0:
        raise ValueError("count must be > 0")
    row = {
        "candidacy_id": candidacy.id,
        "candidate_id": candidacy.candidate_id,
        "voter_id": voter_id,
        "edition_id": candidacy.edition_id,
        "category_id": candidacy.category_id,
        "payment_id": payment_id,
        "is_paid": payment_id is not None,
        "ip_address": ip_address[:45] if ip_address else None,
        "user_agent": user_agent[:255] if user_agent else None,
    }
    await session.execute(insert(Vote), [dict(row) for _ in range(count)])
    await _bump_counter(session, candidacy.id, count)
    return count


async def soft_delete_votes(session: AsyncSession, vote_ids: list[int], *, at: datetime) -> dict[int, int]:
    """
    Moderation: soft-delete live votes and take them off their candidacy counters.
    Already-deleted ids are skipped, so repeating the call changes nothing.
    Returns {candidacy_id: removed_count}.
    """
    if not vote_ids:
        return {}
    live = (await session.execute(
        select(Vote.id, Vote.candidacy_id)
        .where(Vote.id.in_(vote_ids), Vote.deleted_at.is_(None))
        .with_for_update()
    )).all()
    if not live:
        return {}
    await session.execute(
        update(Vote)
        .where(Vote.id.in_([vid for vid, _ in live]), Vote.deleted_at.is_(None))
        .values(deleted_at=at)
        .execution_options(synchronize_session=False)
    )
    removed: dict[int, int] = {}
    for _, cid in live:
        removed[cid] = removed.get(cid, 0) + 1
    for cid, n in removed.items():
        await _bump_counter(session, cid, -n)
    return removed


async def _bump_counter(session: AsyncSession, candidacy_id: int, delta: int) -> None:
    # in-database arithmetic; never read-modify-write in Python
    await session.execute(
        update(Candidacy)
        .where(Candidacy.id == candidacy_id)
        .values(vote_count=Candidacy.vote_count + delta)
        .execution_options(synchronize_session=False)
    )

# ---------- reads ----------

async def live_vote_count(session: AsyncSession, candidacy_id: int) -> int:
    total = await session.scalar(
        select(func.count()).select_from(Vote).where(Vote.candidacy_id == candidacy_id, Vote.deleted_at.is_(None))
    )
    return int(total or 0)


async def counter_value(session: AsyncSession, candidacy_id: int) -> int:
    total = await session.scalar(select(Candidacy.vote_count).where(Candidacy.id == candidacy_id))
    return int(total or 0)
