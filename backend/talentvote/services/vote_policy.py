from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Literal
from sqlalchemy import select, func, exists, or_
from sqlalchemy.ext.asyncio import AsyncSession

from talentvote.db import advisory_xact_lock
from talentvote.models.contest import Candidacy, VOTABLE_STATUSES
from talentvote.models.payment import Payment, OPEN_STATUSES
from talentvote.models.vote import Vote
from talentvote.models.vote_setting import VoteSetting
from talentvote.services.time_windows import utcnow, window_contains


class VoteRuleError(Exception):
    """A business rule refused the vote. `code` names the rule for API clients."""
    code = "vote_rule_violation"
    status_code = 409
    default_message = "Vote not allowed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

class SettingsNotConfigured(VoteRuleError):
    code = "settings_not_configured"
    status_code = 400
    default_message = "Voting is not configured for this category."

class VotingClosed(VoteRuleError):
    code = "voting_closed"
    status_code = 403
    default_message = "The voting period is not open."

class UserLimitReached(VoteRuleError):
    code = "user_limit_reached"
    default_message = "You have reached the vote limit for this edition."

class CandidateLimitReached(VoteRuleError):
    code = "candidate_limit_reached"
    default_message = "This candidate has reached the vote limit for this category."

class DuplicateVote(VoteRuleError):
    code = "duplicate_vote"
    default_message = "You have already voted for this candidate in this category."

class NoFreeVotesLeft(VoteRuleError):
    code = "no_free_votes_left"
    default_message = "You have used all your free votes for this edition."

class PaidVotingDisabled(VoteRuleError):
    code = "paid_voting_disabled"
    status_code = 400
    default_message = "Paid voting is not enabled for this category."

class PaymentMethodNotAllowed(VoteRuleError):
    code = "payment_method_not_allowed"
    status_code = 400
    default_message = "This payment method is not accepted for this category."

class CandidateNotFound(VoteRuleError):
    code = "candidate_not_found"
    status_code = 404
    default_message = "This candidate does not take part in this category."

class CandidacyNotEligible(VoteRuleError):
    code = "candidacy_not_eligible"
    default_message = "This candidacy cannot receive votes."

class CategoryRequired(VoteRuleError):
    code = "category_required"
    status_code = 422
    default_message = "This candidate competes in several categories; category_id is required."


Route = Literal["free", "paid"]


@dataclass
class VoteDecision:
    setting: VoteSetting
    candidacy: Candidacy
    route: Route
    requested: int
    amount: int = 0
    free_remaining: int = 0

# ---------- lookups ----------

async def find_candidacy(session: AsyncSession, *, candidate_id: int, edition_id: int, category_id: int | None) -> Candidacy:
    q = select(Candidacy).where(Candidacy.candidate_id == candidate_id, Candidacy.edition_id == edition_id)
    if category_id is not None:
        q = q.where(Candidacy.category_id == category_id)
    rows = (await session.execute(q)).scalars().all()
    if not rows:
        raise CandidateNotFound()
    if len(rows) > 1:
        raise CategoryRequired()
    cand = rows[0]
    if cand.status not in VOTABLE_STATUSES:
        raise CandidacyNotEligible(f"Candidacy status is '{cand.status}'.")
    return cand


async def resolve_setting(session: AsyncSession, edition_id: int, category_id: int | None) -> VoteSetting:
    """Category-specific row first, then the edition-wide row."""
    if category_id is not None:
        row = await session.scalar(
            select(VoteSetting).where(VoteSetting.edition_id == edition_id, VoteSetting.category_id == category_id)
        )
        if row:
            return row
    row = await session.scalar(
        select(VoteSetting).where(VoteSetting.edition_id == edition_id, VoteSetting.category_id.is_(None))
    )
    if row is None:
        raise SettingsNotConfigured()
    return row


def ensure_window_open(setting: VoteSetting, now: datetime | None = None) -> None:
    if not window_contains(setting.vote_start, setting.vote_end, now or utcnow()):
        raise VotingClosed()

# ---------- counters ----------

async def voter_votes_in_edition(session: AsyncSession, voter_id: int, edition_id: int, *, paid: bool | None = None) -> int:
    q = select(func.count()).select_from(Vote).where(
        Vote.voter_id == voter_id, Vote.edition_id == edition_id, Vote.deleted_at.is_(None),
    )
    if paid is not None:
        q = q.where(Vote.is_paid.is_(paid))
    return int(await session.scalar(q) or 0)


async def candidate_votes_in_category(session: AsyncSession, candidate_id: int, edition_id: int, category_id: int) -> int:
    total = await session.scalar(
        select(func.count()).select_from(Vote).where(
            Vote.candidate_id == candidate_id,
            Vote.edition_id == edition_id,
            Vote.category_id == category_id,
            Vote.deleted_at.is_(None),
        )
    )
    return int(total or 0)


async def reserved_votes(
    session: AsyncSession,
    now: datetime,
    *,
    edition_id: int,
    voter_id: int | None = None,
    candidacy: Candidacy | None = None,
) -> int:
    """Votes promised to open payments that have not expired yet."""
    q = select(func.coalesce(func.sum(Payment.votes_count), 0)).where(
        Payment.edition_id == edition_id,
        Payment.status.in_([s.value for s in OPEN_STATUSES]),
        or_(Payment.expires_at.is_(None), Payment.expires_at > now),
    )
    if voter_id is not None:
        q = q.where(Payment.user_id == voter_id)
    if candidacy is not None:
        q = q.where(Payment.candidate_id == candidacy.candidate_id, Payment.category_id == candidacy.category_id)
    return int(await session.scalar(q) or 0)


async def has_voted_for(session: AsyncSession, voter_id: int, candidacy: Candidacy) -> bool:
    return bool(await session.scalar(
        select(exists().where(
            Vote.voter_id == voter_id,
            Vote.candidacy_id == candidacy.id,
            Vote.deleted_at.is_(None),
        ))
    ))

# ---------- rules ----------

async def check_limits(
    session: AsyncSession,
    setting: VoteSetting,
    candidacy: Candidacy,
    *,
    voter_id: int | None,
    requested: int,
    now: datetime | None = None,
) -> None:
    """
    Per-voter cap, per-candidate cap and the repeat-vote rule. Anonymous payers skip the voter rules.
    Votes held by open, unexpired payments count against the caps as if already cast.
    """
    now = now or utcnow()
    if setting.max_votes_per_user and voter_id is not None:
        existing = await voter_votes_in_edition(session, voter_id, candidacy.edition_id)
        existing += await reserved_votes(session, now, edition_id=candidacy.edition_id, voter_id=voter_id)
        if existing + requested > setting.max_votes_per_user:
            raise UserLimitReached(
                f"You have reached the vote limit for this edition ({existing}/{setting.max_votes_per_user})."
            )

    if setting.max_votes_per_candidate:
        existing = await candidate_votes_in_category(
            session, candidacy.candidate_id, candidacy.edition_id, candidacy.category_id
        )
        existing += await reserved_votes(session, now, edition_id=candidacy.edition_id, candidacy=candidacy)
        if existing + requested > setting.max_votes_per_candidate:
            raise CandidateLimitReached()

    if not setting.allow_multiple_votes and voter_id is not None:
        if (
            requested > 1
            or await has_voted_for(session, voter_id, candidacy)
            or await reserved_votes(session, now, edition_id=candidacy.edition_id, voter_id=voter_id,
                                    candidacy=candidacy)
        ):
            raise DuplicateVote()


async def lock_counters(session: AsyncSession, setting: VoteSetting, candidacy: Candidacy, voter_id: int | None) -> None:
    """Serialize writers sharing a cap: the voter's lock first, then the candidacy's."""
    if voter_id is not None:
        await advisory_xact_lock(session, f"votes:{candidacy.edition_id}:{voter_id}")
    if setting.max_votes_per_candidate:
        await advisory_xact_lock(session, f"candidacy:{candidacy.id}")


async def remaining_free_votes(session: AsyncSession, setting: VoteSetting, voter_id: int) -> int:
    if setting.free_votes_per_user <= 0:
        return 0
    used = await voter_votes_in_edition(session, voter_id, setting.edition_id, paid=False)
    return max(0, setting.free_votes_per_user - used)


async def ensure_free_allowance(session: AsyncSession, setting: VoteSetting, voter_id: int, requested: int) -> int:
    remaining = await remaining_free_votes(session, setting, voter_id)
    if requested > remaining:
        if remaining == 0:
            raise NoFreeVotesLeft()
        raise NoFreeVotesLeft(f"You only have {remaining} free vote(s) left for this edition.")
    return remaining


async def evaluate(
    session: AsyncSession,
    *,
    voter_id: int | None,
    candidate_id: int,
    edition_id: int,
    category_id: int | None,
    requested: int,
    want_free: bool = False,
    require_paid: bool = False,
    now: datetime | None = None,
) -> VoteDecision:
    """
    Decide whether `requested` votes may be cast and which route they take.
    Writes nothing; the free route re-runs the same checks inside the writing
    transaction.
    """
    candidacy = await find_candidacy(session, candidate_id=candidate_id, edition_id=edition_id, category_id=category_id)
    setting = await resolve_setting(session, edition_id, candidacy.category_id)
    ensure_window_open(setting, now)
    await check_limits(session, setting, candidacy, voter_id=voter_id, requested=requested, now=now)

    paid = setting.is_paid and not want_free
    if require_paid and not setting.is_paid:
        raise PaidVotingDisabled()
    if paid or require_paid:
        return VoteDecision(setting=setting, candidacy=candidacy, route="paid", requested=requested,
                            amount=requested * int(setting.vote_price))

    if voter_id is None:
        raise NoFreeVotesLeft("Free votes require a signed-in voter.")
    remaining = await ensure_free_allowance(session, setting, voter_id, requested)
    return VoteDecision(setting=setting, candidacy=candidacy, route="free", requested=requested,
                        free_remaining=remaining)
