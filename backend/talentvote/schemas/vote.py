from __future__ import annotations
from pydantic import BaseModel
from talentvote.schemas.payment import PaymentPublic

class VoteResult(BaseModel):
    payment_required: bool
    # free route
    votes_created: int | None = None
    candidacy_id: int | None = None
    vote_count: int | None = None
    remaining_free_votes: int | None = None
    # paid route
    next_step: str | None = None
    payment: PaymentPublic | None = None
    payment_methods: list[str] | None = None

class VoteResponse(BaseModel):
    success: bool = True
    data: VoteResult

class RemainingVotes(BaseModel):
    edition_id: int
    free_votes_per_user: int
    remaining_free_votes: int
    votes_cast: int
    max_votes_per_user: int | None = None
    is_paid: bool
    vote_price: int
    currency: str

class LeaderboardRow(BaseModel):
    position: int
    candidacy_id: int
    candidate_id: int
    candidate_name: str
    category_id: int
    category_name: str
    status: str
    vote_count: int

class CandidacyStats(BaseModel):
    candidacy_id: int
    candidate_id: int
    edition_id: int
    category_id: int
    status: str
    vote_count: int
    paid_votes: int
    free_votes: int
    approved_payments: int
    amount_collected: int
