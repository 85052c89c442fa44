from __future__ import annotations
import asyncio
from datetime import datetime, timedelta, timezone
import pytest
from sqlalchemy import select, func
from talentvote.db import unit_of_work
from talentvote.models.contest import Candidacy, Category
from talentvote.models.payment import Payment, PaymentStatus
from talentvote.models.vote import Vote
from talentvote.services import ledger, reconciliation
from talentvote.services.ledger import AmbiguousCandidacy
from talentvote.services.voting import retract_votes


def _now():
    return datetime.now(timezone.utc)


async def _votes_for(sessions, payment_id: int) -> int:
    async with sessions() as s:
        return int(await s.scalar(select(func.count()).select_from(Vote).where(Vote.payment_id == payment_id)))


async def _counter(sessions, candidacy_id: int) -> int:
    async with sessions() as s:
        return await ledger.counter_value(s, candidacy_id)


async def _payment(sessions, payment_id: int) -> Payment:
    async with sessions() as s:
        return await s.get(Payment, payment_id)


@pytest.mark.asyncio
async def test_duplicate_success_materializes_once(sessions, contest, make_payment):
    p = await make_payment(contest, votes_count=4, status="processing", transaction_id="tx-1")

    first = await reconciliation.apply_signal(sessions, p.id, PaymentStatus.APPROVED, source="webhook")
    second = await reconciliation.apply_signal(sessions, p.id, PaymentStatus.APPROVED, source="redirect")

    assert first.applied and first.materialized
    assert not second.applied and not second.materialized
    assert await _votes_for(sessions, p.id) == 4
    assert await _counter(sessions, contest.candidacy.id) == 4
    stored = await _payment(sessions, p.id)
    assert stored.status == "approved"
    assert stored.paid_at is not None and stored.votes_materialized_at is not None
    assert stored.meta["votes_created"] is True
    assert stored.meta["webhook_events"][0]["source"] == "webhook"


@pytest.mark.asyncio
async def test_stale_reader_loses_the_claim(sessions, contest, make_payment):
    """Two reconcilers both saw the payment open; only the first conditional update wins."""
    p = await make_payment(contest, votes_count=3, status="processing", transaction_id="tx-race")

    async with sessions() as s:
        stale = await s.get(Payment, p.id)  # loaded while still processing

    won = await reconciliation.apply_signal(sessions, p.id, PaymentStatus.APPROVED, source="webhook")
    assert won.materialized

    async with unit_of_work(sessions) as s:
        claimed = await reconciliation.claim_materialization(s, stale, _now(), dict(stale.meta))
    assert claimed is False
    assert await _votes_for(sessions, p.id) == 3
    assert await _counter(sessions, contest.candidacy.id) == 3


@pytest.mark.asyncio
async def test_concurrent_confirmations_materialize_once(sessions, contest, make_payment):
    p = await make_payment(contest, votes_count=4, status="processing", transaction_id="tx-gather")

    outcomes = await asyncio.gather(
        reconciliation.apply_signal(sessions, p.id, PaymentStatus.APPROVED, source="webhook"),
        reconciliation.apply_signal(sessions, p.id, PaymentStatus.APPROVED, source="redirect"),
        reconciliation.apply_signal(sessions, p.id, PaymentStatus.APPROVED, source="poll"),
    )

    assert sum(o.materialized for o in outcomes) == 1
    assert await _votes_for(sessions, p.id) == 4
    assert await _counter(sessions, contest.candidacy.id) == 4
    assert (await _payment(sessions, p.id)).status == "approved"


@pytest.mark.asyncio
async def test_concurrent_success_and_expiry(sessions, contest, make_payment):
    p = await make_payment(contest, votes_count=2, status="processing", transaction_id="tx-pair",
                           expires_in=timedelta(minutes=-1))

    outcome, expired = await asyncio.gather(
        reconciliation.apply_signal(sessions, p.id, PaymentStatus.APPROVED, source="webhook"),
        reconciliation.expire_if_due(sessions, p.id),
    )

    stored = await _payment(sessions, p.id)
    assert outcome.materialized != expired
    assert stored.status == ("approved" if outcome.materialized else "expired")
    assert await _votes_for(sessions, p.id) == (2 if outcome.materialized else 0)


@pytest.mark.asyncio
async def test_failed_materialization_rolls_back_the_claim(sessions, contest, make_payment):
    # candidate entered twice in the edition and the payment has no category: ambiguous
    async with sessions() as s:
        other = Category(edition_id=contest.edition.id, name="Danse")
        s.add(other)
        await s.flush()
        s.add(Candidacy(candidate_id=contest.candidate.id, edition_id=contest.edition.id, category_id=other.id,
                        status="validated"))
        await s.commit()
    p = await make_payment(contest, votes_count=2, status="processing", transaction_id="tx-amb", category_id=None)

    with pytest.raises(AmbiguousCandidacy):
        await reconciliation.apply_signal(sessions, p.id, PaymentStatus.APPROVED, source="webhook")

    stored = await _payment(sessions, p.id)
    assert stored.status == "processing"
    assert stored.votes_materialized_at is None
    assert await _votes_for(sessions, p.id) == 0


@pytest.mark.asyncio
async def test_missing_candidacy_is_created_on_confirmation(sessions, contest, make_payment):
    async with sessions() as s:
        new_cat = Category(edition_id=contest.edition.id, name="Humour")
        s.add(new_cat)
        await s.commit()
    p = await make_payment(contest, votes_count=2, status="processing", transaction_id="tx-new",
                           category_id=new_cat.id)

    outcome = await reconciliation.apply_signal(sessions, p.id, PaymentStatus.APPROVED, source="poll")
    assert outcome.materialized
    async with sessions() as s:
        cand = await s.scalar(select(Candidacy).where(Candidacy.category_id == new_cat.id))
    assert cand is not None and cand.vote_count == 2 and cand.status == "validated"


@pytest.mark.asyncio
async def test_lazy_expiry_is_idempotent(sessions, contest, make_payment):
    p = await make_payment(contest, expires_in=timedelta(minutes=-1))

    assert await reconciliation.expire_if_due(sessions, p.id) is True
    assert await reconciliation.expire_if_due(sessions, p.id) is False
    stored = await _payment(sessions, p.id)
    assert stored.status == "expired"
    assert "expired_at" in stored.meta


@pytest.mark.asyncio
async def test_not_yet_due_is_left_alone(sessions, contest, make_payment):
    p = await make_payment(contest, expires_in=timedelta(minutes=5))
    assert await reconciliation.expire_if_due(sessions, p.id) is False
    assert (await _payment(sessions, p.id)).status == "pending"


@pytest.mark.asyncio
async def test_late_success_after_expiry_is_an_anomaly(sessions, contest, make_payment):
    p = await make_payment(contest, status="processing", transaction_id="tx-late", expires_in=timedelta(minutes=-1))
    await reconciliation.expire_if_due(sessions, p.id)

    outcome = await reconciliation.apply_signal(sessions, p.id, PaymentStatus.APPROVED, source="webhook")

    assert not outcome.applied
    assert outcome.anomaly == "late_success_after_terminal"
    stored = await _payment(sessions, p.id)
    assert stored.status == "expired"
    assert stored.meta["anomalies"][0]["anomaly"] == "late_success_after_terminal"
    assert await _votes_for(sessions, p.id) == 0


@pytest.mark.asyncio
async def test_failure_after_success_is_ignored(sessions, contest, make_payment):
    p = await make_payment(contest, votes_count=2, status="processing", transaction_id="tx-ok")
    await reconciliation.apply_signal(sessions, p.id, PaymentStatus.APPROVED, source="webhook")

    outcome = await reconciliation.apply_signal(sessions, p.id, PaymentStatus.FAILED, source="webhook")

    assert outcome.anomaly == "conflicting_terminal_signal"
    assert (await _payment(sessions, p.id)).status == "approved"
    assert await _votes_for(sessions, p.id) == 2


@pytest.mark.asyncio
async def test_expiry_cannot_override_success(sessions, contest, make_payment):
    p = await make_payment(contest, status="processing", transaction_id="tx-win", expires_in=timedelta(minutes=-5))
    await reconciliation.apply_signal(sessions, p.id, PaymentStatus.APPROVED, source="poll")
    assert await reconciliation.expire_if_due(sessions, p.id) is False
    assert (await _payment(sessions, p.id)).status == "approved"


@pytest.mark.asyncio
async def test_unmapped_and_open_signals_change_nothing(sessions, contest, make_payment):
    p = await make_payment(contest, status="processing", transaction_id="tx-open")
    assert not (await reconciliation.apply_signal(sessions, p.id, None, source="poll")).applied
    assert not (await reconciliation.apply_signal(sessions, p.id, PaymentStatus.PENDING, source="poll")).applied
    assert (await _payment(sessions, p.id)).status == "processing"


@pytest.mark.asyncio
async def test_attach_transaction_only_once(sessions, contest, make_payment):
    p = await make_payment(contest)
    assert await reconciliation.attach_transaction(
        sessions, p.id, transaction_id="tx-a", checkout_url="https://c/a", payment_method="mobile_money")
    assert not await reconciliation.attach_transaction(
        sessions, p.id, transaction_id="tx-b", checkout_url="https://c/b", payment_method="card")
    stored = await _payment(sessions, p.id)
    assert stored.status == "processing"
    assert stored.transaction_id == "tx-a"
    assert stored.meta["checkout_url"] == "https://c/a"


@pytest.mark.asyncio
async def test_counter_matches_rows_after_mixed_operations(sessions, contest, make_payment):
    async with unit_of_work(sessions) as s:
        cand = await s.get(Candidacy, contest.candidacy.id)
        await ledger.record_votes(s, cand, 3, voter_id=contest.voter.id, payment_id=None)
    p = await make_payment(contest, votes_count=5, status="processing", transaction_id="tx-mix")
    await reconciliation.apply_signal(sessions, p.id, PaymentStatus.APPROVED, source="webhook")
    await reconciliation.apply_signal(sessions, p.id, PaymentStatus.APPROVED, source="webhook")

    async with sessions() as s:
        ids = (await s.execute(select(Vote.id).where(Vote.candidacy_id == contest.candidacy.id).limit(2))).scalars().all()
    assert await retract_votes(sessions, list(ids), reason="fraud review") == 2
    assert await retract_votes(sessions, list(ids), reason="fraud review") == 0

    async with sessions() as s:
        live = await ledger.live_vote_count(s, contest.candidacy.id)
        counter = await ledger.counter_value(s, contest.candidacy.id)
    assert live == counter == 6
