from __future__ import annotations
import pytest
from talentvote.models.contest import Candidacy
from talentvote.models.user import User
from talentvote.models.payment import PaymentStatus
from talentvote.services import reconciliation
from talentvote.db import unit_of_work
from talentvote.services import ledger


@pytest.mark.asyncio
async def test_leaderboard_orders_by_votes(client, sessions, contest):
    async with unit_of_work(sessions) as s:
        rival_user = User(email="rival@gmail.com", firstname="Awa", lastname="Star")
        s.add(rival_user)
        await s.flush()
        rival = Candidacy(candidate_id=rival_user.id, edition_id=contest.edition.id,
                          category_id=contest.category.id, status="finalist")
        rejected = Candidacy(candidate_id=contest.voter.id, edition_id=contest.edition.id,
                             category_id=contest.category.id, status="rejected")
        s.add_all([rival, rejected])
        await s.flush()
        await ledger.record_votes(s, rival, 4, voter_id=contest.voter.id, payment_id=None)
        cand = await s.get(Candidacy, contest.candidacy.id)
        await ledger.record_votes(s, cand, 1, voter_id=contest.voter.id, payment_id=None)

    r = await client.get(f"/editions/{contest.edition.id}/leaderboard")
    assert r.status_code == 200
    rows = r.json()
    assert [row["candidate_name"] for row in rows] == ["Awa Star", "Koffi Talent"]
    assert [row["position"] for row in rows] == [1, 2]
    assert rows[0]["vote_count"] == 4

    r = await client.get(f"/editions/{contest.edition.id}/leaderboard", params={"category_id": contest.category.id + 9})
    assert r.json() == []


@pytest.mark.asyncio
async def test_candidacy_stats(client, sessions, contest, make_payment):
    async with unit_of_work(sessions) as s:
        cand = await s.get(Candidacy, contest.candidacy.id)
        await ledger.record_votes(s, cand, 2, voter_id=contest.voter.id, payment_id=None)
    p = await make_payment(contest, votes_count=3, status="processing", transaction_id="tx-stats")
    await reconciliation.apply_signal(sessions, p.id, PaymentStatus.APPROVED, source="webhook")

    r = await client.get(f"/candidacies/{contest.candidacy.id}/stats")
    assert r.status_code == 200
    stats = r.json()
    assert stats["vote_count"] == 5
    assert stats["paid_votes"] == 3 and stats["free_votes"] == 2
    assert stats["approved_payments"] == 1 and stats["amount_collected"] == 300

    assert (await client.get("/candidacies/999999/stats")).status_code == 404
