from __future__ import annotations
import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./talentvote-test.db")

import itertools
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from talentvote.db import Base, get_session, get_sessionmaker
from talentvote.main import app
from talentvote.models.user import User
from talentvote.models.contest import Edition, Category, Candidacy
from talentvote.models.vote_setting import VoteSetting
from talentvote.models.payment import Payment
from talentvote.models.vote import Vote  # noqa: F401  registers the table
from talentvote.security import make_access_token
from talentvote.services.gateway import FedaPayClient, get_gateway

_seq = itertools.count(1)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


@pytest_asyncio.fixture
async def sessions(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()

# ---------- fake FedaPay ----------

class FakeFedaPay:
    """In-memory stand-in for the FedaPay REST API, mounted on httpx.MockTransport."""

    def __init__(self):
        self.transactions: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.down = False
        self.omit_payment_url = False
        self._ids = itertools.count(1000)

    def set_status(self, transaction_id: str, status: str):
        self.transactions[str(transaction_id)]["status"] = status

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.down:
            raise httpx.ConnectTimeout("gateway timed out", request=request)
        path = request.url.path
        if request.method == "POST" and path == "/v1/transactions":
            body = json.loads(request.content)
            tx_id = str(next(self._ids))
            tx = {"id": int(tx_id), "status": "pending", "amount": body["amount"], "body": body}
            if not self.omit_payment_url:
                tx["payment_url"] = f"https://checkout.fedapay.test/{tx_id}"
            self.transactions[tx_id] = tx
            return httpx.Response(200, json={"v1/transaction": tx})
        if request.method == "POST" and path.startswith("/v1/transactions/") and path.endswith("/token"):
            tx_id = path.split("/")[3]
            return httpx.Response(200, json={"token": f"tok-{tx_id}", "url": f"https://pay.fedapay.test/{tx_id}"})
        if request.method == "GET" and path.startswith("/v1/transactions/"):
            tx = self.transactions.get(path.rsplit("/", 1)[-1])
            if tx is None:
                return httpx.Response(404, json={"message": "not found"})
            return httpx.Response(200, json={"v1/transaction": tx})
        if request.method == "GET" and path == "/v1/currencies":
            return httpx.Response(200, json={"v1/currencies": []})
        return httpx.Response(404, json={"message": "no route"})

    def create_calls(self) -> int:
        return sum(1 for r in self.requests if r.method == "POST" and r.url.path == "/v1/transactions")


@pytest.fixture
def fedapay() -> FakeFedaPay:
    return FakeFedaPay()


@pytest.fixture
def gateway(fedapay) -> FedaPayClient:
    return FedaPayClient("sk_sandbox_test", "sandbox", transport=httpx.MockTransport(fedapay.handler))


@pytest_asyncio.fixture
async def client(sessions, gateway):
    async def _session():
        async with sessions() as s:
            yield s

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_sessionmaker] = lambda: sessions
    app.dependency_overrides[get_gateway] = lambda: gateway
    async with AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()

# ---------- seed data ----------

@dataclass
class Contest:
    voter: User
    candidate: User
    edition: Edition
    category: Category
    candidacy: Candidacy
    setting: VoteSetting

    def auth(self, user: User | None = None) -> dict[str, str]:
        return {"Authorization": f"Bearer {make_access_token(str((user or self.voter).id))}"}


@pytest.fixture
def make_contest(sessions):
    async def _make(*, candidacy_status: str = "validated", **setting_kwargs) -> Contest:
        n = next(_seq)
        defaults = dict(
            vote_price=100,
            currency="XOF",
            is_paid=True,
            free_votes_per_user=3,
            allow_multiple_votes=True,
            vote_start=now_utc() - timedelta(days=1),
            vote_end=now_utc() + timedelta(days=1),
        )
        defaults.update(setting_kwargs)
        async with sessions() as s:
            voter = User(email=f"voter{n}@gmail.com", phone="22990123456", firstname="Ada", lastname="Houngbo")
            candidate = User(email=f"artist{n}@gmail.com", phone="22997000000", firstname="Koffi", lastname="Talent")
            edition = Edition(name=f"Edition {n}", year=2026)
            s.add_all([voter, candidate, edition])
            await s.flush()
            category = Category(edition_id=edition.id, name="Chant", slug=f"chant-{n}")
            s.add(category)
            await s.flush()
            candidacy = Candidacy(candidate_id=candidate.id, edition_id=edition.id, category_id=category.id,
                                  status=candidacy_status)
            setting = VoteSetting(edition_id=edition.id, category_id=None, **defaults)
            s.add_all([candidacy, setting])
            await s.commit()
        return Contest(voter, candidate, edition, category, candidacy, setting)

    return _make


@pytest_asyncio.fixture
async def contest(make_contest) -> Contest:
    return await make_contest()


@pytest.fixture
def make_payment(sessions):
    async def _make(contest: Contest, *, votes_count: int = 3, status: str = "pending",
                    transaction_id: str | None = None, expires_in: timedelta = timedelta(minutes=30),
                    anonymous: bool = False, category_id: int | None = -1) -> Payment:
        async with sessions() as s:
            p = Payment(
                user_id=None if anonymous else contest.voter.id,
                candidate_id=contest.candidate.id,
                edition_id=contest.edition.id,
                category_id=contest.category.id if category_id == -1 else category_id,
                amount=votes_count * contest.setting.vote_price,
                currency="XOF",
                votes_count=votes_count,
                status=status,
                transaction_id=transaction_id,
                customer_email="payer@gmail.com",
                customer_phone="22990123456",
                customer_firstname="Ada",
                customer_lastname="Houngbo",
                expires_at=now_utc() + expires_in,
                meta={"candidate_name": "Koffi Talent"},
            )
            s.add(p)
            await s.commit()
            await s.refresh(p)
        return p

    return _make
