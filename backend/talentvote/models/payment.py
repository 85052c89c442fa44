from __future__ import annotations
import enum
import secrets
import string
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, DateTime, ForeignKey, UniqueConstraint, func
from talentvote.db import Base, JSONType


class PaymentStatus(str, enum.Enum):
    """
    Canonical payment status. The gateway's synonyms for success
    (approved/transferred/completed/paid/success) are folded into APPROVED
    by the gateway adapter and nowhere else.
    """
    PENDING = "pending"
    PROCESSING = "processing"
    APPROVED = "approved"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_success(self) -> bool:
        return self is PaymentStatus.APPROVED


OPEN_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)
TERMINAL_STATUSES = frozenset({
    PaymentStatus.APPROVED, PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.EXPIRED,
})


def new_payment_token() -> str:
    return secrets.token_urlsafe(32)


def new_reference() -> str:
    alphabet = string.ascii_uppercase + string.digits
    return "VOTE-" + "".join(secrets.choice(alphabet) for _ in range(10))


class Payment(Base):
    """
    An intent to pay for N votes on one candidacy.
    payment_token is the only identifier handed to clients; transaction_id is
    the gateway-side id, attached when the checkout is created.
    votes_materialized_at is the claim column: set exactly once, by the
    conditional update that wins the right to create the votes.
    """
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payment_token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True, default=new_payment_token)
    reference: Mapped[str] = mapped_column(String(32), nullable=False, unique=True, default=new_reference)

    user_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id", ondelete="SET NULL"), index=True, nullable=True)
    candidate_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    edition_id: Mapped[int] = mapped_column(Integer, ForeignKey("editions.id", ondelete="CASCADE"), index=True, nullable=False)
    category_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True)

    amount: Mapped[int] = mapped_column(Integer, nullable=False)   # whole currency units
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="XOF")
    votes_count: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=PaymentStatus.PENDING.value, index=True)
    payment_method: Mapped[str | None] = mapped_column(String(32), nullable=True)  # mobile_money|card|bank_transfer

    transaction_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    customer_email: Mapped[str | None] = mapped_column(String(100), nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    customer_firstname: Mapped[str | None] = mapped_column(String(50), nullable=True)
    customer_lastname: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # audit side-channel; keys are added, never removed
    meta: Mapped[dict] = mapped_column("metadata", JSONType, nullable=False, default=dict)

    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    votes_materialized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("transaction_id", name="uq_payment_transaction_id"),
    )

    @property
    def status_enum(self) -> PaymentStatus:
        return PaymentStatus(self.status)
