from __future__ import annotations
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, UniqueConstraint, Index, text
from talentvote.db import Base

class VoteSetting(Base):
    """
    Pricing, caps and timing of voting for an edition.
    category_id NULL applies to the whole edition unless a category row overrides it.
    """
    __tablename__ = "vote_settings"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    edition_id: Mapped[int] = mapped_column(Integer, ForeignKey("editions.id", ondelete="CASCADE"), index=True, nullable=False)
    category_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("categories.id", ondelete="CASCADE"), nullable=True)

    vote_price: Mapped[int] = mapped_column(Integer, nullable=False, default=100)  # whole currency units (XOF)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="XOF")
    is_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    free_votes_per_user: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_votes_per_user: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_votes_per_candidate: Mapped[int | None] = mapped_column(Integer, nullable=True)
    allow_multiple_votes: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    vote_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    vote_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    allow_mobile_money: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    allow_card: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    allow_bank_transfer: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("edition_id", "category_id", name="uq_vote_setting_scope"),
        # NULLs are distinct in the constraint above; one edition-wide row per edition
        Index(
            "uq_vote_setting_edition_wide", "edition_id", unique=True,
            postgresql_where=text("category_id IS NULL"),
            sqlite_where=text("category_id IS NULL"),
        ),
    )

    def payment_methods(self) -> list[str]:
        methods = []
        if self.allow_mobile_money:
            methods.append("mobile_money")
        if self.allow_card:
            methods.append("card")
        if self.allow_bank_transfer:
            methods.append("bank_transfer")
        return methods
