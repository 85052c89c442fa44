from __future__ import annotations
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = "20260106_0003"
down_revision = "20260105_0002"
branch_labels = None
depends_on = None

PAYMENT_STATUSES = "('pending','processing','approved','failed','cancelled','expired')"

def upgrade() -> None:
    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("payment_token", sa.String(64), nullable=False),
        sa.Column("reference", sa.String(32), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("candidate_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("edition_id", sa.Integer(), sa.ForeignKey("editions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id", ondelete="SET NULL"), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(8), nullable=False, server_default="XOF"),
        sa.Column("votes_count", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("payment_method", sa.String(32), nullable=True),
        sa.Column("transaction_id", sa.String(64), nullable=True),
        sa.Column("customer_email", sa.String(100), nullable=True),
        sa.Column("customer_phone", sa.String(20), nullable=True),
        sa.Column("customer_firstname", sa.String(50), nullable=True),
        sa.Column("customer_lastname", sa.String(50), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("expires_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("paid_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("votes_materialized_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("transaction_id", name="uq_payment_transaction_id"),
        sa.UniqueConstraint("reference", name="uq_payment_reference"),
        sa.CheckConstraint(f"status IN {PAYMENT_STATUSES}", name="ck_payment_status"),
        sa.CheckConstraint("amount > 0", name="ck_payment_amount_pos"),
        sa.CheckConstraint("votes_count BETWEEN 1 AND 1000", name="ck_payment_votes_count"),
        # a materialized payment is an approved payment
        sa.CheckConstraint(
            "votes_materialized_at IS NULL OR status = 'approved'", name="ck_payment_materialized_approved"
        ),
    )
    op.create_index("ix_payments_payment_token", "payments", ["payment_token"], unique=True)
    op.create_index("ix_payments_user_id", "payments", ["user_id"])
    op.create_index("ix_payments_candidate_id", "payments", ["candidate_id"])
    op.create_index("ix_payments_edition_id", "payments", ["edition_id"])
    op.create_index("ix_payments_status", "payments", ["status"])

    op.create_table(
        "votes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("candidacy_id", sa.Integer(), sa.ForeignKey("candidacies.id", ondelete="CASCADE"), nullable=False),
        sa.Column("candidate_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("voter_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("edition_id", sa.Integer(), sa.ForeignKey("editions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id", ondelete="CASCADE"), nullable=False),
        sa.Column("payment_id", sa.Integer(), sa.ForeignKey("payments.id", ondelete="RESTRICT"), nullable=True),
        sa.Column("is_paid", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.String(255), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("deleted_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.CheckConstraint("(payment_id IS NULL) = (is_paid = false)", name="ck_vote_paid_has_payment"),
    )
    op.create_index("ix_votes_candidacy_id", "votes", ["candidacy_id"])
    op.create_index("ix_votes_payment_id", "votes", ["payment_id"])
    op.create_index("ix_votes_voter_edition", "votes", ["voter_id", "edition_id"])
    op.create_index("ix_votes_candidate_scope", "votes", ["candidate_id", "edition_id", "category_id"])

def downgrade() -> None:
    op.drop_index("ix_votes_candidate_scope", table_name="votes")
    op.drop_index("ix_votes_voter_edition", table_name="votes")
    op.drop_index("ix_votes_payment_id", table_name="votes")
    op.drop_index("ix_votes_candidacy_id", table_name="votes")
    op.drop_table("votes")
    op.drop_index("ix_payments_status", table_name="payments")
    op.drop_index("ix_payments_edition_id", table_name="payments")
    op.drop_index("ix_payments_candidate_id", table_name="payments")
    op.drop_index("ix_payments_user_id", table_name="payments")
    op.drop_index("ix_payments_payment_token", table_name="payments")
    op.drop_table("payments")
