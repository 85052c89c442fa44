from __future__ import annotations
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = "20260105_0002"
down_revision = "20260105_0001"
branch_labels = None
depends_on = None

def upgrade() -> None:
    op.create_table(
        "vote_settings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("edition_id", sa.Integer(), sa.ForeignKey("editions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id", ondelete="CASCADE"), nullable=True),
        sa.Column("vote_price", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("currency", sa.String(8), nullable=False, server_default="XOF"),
        sa.Column("is_paid", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("free_votes_per_user", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_votes_per_user", sa.Integer(), nullable=True),
        sa.Column("max_votes_per_candidate", sa.Integer(), nullable=True),
        sa.Column("allow_multiple_votes", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("vote_start", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("vote_end", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("allow_mobile_money", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("allow_card", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("allow_bank_transfer", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.UniqueConstraint("edition_id", "category_id", name="uq_vote_setting_scope"),
        sa.CheckConstraint("vote_price >= 0", name="ck_vote_setting_price_nonneg"),
    )
    op.create_index("ix_vote_settings_edition_id", "vote_settings", ["edition_id"])
    # NULL category rows are distinct under the unique constraint; one edition-wide row per edition
    op.create_index(
        "uq_vote_setting_edition_wide", "vote_settings", ["edition_id"], unique=True,
        postgresql_where=sa.text("category_id IS NULL"),
    )

def downgrade() -> None:
    op.drop_index("uq_vote_setting_edition_wide", table_name="vote_settings")
    op.drop_index("ix_vote_settings_edition_id", table_name="vote_settings")
    op.drop_table("vote_settings")
