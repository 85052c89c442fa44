from __future__ import annotations
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = "20260105_0001"
down_revision = None
branch_labels = None
depends_on = None

def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("firstname", sa.String(50), nullable=True),
        sa.Column("lastname", sa.String(50), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "editions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("year", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("edition_id", sa.Integer(), sa.ForeignKey("editions.id", ondelete="CASCADE"), nullable=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("slug", sa.String(120), nullable=True),
    )
    op.create_index("ix_categories_edition_id", "categories", ["edition_id"])

    op.create_table(
        "candidacies",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("candidate_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("edition_id", sa.Integer(), sa.ForeignKey("editions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("vote_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("candidate_id", "edition_id", "category_id", name="uq_candidacy_identity"),
        sa.CheckConstraint("vote_count >= 0", name="ck_candidacy_vote_count_nonneg"),
    )
    op.create_index("ix_candidacies_candidate_id", "candidacies", ["candidate_id"])
    op.create_index("ix_candidacies_edition_id", "candidacies", ["edition_id"])
    op.create_index("ix_candidacies_category_id", "candidacies", ["category_id"])

def downgrade() -> None:
    op.drop_index("ix_candidacies_category_id", table_name="candidacies")
    op.drop_index("ix_candidacies_edition_id", table_name="candidacies")
    op.drop_index("ix_candidacies_candidate_id", table_name="candidacies")
    op.drop_table("candidacies")
    op.drop_index("ix_categories_edition_id", table_name="categories")
    op.drop_table("categories")
    op.drop_table("editions")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
