"""documents table

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "documents",
        sa.Column("collection", sa.String(length=64), primary_key=True),
        sa.Column("doc_id", sa.String(length=200), primary_key=True),
        sa.Column("budget_id", sa.String(length=100)),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_documents_collection_budget", "documents", ["collection", "budget_id"]
    )


def downgrade():
    op.drop_index("ix_documents_collection_budget", table_name="documents")
    op.drop_table("documents")
