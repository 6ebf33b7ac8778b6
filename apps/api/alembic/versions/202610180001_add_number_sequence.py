"""add per-company document number counters

Revision ID: 202610180001
Revises: 202610010001
Create Date: 2026-10-18 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180001"
down_revision: str | None = "202610010001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "number_sequence",
        sa.Column("company_id", sa.String(length=128), nullable=False),
        sa.Column("scope", sa.String(length=32), nullable=False),
        sa.Column("last_value", sa.BigInteger(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("company_id", "scope"),
    )


def downgrade() -> None:
    op.drop_table("number_sequence")
