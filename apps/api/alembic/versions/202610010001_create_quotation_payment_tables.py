"""create quotation, payment and audit tables

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "quotations_quotation",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.String(length=128), nullable=False),
        sa.Column("customer_id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=True),
        sa.Column("quotation_number", sa.String(length=64), nullable=False),
        sa.Column("currency", sa.String(length=16), nullable=False),
        sa.Column("acceptance_status", sa.String(length=32), nullable=False, server_default="draft"),
        sa.Column("payment_status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("subtotal", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("vat_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("vat_rate", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("vat_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("total_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("expiration_date", sa.Date(), nullable=True),
        sa.Column("acknowledged", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("acknowledged_by", sa.String(length=255), nullable=True),
        sa.Column("signed_by", sa.String(length=255), nullable=True),
        sa.Column("signed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("signature_image", sa.Text(), nullable=True),
        sa.Column("declined_reason", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("company_id", "quotation_number", name="uq_quotations_quotation_number_company"),
    )
    op.create_index(
        "ix_quotations_quotation_scope_date",
        "quotations_quotation",
        ["company_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "quotations_quotation_line",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("quotation_id", sa.Uuid(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("quantity", sa.Numeric(18, 2), nullable=False),
        sa.Column("unit_price", sa.Numeric(18, 2), nullable=False),
        sa.Column("line_total", sa.Numeric(18, 2), nullable=False),
        sa.ForeignKeyConstraint(["quotation_id"], ["quotations_quotation.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_quotations_quotation_line_quotation_id",
        "quotations_quotation_line",
        ["quotation_id"],
        unique=False,
    )

    op.create_table(
        "payments_payment",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("quotation_id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.String(length=128), nullable=False),
        sa.Column("payment_number", sa.String(length=64), nullable=False),
        sa.Column("currency", sa.String(length=16), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("payment_method", sa.String(length=32), nullable=False),
        sa.Column("payment_stage", sa.String(length=32), nullable=False),
        sa.Column("deposit_percentage", sa.Numeric(5, 2), nullable=True),
        sa.Column("payment_status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("verification_status", sa.String(length=32), nullable=True, server_default="pending"),
        sa.Column("verification_type", sa.String(length=16), nullable=True),
        sa.Column("is_locked", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("verification_notes", sa.Text(), nullable=True),
        sa.Column("verified_by", sa.String(length=255), nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reopened_by", sa.String(length=255), nullable=True),
        sa.Column("reopened_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reopen_reason", sa.Text(), nullable=True),
        sa.Column("bank_name", sa.String(length=255), nullable=True),
        sa.Column("check_number", sa.String(length=64), nullable=True),
        sa.Column("payment_date", sa.Date(), nullable=True),
        sa.Column("deposit_slip_url", sa.Text(), nullable=True),
        sa.Column("transaction_id", sa.String(length=255), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("submitted_by", sa.String(length=255), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["quotation_id"], ["quotations_quotation.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("company_id", "payment_number", name="uq_payments_payment_number_company"),
    )
    op.create_index("ix_payments_payment_quotation", "payments_payment", ["quotation_id"], unique=False)
    op.create_index("ix_payments_payment_transaction", "payments_payment", ["transaction_id"], unique=False)

    op.create_table(
        "audit_record",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("company_id", sa.String(length=128), nullable=True),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=128), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("actor_id", sa.String(length=128), nullable=False),
        sa.Column("before", sa.JSON(), nullable=True),
        sa.Column("after", sa.JSON(), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_record_entity", "audit_record", ["entity_type", "entity_id"], unique=False)
    op.create_index("ix_audit_record_company_date", "audit_record", ["company_id", "occurred_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_record_company_date", table_name="audit_record")
    op.drop_index("ix_audit_record_entity", table_name="audit_record")
    op.drop_table("audit_record")

    op.drop_index("ix_payments_payment_transaction", table_name="payments_payment")
    op.drop_index("ix_payments_payment_quotation", table_name="payments_payment")
    op.drop_table("payments_payment")

    op.drop_index("ix_quotations_quotation_line_quotation_id", table_name="quotations_quotation_line")
    op.drop_table("quotations_quotation_line")

    op.drop_index("ix_quotations_quotation_scope_date", table_name="quotations_quotation")
    op.drop_table("quotations_quotation")
