from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from salesops.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AcceptanceStatus(StrEnum):
    DRAFT = "draft"
    FINALIZED = "finalized"
    SENT = "sent"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    SIGNED = "signed"


class QuotationPaymentStatus(StrEnum):
    PENDING = "pending"
    PENDING_FINANCE_VERIFICATION = "pending_finance_verification"
    DEPOSIT_PAID = "deposit_paid"
    FULLY_PAID = "fully_paid"


class Quotation(Base):
    __tablename__ = "quotations_quotation"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id: Mapped[str] = mapped_column(String(128), nullable=False)
    customer_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    lead_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    quotation_number: Mapped[str] = mapped_column(String(64), nullable=False)
    currency: Mapped[str] = mapped_column(String(16), nullable=False)
    acceptance_status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=AcceptanceStatus.DRAFT.value, server_default=AcceptanceStatus.DRAFT.value
    )
    payment_status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=QuotationPaymentStatus.PENDING.value,
        server_default=QuotationPaymentStatus.PENDING.value,
    )
    subtotal: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"), server_default="0")
    vat_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    vat_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"), server_default="0")
    vat_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"), server_default="0")
    total_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"), server_default="0")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    expiration_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    acknowledged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    signed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    signed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    signature_image: Mapped[str | None] = mapped_column(Text, nullable=True)
    declined_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    lines: Mapped[list[QuotationLine]] = relationship(
        "salesops.business.quotations.models.QuotationLine",
        back_populates="quotation",
        cascade="all, delete-orphan",
        order_by="QuotationLine.position",
    )

    __table_args__ = (
        UniqueConstraint("company_id", "quotation_number", name="uq_quotations_quotation_number_company"),
        Index("ix_quotations_quotation_scope_date", "company_id", "created_at"),
    )


class QuotationLine(Base):
    __tablename__ = "quotations_quotation_line"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    quotation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("quotations_quotation.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    line_total: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    quotation: Mapped[Quotation] = relationship("salesops.business.quotations.models.Quotation", back_populates="lines")

    __table_args__ = (
        Index("ix_quotations_quotation_line_quotation_id", "quotation_id"),
    )
