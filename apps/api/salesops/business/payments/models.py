from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from salesops.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentMethod(StrEnum):
    CHECK = "check"
    GATEWAY_CAPTURE = "gateway_capture"
    TEST_SIMULATION = "test_simulation"


class PaymentStage(StrEnum):
    DOWNPAYMENT = "downpayment"
    BALANCE = "balance"
    PARTIAL = "partial"


class VerificationStatus(StrEnum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class PaymentDeliveryStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"


class VerificationType(StrEnum):
    MANUAL = "manual"
    AUTO = "auto"


MANUAL_VERIFICATION_METHODS = frozenset({PaymentMethod.CHECK})


class Payment(Base):
    __tablename__ = "payments_payment"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    quotation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("quotations_quotation.id", ondelete="CASCADE"),
        nullable=False,
    )
    company_id: Mapped[str] = mapped_column(String(128), nullable=False)
    payment_number: Mapped[str] = mapped_column(String(64), nullable=False)
    currency: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False)
    payment_stage: Mapped[str] = mapped_column(String(32), nullable=False)
    deposit_percentage: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    payment_status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=PaymentDeliveryStatus.PENDING.value, server_default=PaymentDeliveryStatus.PENDING.value
    )
    verification_status: Mapped[str | None] = mapped_column(
        String(32), nullable=True, default=VerificationStatus.PENDING.value, server_default=VerificationStatus.PENDING.value
    )
    verification_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    verification_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    verified_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reopened_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reopened_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reopen_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    bank_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    check_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payment_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    deposit_slip_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_by: Mapped[str] = mapped_column(String(255), nullable=False)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("company_id", "payment_number", name="uq_payments_payment_number_company"),
        Index("ix_payments_payment_quotation", "quotation_id"),
        Index("ix_payments_payment_transaction", "transaction_id"),
    )
