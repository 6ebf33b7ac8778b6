from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


PaymentMethodLiteral = Literal["check", "gateway_capture", "test_simulation"]
PaymentStageLiteral = Literal["downpayment", "balance", "partial"]
VerificationStatusLiteral = Literal["pending", "verified", "rejected"]
PaymentDeliveryStatusLiteral = Literal["pending", "completed", "paid", "failed", "expired"]
GatewayStatusLiteral = Literal["PAID", "SETTLED", "PENDING", "FAILED", "EXPIRED"]


class PaymentSubmit(BaseModel):
    quotation_id: UUID
    payment_stage: PaymentStageLiteral
    payment_method: PaymentMethodLiteral
    deposit_percentage: Decimal | None = None
    amount: Decimal | None = None
    bank_name: str | None = None
    check_number: str | None = None
    payment_date: date | None = None
    deposit_slip_url: str | None = None
    transaction_id: str | None = None
    notes: str | None = None


class DepositSlipAttach(BaseModel):
    deposit_slip_url: str


class PaymentVerifyRequest(BaseModel):
    notes: str | None = None


class PaymentRejectRequest(BaseModel):
    reason: str
    notes: str | None = None


class PaymentReopenRequest(BaseModel):
    reason: str


class GatewaySettlement(BaseModel):
    transaction_id: str = Field(min_length=1)
    status: GatewayStatusLiteral
    paid_at: datetime | None = None


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    quotation_id: UUID
    company_id: str
    payment_number: str
    currency: str
    amount: Decimal
    payment_method: PaymentMethodLiteral
    payment_stage: PaymentStageLiteral
    deposit_percentage: Decimal | None
    payment_status: PaymentDeliveryStatusLiteral
    verification_status: VerificationStatusLiteral | None
    verification_type: str | None
    is_locked: bool
    rejection_reason: str | None
    verification_notes: str | None
    verified_by: str | None
    verified_at: datetime | None
    reopened_by: str | None
    reopened_at: datetime | None
    reopen_reason: str | None
    bank_name: str | None
    check_number: str | None
    payment_date: date | None
    deposit_slip_url: str | None
    transaction_id: str | None
    paid_at: datetime | None
    notes: str | None
    submitted_by: str
    row_version: int
    created_at: datetime
    updated_at: datetime
