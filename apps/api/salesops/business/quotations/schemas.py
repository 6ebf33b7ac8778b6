from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


AcceptanceStatusLiteral = Literal["draft", "finalized", "sent", "accepted", "declined", "signed"]
QuotationPaymentStatusLiteral = Literal["pending", "pending_finance_verification", "deposit_paid", "fully_paid"]


class QuotationLineCreate(BaseModel):
    description: str = Field(min_length=1)
    quantity: Decimal = Field(gt=Decimal("0"))
    unit_price: Decimal = Field(ge=Decimal("0"))


class QuotationCreate(BaseModel):
    customer_id: UUID
    lead_id: UUID | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=16)
    vat_enabled: bool = False
    vat_rate: Decimal = Field(default=Decimal("0"), ge=Decimal("0"), le=Decimal("100"))
    notes: str | None = None
    expiration_date: date | None = None
    lines: list[QuotationLineCreate] = Field(default_factory=list)


class QuotationUpdate(BaseModel):
    notes: str | None = None
    expiration_date: date | None = None


class QuotationSignRequest(BaseModel):
    signed_by: str
    signature_image: str
    remarks: str | None = None


class QuotationDeclineRequest(BaseModel):
    reason: str | None = None


class QuotationLineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    quotation_id: UUID
    position: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    line_total: Decimal


class BalanceRead(BaseModel):
    total_amount: Decimal
    amount_verified: Decimal
    balance_remaining: Decimal
    derived_state: QuotationPaymentStatusLiteral
    awaiting_verification: int


class QuotationRead(BaseModel):
    id: UUID
    company_id: str
    customer_id: UUID
    lead_id: UUID | None
    quotation_number: str
    currency: str
    acceptance_status: AcceptanceStatusLiteral
    payment_status: QuotationPaymentStatusLiteral
    display_status: str
    subtotal: Decimal
    vat_enabled: bool
    vat_rate: Decimal
    vat_amount: Decimal
    total_amount: Decimal
    notes: str | None
    expiration_date: date | None
    acknowledged: bool
    acknowledged_at: datetime | None
    acknowledged_by: str | None
    signed_by: str | None
    signed_at: datetime | None
    has_signature: bool
    declined_reason: str | None
    created_by: str
    row_version: int
    created_at: datetime
    updated_at: datetime
    lines: list[QuotationLineRead] = Field(default_factory=list)
    balance: BalanceRead


class QuotationLockRead(BaseModel):
    quotation_id: UUID
    is_locked: bool
