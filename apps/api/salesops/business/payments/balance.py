"""Pure balance arithmetic over a quotation total and its payments.

Nothing here touches the database. Every function re-derives its answer from
the full set of payments it is given, so repeating a calculation after any
sequence of verifications yields the same result.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

from salesops.business.payments.models import VerificationStatus
from salesops.business.quotations.models import QuotationPaymentStatus


MONEY_TOLERANCE = Decimal("0.01")
_CENT = Decimal("0.01")
_ZERO = Decimal("0")


class HasTotal(Protocol):
    total_amount: Decimal


class HasVerification(Protocol):
    amount: Decimal
    verification_status: str | None


@dataclass(frozen=True, slots=True)
class BalanceSummary:
    total_amount: Decimal
    amount_verified: Decimal
    balance_remaining: Decimal
    state: QuotationPaymentStatus
    awaiting_count: int


def q(value: Decimal | int | str) -> Decimal:
    return Decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP)


def amount_verified(quotation: HasTotal, payments: Iterable[HasVerification]) -> Decimal:
    total = sum(
        (Decimal(payment.amount) for payment in payments if payment.verification_status == VerificationStatus.VERIFIED),
        _ZERO,
    )
    return q(total)


def balance_remaining(quotation: HasTotal, payments: Iterable[HasVerification]) -> Decimal:
    """Total minus verified funds. May be slightly negative after a race."""

    return q(Decimal(quotation.total_amount) - amount_verified(quotation, payments))


def bounded_balance(quotation: HasTotal, payments: Iterable[HasVerification]) -> Decimal:
    return max(balance_remaining(quotation, payments), _ZERO)


def derived_payment_state(quotation: HasTotal, payments: Iterable[HasVerification]) -> QuotationPaymentStatus:
    rows = list(payments)
    if balance_remaining(quotation, rows) <= MONEY_TOLERANCE:
        return QuotationPaymentStatus.FULLY_PAID
    if amount_verified(quotation, rows) > _ZERO:
        return QuotationPaymentStatus.DEPOSIT_PAID
    return QuotationPaymentStatus.PENDING


def is_awaiting_decision(payment: HasVerification) -> bool:
    return payment.verification_status in (None, VerificationStatus.PENDING)


def deposit_amount(total_amount: Decimal, deposit_percentage: Decimal) -> Decimal:
    return q(Decimal(total_amount) * Decimal(deposit_percentage) / Decimal("100"))


def summarize(quotation: HasTotal, payments: Iterable[HasVerification]) -> BalanceSummary:
    rows = list(payments)
    return BalanceSummary(
        total_amount=q(quotation.total_amount),
        amount_verified=amount_verified(quotation, rows),
        balance_remaining=balance_remaining(quotation, rows),
        state=derived_payment_state(quotation, rows),
        awaiting_count=sum(1 for row in rows if is_awaiting_decision(row)),
    )
