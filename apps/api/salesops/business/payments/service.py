from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from salesops import audit, events
from salesops.business.payments import balance
from salesops.business.payments.models import (
    MANUAL_VERIFICATION_METHODS,
    Payment,
    PaymentDeliveryStatus,
    PaymentMethod,
    PaymentStage,
    VerificationStatus,
    utcnow,
)
from salesops.business.payments.repository import PaymentRepository
from salesops.business.payments.schemas import DepositSlipAttach, PaymentRead, PaymentSubmit
from salesops.business.quotations.models import AcceptanceStatus, Quotation, QuotationPaymentStatus
from salesops.core.config import get_settings
from salesops.metrics import observe_payment_transition
from salesops.platform.errors import AmountOutOfRange, ConcurrentModification, InvalidTransition, ValidationError
from salesops.platform.security.context import ActorContext


logger = logging.getLogger("salesops.payments")

ENTITY_TYPE = "payment"

PAYABLE_ACCEPTANCE_STATUSES = {AcceptanceStatus.ACCEPTED, AcceptanceStatus.SIGNED}

REQUIRED_EVIDENCE: dict[PaymentMethod, tuple[str, ...]] = {
    PaymentMethod.CHECK: ("bank_name", "check_number", "payment_date"),
    PaymentMethod.GATEWAY_CAPTURE: ("transaction_id",),
    PaymentMethod.TEST_SIMULATION: (),
}


def snapshot(payment: Payment) -> dict[str, Any]:
    return {
        "quotation_id": payment.quotation_id,
        "amount": payment.amount,
        "payment_method": payment.payment_method,
        "payment_stage": payment.payment_stage,
        "payment_status": payment.payment_status,
        "verification_status": payment.verification_status,
        "is_locked": payment.is_locked,
    }


def to_payment_read(payment: Payment) -> PaymentRead:
    return PaymentRead.model_validate(payment)


@dataclass(slots=True)
class PaymentsService:
    repository: PaymentRepository = PaymentRepository()

    def submit(self, session: Session, ctx: ActorContext, payload: PaymentSubmit) -> PaymentRead:
        """Validate and record a new payment against a quotation.

        The owning quotation row is locked for the duration so the amount bound
        is computed against a stable set of verified payments. Every validation
        runs before the first write.
        """

        method = PaymentMethod(payload.payment_method)
        stage = PaymentStage(payload.payment_stage)

        quotation = self.repository.lock_quotation(session, ctx, payload.quotation_id)
        if quotation.acceptance_status not in PAYABLE_ACCEPTANCE_STATUSES:
            raise InvalidTransition("quotation", quotation.acceptance_status, "payment_submitted")

        evidence = self._collect_evidence(method, payload)
        existing = self.repository.list_for_quotation(session, quotation.id)
        remaining = balance.balance_remaining(quotation, existing)
        amount, deposit_percentage = self._resolve_amount(stage, payload, quotation, existing)

        if amount <= Decimal("0") or amount > remaining:
            raise AmountOutOfRange(
                f"amount {amount} must be greater than 0 and at most {max(remaining, Decimal('0'))}",
                amount=str(amount),
                balance_remaining=str(remaining),
            )

        manual = method in MANUAL_VERIFICATION_METHODS
        payment = Payment(
            quotation_id=quotation.id,
            company_id=quotation.company_id,
            payment_number=self.repository.next_number(session, quotation.company_id),
            currency=quotation.currency,
            amount=amount,
            payment_method=method.value,
            payment_stage=stage.value,
            deposit_percentage=deposit_percentage,
            payment_status=(PaymentDeliveryStatus.PENDING if manual else PaymentDeliveryStatus.COMPLETED).value,
            verification_status=VerificationStatus.PENDING.value,
            is_locked=False,
            notes=(payload.notes or "").strip() or None,
            submitted_by=ctx.user_id,
            **evidence,
        )
        session.add(payment)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            raise ConcurrentModification("payment number already taken, retry", company_id=quotation.company_id)

        quotation_status_before = quotation.payment_status
        if manual and quotation.payment_status != QuotationPaymentStatus.FULLY_PAID:
            self.repository.set_quotation_payment_status(
                session, quotation, QuotationPaymentStatus.PENDING_FINANCE_VERIFICATION.value
            )

        audit.record(
            session,
            actor_id=ctx.user_id,
            entity_type=ENTITY_TYPE,
            entity_id=payment.id,
            action="payment_submitted",
            before=None,
            after={
                **snapshot(payment),
                "balance_remaining_before": remaining,
                "quotation_payment_status_before": quotation_status_before,
                "quotation_payment_status": quotation.payment_status,
            },
            company_id=payment.company_id,
            correlation_id=ctx.correlation_id,
        )
        session.commit()

        observe_payment_transition("payment_submitted", method.value)
        logger.info(
            "payment.submitted",
            extra={
                "payment_id": str(payment.id),
                "quotation_id": str(quotation.id),
                "actor_id": ctx.user_id,
                "amount": str(amount),
                "action": "payment_submitted",
            },
        )
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": "payment.submitted",
                "occurred_at": utcnow().isoformat(),
                "company_id": payment.company_id,
                "quotation_id": str(quotation.id),
                "payment_id": str(payment.id),
                "amount": str(payment.amount),
                "currency": payment.currency,
                "correlation_id": ctx.correlation_id,
            }
        )
        return to_payment_read(payment)

    def attach_deposit_slip(
        self,
        session: Session,
        ctx: ActorContext,
        payment_id: uuid.UUID,
        payload: DepositSlipAttach,
    ) -> PaymentRead:
        payment = self.repository.get(session, ctx, payment_id)
        if payment.payment_method != PaymentMethod.CHECK:
            raise ValidationError("deposit slips apply to check payments only", payment_id=str(payment.id))
        if payment.is_locked or not balance.is_awaiting_decision(payment):
            raise InvalidTransition(ENTITY_TYPE, payment.verification_status, "deposit_slip_attached")
        url = payload.deposit_slip_url.strip()
        if not url:
            raise ValidationError("deposit_slip_url is required")

        before = {"deposit_slip_url": payment.deposit_slip_url}
        self.repository.compare_and_set(
            session,
            payment,
            {"deposit_slip_url": url},
            expected_verification=payment.verification_status,
        )
        audit.record(
            session,
            actor_id=ctx.user_id,
            entity_type=ENTITY_TYPE,
            entity_id=payment.id,
            action="deposit_slip_attached",
            before=before,
            after={"deposit_slip_url": url},
            company_id=payment.company_id,
            correlation_id=ctx.correlation_id,
        )
        session.commit()
        return to_payment_read(payment)

    def list_payments(self, session: Session, ctx: ActorContext, quotation_id: uuid.UUID) -> list[PaymentRead]:
        quotation = self.repository.get_quotation(session, ctx, quotation_id)
        return [to_payment_read(row) for row in self.repository.list_for_quotation(session, quotation.id)]

    def get_payment(self, session: Session, ctx: ActorContext, payment_id: uuid.UUID) -> PaymentRead:
        return to_payment_read(self.repository.get(session, ctx, payment_id))

    @staticmethod
    def _collect_evidence(method: PaymentMethod, payload: PaymentSubmit) -> dict[str, Any]:
        values: dict[str, Any] = {
            "bank_name": (payload.bank_name or "").strip() or None,
            "check_number": (payload.check_number or "").strip() or None,
            "payment_date": payload.payment_date,
            "deposit_slip_url": (payload.deposit_slip_url or "").strip() or None,
            "transaction_id": None,
        }
        if method == PaymentMethod.GATEWAY_CAPTURE:
            values["transaction_id"] = (payload.transaction_id or "").strip() or None
        missing = [name for name in REQUIRED_EVIDENCE[method] if values.get(name) is None]
        if missing:
            raise ValidationError(
                f"missing required fields for {method.value} payment: {', '.join(missing)}",
                missing=missing,
            )
        return values

    @staticmethod
    def _resolve_amount(
        stage: PaymentStage,
        payload: PaymentSubmit,
        quotation: Quotation,
        existing: Sequence[Payment],
    ) -> tuple[Decimal, Decimal | None]:
        if stage == PaymentStage.DOWNPAYMENT:
            settings = get_settings()
            percentage = payload.deposit_percentage
            if percentage is None:
                raise ValidationError("deposit_percentage is required for a downpayment")
            if not settings.deposit_percentage_min <= percentage <= settings.deposit_percentage_max:
                raise ValidationError(
                    f"deposit_percentage must be between {settings.deposit_percentage_min} and {settings.deposit_percentage_max}",
                    deposit_percentage=str(percentage),
                )
            return balance.deposit_amount(quotation.total_amount, percentage), percentage

        if stage == PaymentStage.BALANCE:
            return balance.bounded_balance(quotation, existing), None

        if payload.amount is None:
            raise ValidationError("amount is required for a partial payment")
        return balance.q(payload.amount), None


payments_service = PaymentsService()
