"""Finance decisions on submitted payments.

Each operation runs as one transaction: the owning quotation row is locked,
the payment is written with a compare-and-swap keyed on its verification
status and row version, an audit row is added, and the quotation's payment
status is re-derived from the full set of payments before the single commit.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from salesops import audit, events
from salesops.business.payments import balance
from salesops.business.payments.models import (
    MANUAL_VERIFICATION_METHODS,
    Payment,
    PaymentDeliveryStatus,
    PaymentMethod,
    VerificationStatus,
    VerificationType,
    utcnow,
)
from salesops.business.payments.repository import PaymentRepository
from salesops.business.payments.schemas import PaymentRead
from salesops.business.payments.service import ENTITY_TYPE, snapshot, to_payment_read
from salesops.business.quotations.models import Quotation, QuotationPaymentStatus
from salesops.context import get_correlation_id
from salesops.core.rbac import CAN_OVERRIDE_LOCK, CAN_VERIFY_PAYMENTS, require_capability
from salesops.metrics import observe_payment_transition, observe_quotation_payment_status
from salesops.otel import domain_span
from salesops.platform.errors import InvalidTransition, MissingEvidence, NotFound, ValidationError
from salesops.platform.security.context import ActorContext


logger = logging.getLogger("salesops.payments.verification")

SETTLED_GATEWAY_STATUSES = {"PAID", "SETTLED"}
FAILED_GATEWAY_STATUSES = {"FAILED": PaymentDeliveryStatus.FAILED, "EXPIRED": PaymentDeliveryStatus.EXPIRED}


@dataclass(slots=True)
class StatusChange:
    quotation_id: uuid.UUID
    company_id: str
    before: str
    after: str

    @property
    def changed(self) -> bool:
        return self.before != self.after


def resolve_quotation_payment_status(
    quotation: Quotation,
    payments: Sequence[Payment],
    *,
    allow_downgrade: bool,
) -> QuotationPaymentStatus:
    """Quotation payment status implied by ``payments``.

    A check still awaiting a finance decision keeps an otherwise unpaid
    quotation in ``pending_finance_verification``. Without ``allow_downgrade``
    a quotation already at ``fully_paid`` stays there.
    """

    target = balance.derived_payment_state(quotation, payments)
    if target == QuotationPaymentStatus.PENDING and any(
        row.payment_method in MANUAL_VERIFICATION_METHODS and balance.is_awaiting_decision(row) for row in payments
    ):
        target = QuotationPaymentStatus.PENDING_FINANCE_VERIFICATION
    if not allow_downgrade and quotation.payment_status == QuotationPaymentStatus.FULLY_PAID:
        target = QuotationPaymentStatus.FULLY_PAID
    return target


@dataclass(slots=True)
class VerificationEngine:
    repository: PaymentRepository = PaymentRepository()

    def verify(
        self,
        session: Session,
        ctx: ActorContext,
        payment_id: uuid.UUID,
        notes: str | None = None,
    ) -> PaymentRead:
        require_capability(ctx, CAN_VERIFY_PAYMENTS)
        with domain_span("payments.verify", ctx, payment_id=payment_id):
            payment = self.repository.get(session, ctx, payment_id)
            quotation = self.repository.lock_quotation(session, ctx, payment.quotation_id)
            payment = self.repository.get(session, ctx, payment_id)
            self._ensure_awaiting(payment, "verified")
            if payment.payment_method in MANUAL_VERIFICATION_METHODS and not payment.deposit_slip_url:
                raise MissingEvidence(
                    "deposit slip is required before verifying a check payment",
                    payment_id=str(payment.id),
                )

            return self._apply_verification(
                session,
                ctx,
                quotation,
                payment,
                verification_type=VerificationType.MANUAL,
                notes=(notes or "").strip() or None,
                paid_at=None,
            )

    def reject(
        self,
        session: Session,
        ctx: ActorContext,
        payment_id: uuid.UUID,
        reason: str,
        notes: str | None = None,
    ) -> PaymentRead:
        require_capability(ctx, CAN_VERIFY_PAYMENTS)
        with domain_span("payments.reject", ctx, payment_id=payment_id):
            payment = self.repository.get(session, ctx, payment_id)
            quotation = self.repository.lock_quotation(session, ctx, payment.quotation_id)
            payment = self.repository.get(session, ctx, payment_id)
            self._ensure_awaiting(payment, "rejected")
            cleaned_reason = (reason or "").strip()
            if not cleaned_reason:
                raise ValidationError("a rejection reason is required", payment_id=str(payment.id))

            before = snapshot(payment)
            changes: dict[str, Any] = {
                "verification_status": VerificationStatus.REJECTED.value,
                "payment_status": PaymentDeliveryStatus.FAILED.value,
                "rejection_reason": cleaned_reason,
                "verification_notes": (notes or "").strip() or None,
                "verified_by": ctx.user_id,
                "verified_at": utcnow(),
                "is_locked": False,
            }
            self.repository.compare_and_set(session, payment, changes, expected_verification=payment.verification_status)
            change = self._recompute(session, quotation, allow_downgrade=True)

            audit.record(
                session,
                actor_id=ctx.user_id,
                entity_type=ENTITY_TYPE,
                entity_id=payment.id,
                action="payment_rejected",
                before=before,
                after={**snapshot(payment), "rejection_reason": cleaned_reason, **self._status_after(change)},
                company_id=payment.company_id,
                correlation_id=ctx.correlation_id,
            )
            session.commit()

            self._after_commit(ctx, payment, change, action="payment_rejected", event_type="payment.rejected")
            return to_payment_read(payment)

    def reopen(
        self,
        session: Session,
        ctx: ActorContext,
        payment_id: uuid.UUID,
        reason: str,
    ) -> PaymentRead:
        require_capability(ctx, CAN_OVERRIDE_LOCK)
        with domain_span("payments.reopen", ctx, payment_id=payment_id):
            payment = self.repository.get(session, ctx, payment_id)
            quotation = self.repository.lock_quotation(session, ctx, payment.quotation_id)
            payment = self.repository.get(session, ctx, payment_id)
            if payment.verification_status != VerificationStatus.VERIFIED:
                raise InvalidTransition(ENTITY_TYPE, payment.verification_status, "pending")
            cleaned_reason = (reason or "").strip()
            if not cleaned_reason:
                raise ValidationError("a reopen reason is required", payment_id=str(payment.id))

            before = {**snapshot(payment), "verified_by": payment.verified_by, "verified_at": payment.verified_at}
            changes: dict[str, Any] = {
                "verification_status": VerificationStatus.PENDING.value,
                "verification_type": None,
                "is_locked": False,
                "verified_by": None,
                "verified_at": None,
                "reopened_by": ctx.user_id,
                "reopened_at": utcnow(),
                "reopen_reason": cleaned_reason,
            }
            self.repository.compare_and_set(session, payment, changes, expected_verification=VerificationStatus.VERIFIED.value)
            change = self._recompute(session, quotation, allow_downgrade=True)

            audit.record(
                session,
                actor_id=ctx.user_id,
                entity_type=ENTITY_TYPE,
                entity_id=payment.id,
                action="payment_reopened",
                before=before,
                after={**snapshot(payment), "reopen_reason": cleaned_reason, **self._status_after(change)},
                company_id=payment.company_id,
                correlation_id=ctx.correlation_id,
            )
            session.commit()

            self._after_commit(ctx, payment, change, action="payment_reopened", event_type="payment.reopened")
            return to_payment_read(payment)

    def record_gateway_settlement(
        self,
        session: Session,
        transaction_id: str,
        gateway_status: str,
        paid_at: datetime | None = None,
    ) -> PaymentRead:
        """Apply a settlement notification from the payment gateway.

        ``PAID`` and ``SETTLED`` verify the payment as the system actor and are
        idempotent. ``FAILED`` and ``EXPIRED`` only move the delivery status of
        a payment still awaiting a decision. Anything else is acknowledged
        without a change.
        """

        status_value = gateway_status.upper()
        with domain_span("payments.gateway_settlement", transaction_id=transaction_id, gateway_status=status_value) as span:
            payment = self.repository.get_by_transaction(session, transaction_id)
            if payment is None:
                raise NotFound("no payment for transaction", transaction_id=transaction_id)
            ctx = ActorContext.system(company_id=payment.company_id, correlation_id=get_correlation_id())
            span.set_attribute("payment_id", str(payment.id))
            span.set_attribute("company_id", payment.company_id)
            quotation = self.repository.lock_quotation(session, ctx, payment.quotation_id)
            payment = self.repository.get(session, ctx, payment.id)

            if status_value in SETTLED_GATEWAY_STATUSES:
                if payment.verification_status == VerificationStatus.VERIFIED:
                    session.rollback()
                    logger.info(
                        "payment.gateway_settlement_duplicate",
                        extra={"payment_id": str(payment.id), "action": "payment_verified"},
                    )
                    return to_payment_read(payment)
                if payment.is_locked or not balance.is_awaiting_decision(payment):
                    session.rollback()
                    logger.info(
                        "payment.gateway_settlement_ignored",
                        extra={"payment_id": str(payment.id), "payment_status": status_value},
                    )
                    return to_payment_read(payment)
                return self._apply_verification(
                    session,
                    ctx,
                    quotation,
                    payment,
                    verification_type=VerificationType.AUTO,
                    notes=f"Auto-verified by gateway ({status_value})",
                    paid_at=paid_at or utcnow(),
                )

            delivery_status = FAILED_GATEWAY_STATUSES.get(status_value)
            if delivery_status is None or payment.is_locked or not balance.is_awaiting_decision(payment):
                session.rollback()
                logger.info(
                    "payment.gateway_settlement_ignored",
                    extra={"payment_id": str(payment.id), "payment_status": status_value},
                )
                return to_payment_read(payment)

            before = snapshot(payment)
            self.repository.compare_and_set(
                session,
                payment,
                {"payment_status": delivery_status.value},
                expected_verification=payment.verification_status,
            )
            audit.record(
                session,
                actor_id=ctx.user_id,
                entity_type=ENTITY_TYPE,
                entity_id=payment.id,
                action="payment_gateway_status_updated",
                before=before,
                after={**snapshot(payment), "gateway_status": status_value},
                company_id=payment.company_id,
                correlation_id=ctx.correlation_id,
            )
            session.commit()
            observe_payment_transition("payment_gateway_status_updated", payment.payment_method)
            logger.info(
                "payment.gateway_status_updated",
                extra={
                    "payment_id": str(payment.id),
                    "quotation_id": str(payment.quotation_id),
                    "payment_status": delivery_status.value,
                },
            )
            return to_payment_read(payment)

    def _apply_verification(
        self,
        session: Session,
        ctx: ActorContext,
        quotation: Quotation,
        payment: Payment,
        *,
        verification_type: VerificationType,
        notes: str | None,
        paid_at: datetime | None,
    ) -> PaymentRead:
        before = snapshot(payment)
        changes: dict[str, Any] = {
            "verification_status": VerificationStatus.VERIFIED.value,
            "verification_type": verification_type.value,
            "payment_status": PaymentDeliveryStatus.PAID.value,
            "is_locked": True,
            "verified_by": ctx.user_id,
            "verified_at": utcnow(),
            "verification_notes": notes,
        }
        if paid_at is not None:
            changes["paid_at"] = paid_at
        self.repository.compare_and_set(session, payment, changes, expected_verification=payment.verification_status)
        change = self._recompute(session, quotation, allow_downgrade=False)

        audit.record(
            session,
            actor_id=ctx.user_id,
            entity_type=ENTITY_TYPE,
            entity_id=payment.id,
            action="payment_verified",
            before=before,
            after={**snapshot(payment), "verification_type": verification_type.value, **self._status_after(change)},
            company_id=payment.company_id,
            correlation_id=ctx.correlation_id,
        )
        session.commit()

        self._after_commit(ctx, payment, change, action="payment_verified", event_type="payment.verified")
        return to_payment_read(payment)

    def _recompute(self, session: Session, quotation: Quotation, *, allow_downgrade: bool) -> StatusChange:
        payments = self.repository.list_for_quotation(session, quotation.id)
        target = resolve_quotation_payment_status(quotation, payments, allow_downgrade=allow_downgrade)
        change = StatusChange(
            quotation_id=quotation.id,
            company_id=quotation.company_id,
            before=quotation.payment_status,
            after=target.value,
        )
        if change.changed:
            self.repository.set_quotation_payment_status(session, quotation, target.value)
        return change

    @staticmethod
    def _ensure_awaiting(payment: Payment, requested: str) -> None:
        if payment.is_locked or not balance.is_awaiting_decision(payment):
            raise InvalidTransition(ENTITY_TYPE, payment.verification_status, requested)

    @staticmethod
    def _status_after(change: StatusChange) -> dict[str, str]:
        return {
            "quotation_payment_status_before": change.before,
            "quotation_payment_status": change.after,
        }

    @staticmethod
    def _after_commit(
        ctx: ActorContext,
        payment: Payment,
        change: StatusChange,
        *,
        action: str,
        event_type: str,
    ) -> None:
        observe_payment_transition(action, PaymentMethod(payment.payment_method).value)
        logger.info(
            event_type,
            extra={
                "payment_id": str(payment.id),
                "quotation_id": str(payment.quotation_id),
                "actor_id": ctx.user_id,
                "amount": str(payment.amount),
                "action": action,
                "from_status": change.before,
                "to_status": change.after,
            },
        )
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": event_type,
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": ctx.user_id,
                "company_id": payment.company_id,
                "quotation_id": str(payment.quotation_id),
                "payment_id": str(payment.id),
                "amount": str(payment.amount),
                "verification_status": payment.verification_status,
                "correlation_id": ctx.correlation_id,
            }
        )
        if change.changed:
            observe_quotation_payment_status(change.after)
            events.publish(
                {
                    "event_id": str(uuid.uuid4()),
                    "event_type": "quotation.payment_status_changed",
                    "occurred_at": utcnow().isoformat(),
                    "actor_user_id": ctx.user_id,
                    "company_id": change.company_id,
                    "quotation_id": str(change.quotation_id),
                    "from_status": change.before,
                    "to_status": change.after,
                    "correlation_id": ctx.correlation_id,
                }
            )


verification_engine = VerificationEngine()
