from __future__ import annotations

import uuid
from collections.abc import Sequence
from typing import Any

from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from salesops import numbering
from salesops.business.payments.models import Payment, PaymentMethod, utcnow
from salesops.business.quotations.models import Quotation
from salesops.metrics import observe_concurrent_modification
from salesops.platform.errors import ConcurrentModification, NotFound
from salesops.platform.security.context import ActorContext


PAYMENT_NUMBER_SCOPE = "payment"


class PaymentRepository:
    """Store access for payments and the owning quotation's payment axis."""

    def get_quotation(
        self,
        session: Session,
        ctx: ActorContext,
        quotation_id: uuid.UUID,
        *,
        for_update: bool = False,
    ) -> Quotation:
        stmt = select(Quotation).where(Quotation.id == quotation_id)
        if ctx.company_id is not None:
            stmt = stmt.where(Quotation.company_id == ctx.company_id)
        if for_update:
            stmt = stmt.with_for_update()
        quotation = session.scalar(stmt.execution_options(populate_existing=True))
        if quotation is None:
            raise NotFound("quotation not found", quotation_id=str(quotation_id))
        return quotation

    def lock_quotation(self, session: Session, ctx: ActorContext, quotation_id: uuid.UUID) -> Quotation:
        # FOR UPDATE serialises aggregate recomputation per quotation.
        return self.get_quotation(session, ctx, quotation_id, for_update=True)

    def get(self, session: Session, ctx: ActorContext, payment_id: uuid.UUID) -> Payment:
        stmt = select(Payment).where(Payment.id == payment_id)
        if ctx.company_id is not None:
            stmt = stmt.where(Payment.company_id == ctx.company_id)
        payment = session.scalar(stmt.execution_options(populate_existing=True))
        if payment is None:
            raise NotFound("payment not found", payment_id=str(payment_id))
        return payment

    def get_by_transaction(self, session: Session, transaction_id: str) -> Payment | None:
        """Gateway-captured payment carrying ``transaction_id``; other methods never match."""

        return session.scalar(
            select(Payment)
            .where(
                Payment.transaction_id == transaction_id,
                Payment.payment_method == PaymentMethod.GATEWAY_CAPTURE.value,
            )
            .order_by(Payment.created_at.asc())
            .limit(1)
            .execution_options(populate_existing=True)
        )

    def list_for_quotation(self, session: Session, quotation_id: uuid.UUID) -> Sequence[Payment]:
        return session.scalars(
            select(Payment)
            .where(Payment.quotation_id == quotation_id)
            .order_by(Payment.created_at.asc())
            .execution_options(populate_existing=True)
        ).all()

    def compare_and_set(
        self,
        session: Session,
        payment: Payment,
        changes: dict[str, Any],
        *,
        expected_verification: str | None,
    ) -> None:
        """Write ``changes`` only if the payment is still as it was read."""

        if expected_verification is None:
            status_condition = Payment.verification_status.is_(None)
        else:
            status_condition = Payment.verification_status == expected_verification
        result = session.execute(
            update(Payment)
            .where(
                and_(
                    Payment.id == payment.id,
                    Payment.row_version == payment.row_version,
                    status_condition,
                )
            )
            .values(**changes, updated_at=utcnow(), row_version=Payment.row_version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            observe_concurrent_modification("payment")
            raise ConcurrentModification("payment was modified concurrently", payment_id=str(payment.id))
        session.refresh(payment)

    def set_quotation_payment_status(self, session: Session, quotation: Quotation, payment_status: str) -> None:
        session.execute(
            update(Quotation)
            .where(Quotation.id == quotation.id)
            .values(payment_status=payment_status, updated_at=utcnow(), row_version=Quotation.row_version + 1)
            .execution_options(synchronize_session=False)
        )
        session.refresh(quotation)

    def next_number(self, session: Session, company_id: str) -> str:
        value = numbering.next_value(
            session,
            company_id,
            PAYMENT_NUMBER_SCOPE,
            seed=lambda: numbering.highest_issued(session, Payment.payment_number, Payment.company_id == company_id),
        )
        return numbering.format_number("PAY", company_id, value)


payment_repository = PaymentRepository()
