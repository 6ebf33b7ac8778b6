from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy import Select, and_, delete, exists, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from salesops import audit, events, numbering
from salesops.business.payments import balance
from salesops.business.payments.models import Payment, VerificationStatus
from salesops.business.quotations.models import AcceptanceStatus, Quotation, QuotationLine, QuotationPaymentStatus, utcnow
from salesops.business.quotations.schemas import (
    BalanceRead,
    QuotationCreate,
    QuotationDeclineRequest,
    QuotationLineCreate,
    QuotationLineRead,
    QuotationRead,
    QuotationSignRequest,
    QuotationUpdate,
)
from salesops.core.config import get_settings
from salesops.core.rbac import CAN_EDIT_QUOTATION, require_capability
from salesops.metrics import observe_concurrent_modification, observe_quotation_transition
from salesops.platform.errors import ConcurrentModification, InvalidTransition, NotFound, PermissionDenied, ValidationError
from salesops.platform.security.context import ActorContext


logger = logging.getLogger("salesops.quotations")

ENTITY_TYPE = "quotation"
QUOTATION_NUMBER_SCOPE = "quotation"

VALID_ACCEPTANCE_TRANSITIONS: dict[str, set[str]] = {
    AcceptanceStatus.DRAFT: {AcceptanceStatus.FINALIZED, AcceptanceStatus.SENT, AcceptanceStatus.DECLINED},
    AcceptanceStatus.FINALIZED: {AcceptanceStatus.SENT, AcceptanceStatus.DECLINED},
    AcceptanceStatus.SENT: {AcceptanceStatus.ACCEPTED, AcceptanceStatus.SIGNED, AcceptanceStatus.DECLINED},
    AcceptanceStatus.ACCEPTED: {AcceptanceStatus.SIGNED, AcceptanceStatus.DECLINED},
    AcceptanceStatus.DECLINED: set(),
    AcceptanceStatus.SIGNED: set(),
}

ACKNOWLEDGEABLE_STATUSES = {AcceptanceStatus.SENT, AcceptanceStatus.ACCEPTED}


def has_verified_payment(session: Session, quotation_id: uuid.UUID) -> bool:
    """Live check against the store; never answered from loaded objects."""

    stmt = select(
        exists().where(
            and_(
                Payment.quotation_id == quotation_id,
                Payment.verification_status == VerificationStatus.VERIFIED.value,
            )
        )
    )
    return bool(session.execute(stmt).scalar())


@dataclass(slots=True)
class QuotationsService:
    def create_quotation(self, session: Session, ctx: ActorContext, payload: QuotationCreate) -> QuotationRead:
        require_capability(ctx, CAN_EDIT_QUOTATION)
        if not ctx.company_id:
            raise ValidationError("company_id is required to create a quotation")

        settings = get_settings()
        quotation = Quotation(
            company_id=ctx.company_id,
            customer_id=payload.customer_id,
            lead_id=payload.lead_id,
            quotation_number=self._next_number(session, ctx.company_id),
            currency=(payload.currency or settings.default_currency).upper(),
            acceptance_status=AcceptanceStatus.DRAFT.value,
            payment_status=QuotationPaymentStatus.PENDING.value,
            vat_enabled=payload.vat_enabled,
            vat_rate=payload.vat_rate,
            notes=payload.notes,
            expiration_date=payload.expiration_date,
            created_by=ctx.user_id,
        )
        for position, line in enumerate(payload.lines, start=1):
            quotation.lines.append(self._build_line(line, position))
        self._recompute_totals(quotation)

        session.add(quotation)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            raise ConcurrentModification("quotation number already taken, retry", company_id=ctx.company_id)

        audit.record(
            session,
            actor_id=ctx.user_id,
            entity_type=ENTITY_TYPE,
            entity_id=quotation.id,
            action="quotation_created",
            before=None,
            after=self._snapshot(quotation),
            company_id=quotation.company_id,
            correlation_id=ctx.correlation_id,
        )
        session.commit()
        logger.info(
            "quotation.created",
            extra={"quotation_id": str(quotation.id), "company_id": quotation.company_id, "actor_id": ctx.user_id},
        )
        return self.get_quotation(session, ctx, quotation.id)

    def add_line(
        self,
        session: Session,
        ctx: ActorContext,
        quotation_id: uuid.UUID,
        payload: QuotationLineCreate,
    ) -> QuotationRead:
        require_capability(ctx, CAN_EDIT_QUOTATION)
        quotation = self._get_quotation(session, ctx, quotation_id, for_update=True)
        if quotation.acceptance_status != AcceptanceStatus.DRAFT:
            raise InvalidTransition(ENTITY_TYPE, quotation.acceptance_status, "line_added")
        if self._payment_count(session, quotation.id) > 0:
            raise ValidationError("total_amount cannot change once payments exist", quotation_id=str(quotation.id))

        before = self._snapshot(quotation)
        quotation.lines.append(self._build_line(payload, len(quotation.lines) + 1))
        self._recompute_totals(quotation)
        quotation.row_version = quotation.row_version + 1
        session.add(quotation)
        session.flush()

        audit.record(
            session,
            actor_id=ctx.user_id,
            entity_type=ENTITY_TYPE,
            entity_id=quotation.id,
            action="quotation_line_added",
            before=before,
            after=self._snapshot(quotation),
            company_id=quotation.company_id,
            correlation_id=ctx.correlation_id,
        )
        session.commit()
        return self.get_quotation(session, ctx, quotation.id)

    def update_quotation(
        self,
        session: Session,
        ctx: ActorContext,
        quotation_id: uuid.UUID,
        payload: QuotationUpdate,
    ) -> QuotationRead:
        require_capability(ctx, CAN_EDIT_QUOTATION)
        quotation = self._get_quotation(session, ctx, quotation_id, for_update=True)
        if self._locked_for(session, ctx, quotation.id):
            raise PermissionDenied("quotation is locked by a verified payment", quotation_id=str(quotation.id))

        changes: dict[str, Any] = {}
        for field_name in payload.model_fields_set:
            value = getattr(payload, field_name)
            if getattr(quotation, field_name) != value:
                changes[field_name] = value
        if not changes:
            return self._to_read(session, quotation)

        before = {key: getattr(quotation, key) for key in changes}
        self._write(session, quotation, changes)
        audit.record(
            session,
            actor_id=ctx.user_id,
            entity_type=ENTITY_TYPE,
            entity_id=quotation.id,
            action="quotation_updated",
            before=before,
            after=changes,
            company_id=quotation.company_id,
            correlation_id=ctx.correlation_id,
        )
        session.commit()
        return self.get_quotation(session, ctx, quotation.id)

    def finalize(self, session: Session, ctx: ActorContext, quotation_id: uuid.UUID) -> QuotationRead:
        require_capability(ctx, CAN_EDIT_QUOTATION)
        quotation = self._get_quotation(session, ctx, quotation_id, for_update=True)
        self._transition(session, ctx, quotation, AcceptanceStatus.FINALIZED, action="quotation_finalized")
        return self.get_quotation(session, ctx, quotation_id)

    def mark_sent(self, session: Session, ctx: ActorContext, quotation_id: uuid.UUID) -> QuotationRead:
        quotation = self._get_quotation(session, ctx, quotation_id, for_update=True)
        self._transition(session, ctx, quotation, AcceptanceStatus.SENT, action="quotation_sent")
        return self.get_quotation(session, ctx, quotation_id)

    def accept(self, session: Session, ctx: ActorContext, quotation_id: uuid.UUID) -> QuotationRead:
        quotation = self._get_quotation(session, ctx, quotation_id, for_update=True)
        self._transition(session, ctx, quotation, AcceptanceStatus.ACCEPTED, action="quotation_accepted")
        return self.get_quotation(session, ctx, quotation_id)

    def acknowledge(self, session: Session, ctx: ActorContext, quotation_id: uuid.UUID) -> QuotationRead:
        quotation = self._get_quotation(session, ctx, quotation_id, for_update=True)
        if quotation.acceptance_status not in ACKNOWLEDGEABLE_STATUSES:
            raise InvalidTransition(ENTITY_TYPE, quotation.acceptance_status, "acknowledged")
        if quotation.acknowledged:
            return self._to_read(session, quotation)

        before = {"acknowledged": False, "acknowledged_at": None, "acknowledged_by": None}
        changes = {"acknowledged": True, "acknowledged_at": utcnow(), "acknowledged_by": ctx.user_id}
        self._write(session, quotation, changes)
        audit.record(
            session,
            actor_id=ctx.user_id,
            entity_type=ENTITY_TYPE,
            entity_id=quotation.id,
            action="quotation_acknowledged",
            before=before,
            after=changes,
            company_id=quotation.company_id,
            correlation_id=ctx.correlation_id,
        )
        session.commit()
        return self.get_quotation(session, ctx, quotation_id)

    def sign(
        self,
        session: Session,
        ctx: ActorContext,
        quotation_id: uuid.UUID,
        payload: QuotationSignRequest,
    ) -> QuotationRead:
        quotation = self._get_quotation(session, ctx, quotation_id, for_update=True)
        self._ensure_transition_allowed(quotation, AcceptanceStatus.SIGNED)
        if not quotation.acknowledged:
            raise ValidationError("quotation must be acknowledged before signing", quotation_id=str(quotation.id))
        signer = payload.signed_by.strip()
        if not signer:
            raise ValidationError("signer name is required")
        if not payload.signature_image.strip():
            raise ValidationError("signature is required")

        extra: dict[str, Any] = {
            "signed_by": signer,
            "signed_at": utcnow(),
            "signature_image": payload.signature_image,
        }
        remarks = (payload.remarks or "").strip()
        if remarks:
            existing = quotation.notes or ""
            extra["notes"] = f"{existing}\n\nAcceptance remarks: {remarks}".lstrip()

        self._transition(session, ctx, quotation, AcceptanceStatus.SIGNED, action="quotation_signed", extra=extra)
        return self.get_quotation(session, ctx, quotation_id)

    def decline(
        self,
        session: Session,
        ctx: ActorContext,
        quotation_id: uuid.UUID,
        payload: QuotationDeclineRequest | None = None,
    ) -> QuotationRead:
        quotation = self._get_quotation(session, ctx, quotation_id, for_update=True)
        reason = (payload.reason or "").strip() if payload is not None else ""
        self._transition(
            session,
            ctx,
            quotation,
            AcceptanceStatus.DECLINED,
            action="quotation_declined",
            extra={"declined_reason": reason or None},
        )
        return self.get_quotation(session, ctx, quotation_id)

    def is_locked(self, session: Session, ctx: ActorContext, quotation_id: uuid.UUID) -> bool:
        quotation = self._get_quotation(session, ctx, quotation_id)
        return self._locked_for(session, ctx, quotation.id)

    def delete_quotation(self, session: Session, ctx: ActorContext, quotation_id: uuid.UUID) -> None:
        require_capability(ctx, CAN_EDIT_QUOTATION)
        quotation = self._get_quotation(session, ctx, quotation_id, for_update=True)
        verified = has_verified_payment(session, quotation.id)
        if verified and not ctx.can_override_lock:
            raise PermissionDenied("quotation is locked by a verified payment", quotation_id=str(quotation.id))

        before = self._snapshot(quotation)
        removed = session.execute(delete(Payment).where(Payment.quotation_id == quotation.id)).rowcount
        session.delete(quotation)
        session.flush()

        audit.record(
            session,
            actor_id=ctx.user_id,
            entity_type=ENTITY_TYPE,
            entity_id=quotation_id,
            action="quotation_deleted",
            before=before,
            after={"deleted": True, "payments_removed": removed, "override_used": verified},
            company_id=before["company_id"],
            correlation_id=ctx.correlation_id,
        )
        session.commit()
        observe_quotation_transition("quotation_deleted")
        logger.info(
            "quotation.deleted",
            extra={"quotation_id": str(quotation_id), "actor_id": ctx.user_id, "action": "quotation_deleted"},
        )

    def get_quotation(self, session: Session, ctx: ActorContext, quotation_id: uuid.UUID) -> QuotationRead:
        return self._to_read(session, self._get_quotation(session, ctx, quotation_id))

    def list_quotations(
        self,
        session: Session,
        ctx: ActorContext,
        *,
        acceptance_status: str | None = None,
        payment_status: str | None = None,
    ) -> list[QuotationRead]:
        stmt: Select[tuple[Quotation]] = select(Quotation).options(selectinload(Quotation.lines))
        if ctx.company_id is not None:
            stmt = stmt.where(Quotation.company_id == ctx.company_id)
        if acceptance_status is not None:
            stmt = stmt.where(Quotation.acceptance_status == AcceptanceStatus(acceptance_status).value)
        if payment_status is not None:
            stmt = stmt.where(Quotation.payment_status == QuotationPaymentStatus(payment_status).value)
        rows = session.scalars(stmt.order_by(Quotation.created_at.desc())).all()
        return [self._to_read(session, row) for row in rows]

    def _transition(
        self,
        session: Session,
        ctx: ActorContext,
        quotation: Quotation,
        target: AcceptanceStatus,
        *,
        action: str,
        extra: dict[str, Any] | None = None,
    ) -> None:
        self._ensure_transition_allowed(quotation, target)
        current = quotation.acceptance_status
        changes: dict[str, Any] = {"acceptance_status": target.value, **(extra or {})}
        before = {key: getattr(quotation, key) for key in changes}

        self._write(session, quotation, changes, expected_status=current)
        audit.record(
            session,
            actor_id=ctx.user_id,
            entity_type=ENTITY_TYPE,
            entity_id=quotation.id,
            action=action,
            before=before,
            after=changes,
            company_id=quotation.company_id,
            correlation_id=ctx.correlation_id,
        )
        session.commit()

        observe_quotation_transition(action)
        logger.info(
            "quotation.transition",
            extra={
                "quotation_id": str(quotation.id),
                "actor_id": ctx.user_id,
                "action": action,
                "from_status": current,
                "to_status": target.value,
            },
        )
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": f"quotation.{target.value}",
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": ctx.user_id,
                "company_id": quotation.company_id,
                "quotation_id": str(quotation.id),
                "from_status": current,
                "to_status": target.value,
                "correlation_id": ctx.correlation_id,
            }
        )

    @staticmethod
    def _ensure_transition_allowed(quotation: Quotation, target: AcceptanceStatus) -> None:
        allowed = VALID_ACCEPTANCE_TRANSITIONS.get(AcceptanceStatus(quotation.acceptance_status), set())
        if target not in allowed:
            raise InvalidTransition(ENTITY_TYPE, quotation.acceptance_status, target.value)

    @staticmethod
    def _write(
        session: Session,
        quotation: Quotation,
        changes: dict[str, Any],
        *,
        expected_status: str | None = None,
    ) -> None:
        conditions = [Quotation.id == quotation.id, Quotation.row_version == quotation.row_version]
        if expected_status is not None:
            conditions.append(Quotation.acceptance_status == expected_status)
        result = session.execute(
            update(Quotation)
            .where(and_(*conditions))
            .values(**changes, updated_at=utcnow(), row_version=Quotation.row_version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            observe_concurrent_modification("quotation")
            raise ConcurrentModification("quotation was modified concurrently", quotation_id=str(quotation.id))
        session.refresh(quotation)

    def _get_quotation(
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

    @staticmethod
    def _locked_for(session: Session, ctx: ActorContext, quotation_id: uuid.UUID) -> bool:
        return has_verified_payment(session, quotation_id) and not ctx.can_override_lock

    @staticmethod
    def _payment_count(session: Session, quotation_id: uuid.UUID) -> int:
        return session.scalar(select(func.count()).select_from(Payment).where(Payment.quotation_id == quotation_id)) or 0

    @staticmethod
    def _build_line(payload: QuotationLineCreate, position: int) -> QuotationLine:
        return QuotationLine(
            position=position,
            description=payload.description.strip(),
            quantity=balance.q(payload.quantity),
            unit_price=balance.q(payload.unit_price),
            line_total=balance.q(payload.quantity * payload.unit_price),
        )

    @staticmethod
    def _recompute_totals(quotation: Quotation) -> None:
        subtotal = balance.q(sum((Decimal(line.line_total) for line in quotation.lines), Decimal("0")))
        vat_amount = balance.q(subtotal * Decimal(quotation.vat_rate) / Decimal("100")) if quotation.vat_enabled else Decimal("0.00")
        quotation.subtotal = subtotal
        quotation.vat_amount = vat_amount
        quotation.total_amount = balance.q(subtotal + vat_amount)

    @staticmethod
    def _snapshot(quotation: Quotation) -> dict[str, Any]:
        return {
            "company_id": quotation.company_id,
            "quotation_number": quotation.quotation_number,
            "acceptance_status": quotation.acceptance_status,
            "payment_status": quotation.payment_status,
            "total_amount": quotation.total_amount,
            "currency": quotation.currency,
        }

    def _to_read(self, session: Session, quotation: Quotation) -> QuotationRead:
        payments = session.scalars(select(Payment).where(Payment.quotation_id == quotation.id)).all()
        summary = balance.summarize(quotation, payments)
        if quotation.payment_status == QuotationPaymentStatus.PENDING:
            display_status = quotation.acceptance_status
        else:
            display_status = f"{quotation.acceptance_status}, {quotation.payment_status}"

        return QuotationRead(
            id=quotation.id,
            company_id=quotation.company_id,
            customer_id=quotation.customer_id,
            lead_id=quotation.lead_id,
            quotation_number=quotation.quotation_number,
            currency=quotation.currency,
            acceptance_status=quotation.acceptance_status,
            payment_status=quotation.payment_status,
            display_status=display_status,
            subtotal=quotation.subtotal,
            vat_enabled=quotation.vat_enabled,
            vat_rate=quotation.vat_rate,
            vat_amount=quotation.vat_amount,
            total_amount=quotation.total_amount,
            notes=quotation.notes,
            expiration_date=quotation.expiration_date,
            acknowledged=quotation.acknowledged,
            acknowledged_at=quotation.acknowledged_at,
            acknowledged_by=quotation.acknowledged_by,
            signed_by=quotation.signed_by,
            signed_at=quotation.signed_at,
            has_signature=bool(quotation.signature_image),
            declined_reason=quotation.declined_reason,
            created_by=quotation.created_by,
            row_version=quotation.row_version,
            created_at=quotation.created_at,
            updated_at=quotation.updated_at,
            lines=[QuotationLineRead.model_validate(line) for line in quotation.lines],
            balance=BalanceRead(
                total_amount=summary.total_amount,
                amount_verified=summary.amount_verified,
                balance_remaining=summary.balance_remaining,
                derived_state=summary.state.value,
                awaiting_verification=summary.awaiting_count,
            ),
        )

    def _next_number(self, session: Session, company_id: str) -> str:
        value = numbering.next_value(
            session,
            company_id,
            QUOTATION_NUMBER_SCOPE,
            seed=lambda: numbering.highest_issued(session, Quotation.quotation_number, Quotation.company_id == company_id),
        )
        return numbering.format_number("QT", company_id, value)


quotations_service = QuotationsService()
