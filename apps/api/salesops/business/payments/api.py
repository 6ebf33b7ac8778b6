from __future__ import annotations

import hmac
import uuid

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from salesops.business.payments.schemas import (
    DepositSlipAttach,
    GatewaySettlement,
    PaymentRead,
    PaymentRejectRequest,
    PaymentReopenRequest,
    PaymentSubmit,
    PaymentVerifyRequest,
)
from salesops.business.payments.service import payments_service
from salesops.business.payments.verification import verification_engine
from salesops.core.auth import get_actor_context
from salesops.core.config import get_settings
from salesops.core.database import get_db
from salesops.platform.security.context import ActorContext


router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("", response_model=PaymentRead, status_code=status.HTTP_201_CREATED)
def submit_payment(
    payload: PaymentSubmit,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor_context),
) -> PaymentRead:
    return payments_service.submit(db, ctx, payload)


@router.get("", response_model=list[PaymentRead])
def list_payments(
    quotation_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor_context),
) -> list[PaymentRead]:
    return payments_service.list_payments(db, ctx, quotation_id)


@router.get("/{payment_id}", response_model=PaymentRead)
def get_payment(
    payment_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor_context),
) -> PaymentRead:
    return payments_service.get_payment(db, ctx, payment_id)


@router.post("/{payment_id}/deposit-slip", response_model=PaymentRead)
def attach_deposit_slip(
    payment_id: uuid.UUID,
    payload: DepositSlipAttach,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor_context),
) -> PaymentRead:
    return payments_service.attach_deposit_slip(db, ctx, payment_id, payload)


@router.post("/{payment_id}/verify", response_model=PaymentRead)
def verify_payment(
    payment_id: uuid.UUID,
    payload: PaymentVerifyRequest | None = None,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor_context),
) -> PaymentRead:
    return verification_engine.verify(db, ctx, payment_id, payload.notes if payload is not None else None)


@router.post("/{payment_id}/reject", response_model=PaymentRead)
def reject_payment(
    payment_id: uuid.UUID,
    payload: PaymentRejectRequest,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor_context),
) -> PaymentRead:
    return verification_engine.reject(db, ctx, payment_id, payload.reason, payload.notes)


@router.post("/{payment_id}/reopen", response_model=PaymentRead)
def reopen_payment(
    payment_id: uuid.UUID,
    payload: PaymentReopenRequest,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor_context),
) -> PaymentRead:
    return verification_engine.reopen(db, ctx, payment_id, payload.reason)


@router.post("/gateway/webhook", response_model=PaymentRead)
def gateway_webhook(
    payload: GatewaySettlement,
    db: Session = Depends(get_db),
    webhook_token: str | None = Header(default=None, alias="x-webhook-token"),
) -> PaymentRead:
    expected = get_settings().gateway_webhook_token
    if not expected or webhook_token is None or not hmac.compare_digest(webhook_token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid webhook token")
    return verification_engine.record_gateway_settlement(db, payload.transaction_id, payload.status, payload.paid_at)
