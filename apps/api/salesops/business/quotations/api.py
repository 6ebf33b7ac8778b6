from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from salesops.business.quotations.schemas import (
    AcceptanceStatusLiteral,
    QuotationCreate,
    QuotationDeclineRequest,
    QuotationLineCreate,
    QuotationLockRead,
    QuotationPaymentStatusLiteral,
    QuotationRead,
    QuotationSignRequest,
    QuotationUpdate,
)
from salesops.business.quotations.service import quotations_service
from salesops.core.auth import get_actor_context
from salesops.core.database import get_db
from salesops.platform.security.context import ActorContext


router = APIRouter(prefix="/quotations", tags=["quotations"])


@router.post("", response_model=QuotationRead, status_code=status.HTTP_201_CREATED)
def create_quotation(
    payload: QuotationCreate,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor_context),
) -> QuotationRead:
    return quotations_service.create_quotation(db, ctx, payload)


@router.get("", response_model=list[QuotationRead])
def list_quotations(
    acceptance_status: AcceptanceStatusLiteral | None = Query(default=None),
    payment_status: QuotationPaymentStatusLiteral | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor_context),
) -> list[QuotationRead]:
    return quotations_service.list_quotations(db, ctx, acceptance_status=acceptance_status, payment_status=payment_status)


@router.get("/{quotation_id}", response_model=QuotationRead)
def get_quotation(
    quotation_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor_context),
) -> QuotationRead:
    return quotations_service.get_quotation(db, ctx, quotation_id)


@router.patch("/{quotation_id}", response_model=QuotationRead)
def update_quotation(
    quotation_id: uuid.UUID,
    payload: QuotationUpdate,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor_context),
) -> QuotationRead:
    return quotations_service.update_quotation(db, ctx, quotation_id, payload)


@router.delete("/{quotation_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_quotation(
    quotation_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor_context),
) -> Response:
    quotations_service.delete_quotation(db, ctx, quotation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{quotation_id}/lines", response_model=QuotationRead, status_code=status.HTTP_201_CREATED)
def add_line(
    quotation_id: uuid.UUID,
    payload: QuotationLineCreate,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor_context),
) -> QuotationRead:
    return quotations_service.add_line(db, ctx, quotation_id, payload)


@router.post("/{quotation_id}/finalize", response_model=QuotationRead)
def finalize_quotation(
    quotation_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor_context),
) -> QuotationRead:
    return quotations_service.finalize(db, ctx, quotation_id)


@router.post("/{quotation_id}/send", response_model=QuotationRead)
def send_quotation(
    quotation_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor_context),
) -> QuotationRead:
    return quotations_service.mark_sent(db, ctx, quotation_id)


@router.post("/{quotation_id}/accept", response_model=QuotationRead)
def accept_quotation(
    quotation_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor_context),
) -> QuotationRead:
    return quotations_service.accept(db, ctx, quotation_id)


@router.post("/{quotation_id}/acknowledge", response_model=QuotationRead)
def acknowledge_quotation(
    quotation_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor_context),
) -> QuotationRead:
    return quotations_service.acknowledge(db, ctx, quotation_id)


@router.post("/{quotation_id}/sign", response_model=QuotationRead)
def sign_quotation(
    quotation_id: uuid.UUID,
    payload: QuotationSignRequest,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor_context),
) -> QuotationRead:
    return quotations_service.sign(db, ctx, quotation_id, payload)


@router.post("/{quotation_id}/decline", response_model=QuotationRead)
def decline_quotation(
    quotation_id: uuid.UUID,
    payload: QuotationDeclineRequest | None = None,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor_context),
) -> QuotationRead:
    return quotations_service.decline(db, ctx, quotation_id, payload)


@router.get("/{quotation_id}/lock", response_model=QuotationLockRead)
def quotation_lock(
    quotation_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor_context),
) -> QuotationLockRead:
    return QuotationLockRead(quotation_id=quotation_id, is_locked=quotations_service.is_locked(db, ctx, quotation_id))
