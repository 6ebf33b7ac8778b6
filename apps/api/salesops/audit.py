from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from salesops.context import get_correlation_id
from salesops.models.audit import AuditRecord


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(item) for item in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (Decimal, uuid.UUID)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def record(
    session: Session,
    *,
    actor_id: str,
    entity_type: str,
    entity_id: str | uuid.UUID,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    company_id: str | None = None,
    correlation_id: str | None = None,
) -> AuditRecord:
    """Append an audit record to the caller's transaction.

    The record is flushed but not committed; it becomes durable together with
    the state change it describes, or not at all.
    """

    entry = AuditRecord(
        company_id=company_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_id=actor_id,
        before=_jsonable(before) if before is not None else None,
        after=_jsonable(after) if after is not None else None,
        correlation_id=correlation_id or get_correlation_id(),
    )
    session.add(entry)
    session.flush()
    return entry


def list_records(
    session: Session,
    *,
    entity_type: str | None = None,
    entity_id: str | uuid.UUID | None = None,
    company_id: str | None = None,
    limit: int = 200,
) -> list[AuditRecord]:
    stmt = select(AuditRecord)
    if entity_type is not None:
        stmt = stmt.where(AuditRecord.entity_type == entity_type)
    if entity_id is not None:
        stmt = stmt.where(AuditRecord.entity_id == str(entity_id))
    if company_id is not None:
        stmt = stmt.where(AuditRecord.company_id == company_id)
    stmt = stmt.order_by(AuditRecord.id.asc()).limit(limit)
    return list(session.scalars(stmt).all())
