from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from salesops import audit
from salesops.core.auth import get_actor_context
from salesops.core.database import get_db
from salesops.platform.security.context import ActorContext


router = APIRouter(prefix="/audit", tags=["audit"])


class AuditRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    company_id: str | None
    entity_type: str
    entity_id: str
    action: str
    actor_id: str
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    correlation_id: str | None
    occurred_at: datetime


@router.get("", response_model=list[AuditRead])
def list_audit_records(
    entity_type: str | None = Query(default=None),
    entity_id: str | None = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor_context),
) -> list[AuditRead]:
    rows = audit.list_records(
        db,
        entity_type=entity_type,
        entity_id=entity_id,
        company_id=ctx.company_id,
        limit=limit,
    )
    return [AuditRead.model_validate(row) for row in rows]
