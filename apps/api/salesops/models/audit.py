from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String, event
from sqlalchemy.orm import Mapped, mapped_column

from salesops.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditImmutabilityError(Exception):
    """Raised when a persisted audit record is about to be changed or removed."""


class AuditRecord(Base):
    __tablename__ = "audit_record"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    before: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    after: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_audit_record_entity", "entity_type", "entity_id"),
        Index("ix_audit_record_company_date", "company_id", "occurred_at"),
    )


@event.listens_for(AuditRecord, "before_update")
def _prevent_audit_update(mapper, connection, target):  # type: ignore[no-untyped-def]
    raise AuditImmutabilityError(f"audit record {target.id} is append-only")


@event.listens_for(AuditRecord, "before_delete")
def _prevent_audit_delete(mapper, connection, target):  # type: ignore[no-untyped-def]
    raise AuditImmutabilityError(f"audit record {target.id} is append-only")
