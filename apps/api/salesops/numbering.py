"""Document numbers (``QT-<company>-00001``, ``PAY-<company>-00001``).

Numbers come from a locked counter row per company and scope, so deleting a
quotation or its payments never hands an issued number out again.
"""

from __future__ import annotations

from collections.abc import Callable

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import InstrumentedAttribute, Session

from salesops.metrics import observe_concurrent_modification
from salesops.models.sequence import NumberSequence
from salesops.platform.errors import ConcurrentModification


def highest_issued(session: Session, column: InstrumentedAttribute[str], *criteria) -> int:  # type: ignore[no-untyped-def]
    """Largest numeric suffix among stored numbers; seeds a new counter row."""

    value = session.scalar(
        select(column).where(*criteria).order_by(func.length(column).desc(), column.desc()).limit(1)
    )
    if value is None:
        return 0
    suffix = value.rsplit("-", 1)[-1]
    return int(suffix) if suffix.isdigit() else 0


def next_value(session: Session, company_id: str, scope: str, *, seed: Callable[[], int] = lambda: 0) -> int:
    counter = session.scalar(
        select(NumberSequence)
        .where(NumberSequence.company_id == company_id, NumberSequence.scope == scope)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if counter is None:
        counter = NumberSequence(company_id=company_id, scope=scope, last_value=seed())
        session.add(counter)
    counter.last_value += 1
    try:
        session.flush()
    except IntegrityError as exc:
        # Another transaction created the counter row first.
        session.rollback()
        observe_concurrent_modification(scope)
        raise ConcurrentModification(f"{scope} number allocation raced, retry", company_id=company_id) from exc
    return counter.last_value


def format_number(prefix: str, company_id: str, value: int) -> str:
    return f"{prefix}-{company_id}-{value:05d}"
