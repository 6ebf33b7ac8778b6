from __future__ import annotations

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from salesops.core.database import Base


class NumberSequence(Base):
    """Last document number handed out per company and document kind."""

    __tablename__ = "number_sequence"

    company_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    scope: Mapped[str] = mapped_column(String(32), primary_key=True)
    last_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
