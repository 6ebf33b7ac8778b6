from __future__ import annotations

from dataclasses import dataclass, field


SYSTEM_ACTOR_ID = "system"


@dataclass(slots=True)
class ActorContext:
    """Caller identity and capability flags threaded into every core operation."""

    user_id: str
    company_id: str | None = None
    correlation_id: str | None = None
    roles: list[str] = field(default_factory=list)
    can_verify_payments: bool = False
    can_override_lock: bool = False
    can_edit_quotation: bool = False

    @classmethod
    def system(cls, company_id: str | None = None, correlation_id: str | None = None) -> ActorContext:
        return cls(
            user_id=SYSTEM_ACTOR_ID,
            company_id=company_id,
            correlation_id=correlation_id,
            roles=["system"],
            can_verify_payments=True,
        )
