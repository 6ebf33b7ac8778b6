from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from salesops.platform.errors import PermissionDenied
from salesops.platform.security.context import ActorContext


CAN_VERIFY_PAYMENTS = "payments.verify"
CAN_OVERRIDE_LOCK = "payments.override_lock"
CAN_EDIT_QUOTATION = "quotations.edit"

ROLE_CAPABILITIES: dict[str, set[str]] = {
    "admin": {CAN_VERIFY_PAYMENTS, CAN_OVERRIDE_LOCK, CAN_EDIT_QUOTATION},
    "system.admin": {CAN_VERIFY_PAYMENTS, CAN_OVERRIDE_LOCK, CAN_EDIT_QUOTATION},
    "finance": {CAN_VERIFY_PAYMENTS},
    "finance officer": {CAN_VERIFY_PAYMENTS},
    "sales": {CAN_EDIT_QUOTATION},
    "sales manager": {CAN_EDIT_QUOTATION},
}


@dataclass(frozen=True, slots=True)
class Capabilities:
    can_verify_payments: bool = False
    can_override_lock: bool = False
    can_edit_quotation: bool = False


def resolve_capabilities(roles: Iterable[str], overrides: Iterable[str] = ()) -> Capabilities:
    granted: set[str] = set()
    for role in roles:
        granted |= ROLE_CAPABILITIES.get(role.strip().lower(), set())
    granted |= {item.strip() for item in overrides if item.strip()}
    return Capabilities(
        can_verify_payments=CAN_VERIFY_PAYMENTS in granted,
        can_override_lock=CAN_OVERRIDE_LOCK in granted,
        can_edit_quotation=CAN_EDIT_QUOTATION in granted,
    )


def require_capability(ctx: ActorContext, capability: str) -> None:
    allowed = {
        CAN_VERIFY_PAYMENTS: ctx.can_verify_payments,
        CAN_OVERRIDE_LOCK: ctx.can_override_lock,
        CAN_EDIT_QUOTATION: ctx.can_edit_quotation,
    }.get(capability, False)
    if not allowed:
        raise PermissionDenied(f"Missing capability: {capability}", actor_id=ctx.user_id)
