from dataclasses import dataclass

from fastapi import Depends, Header
from jose import JWTError, jwt
from starlette.requests import Request

from salesops.context import get_correlation_id
from salesops.core.config import get_settings
from salesops.core.rbac import resolve_capabilities
from salesops.platform.security.context import ActorContext


@dataclass
class AuthUser:
    sub: str
    roles: list[str]


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub="anonymous", roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub="anonymous", roles=["guest"])

    subject = str(payload.get("sub", "anonymous"))
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    return AuthUser(sub=subject, roles=[str(role) for role in roles])


def _parse_str_list(raw: str | None) -> list[str]:
    if raw is None:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def get_actor_context(
    request: Request,
    auth_user: AuthUser = Depends(get_current_user),
    company_id_header: str | None = Header(default=None, alias="x-company-id"),
    overrides_header: str | None = Header(default=None, alias="x-permission-overrides"),
) -> ActorContext:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    roles = [str(item) for item in auth_user.roles]
    capabilities = resolve_capabilities(roles, _parse_str_list(overrides_header))

    return ActorContext(
        user_id=auth_user.sub,
        company_id=company_id_header,
        correlation_id=correlation_id,
        roles=roles,
        can_verify_payments=capabilities.can_verify_payments,
        can_override_lock=capabilities.can_override_lock,
        can_edit_quotation=capabilities.can_edit_quotation,
    )
