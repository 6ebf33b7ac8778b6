from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from salesops.api.audit import router as audit_router
from salesops.business.payments.api import router as payments_router
from salesops.business.quotations.api import router as quotations_router
from salesops.core.auth import AuthUser, get_current_user
from salesops.core.config import get_settings
from salesops.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(quotations_router)
router.include_router(payments_router)
router.include_router(audit_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str]]:
    return {
        "sub": user.sub,
        "roles": user.roles,
    }


@router.get("/metrics", tags=["system"])
def metrics() -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
