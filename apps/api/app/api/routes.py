from fastapi import APIRouter, Depends
from fastapi.responses import Response

from app.approvals.api import requests_router as approval_requests_router
from app.approvals.api import workflows_router as approval_workflows_router
from app.auth.api import router as auth_router
from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.errors import NotFoundError, PermissionDeniedError
from app.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(auth_router)
router.include_router(approval_workflows_router)
router.include_router(approval_requests_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str]:
    return {
        "sub": user.sub,
        "email": user.email,
        "role": user.role,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise NotFoundError("not found")
    if user.role != "admin":
        raise PermissionDeniedError("Requires one of roles: admin")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
