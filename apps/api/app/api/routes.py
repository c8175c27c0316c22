from fastapi import APIRouter, Depends
from fastapi.responses import Response

from app.core.config import get_settings
from app.core.rbac import require_roles
from app.identity.api import auth_router, users_router
from app.metrics import generate_metrics_payload, metrics_content_type
from app.platform.security.context import AuthContext
from app.platform.security.errors import NotFound
from app.platform.security.roles import UserRole

router = APIRouter()
router.include_router(auth_router)
router.include_router(users_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics(_: AuthContext = Depends(require_roles(UserRole.ADMIN))) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise NotFound()
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
