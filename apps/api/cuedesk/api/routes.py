from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from cuedesk.authz.api import admin_router, authz_router, join_requests_router, me_router
from cuedesk.core.config import get_settings
from cuedesk.core.rbac import require_permission
from cuedesk.metrics import generate_metrics_payload, metrics_content_type
from cuedesk.platform.security.context import AuthContext

router = APIRouter()
router.include_router(me_router)
router.include_router(authz_router)
router.include_router(join_requests_router)
router.include_router(admin_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics(_ctx: AuthContext = Depends(require_permission("admin", "view"))) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
