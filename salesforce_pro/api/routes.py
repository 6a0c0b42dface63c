from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from salesforce_pro.auth.api import auth_router, users_router
from salesforce_pro.core.auth import ROLE_DIRETOR, AuthUser
from salesforce_pro.core.config import get_settings
from salesforce_pro.core.rbac import require_roles
from salesforce_pro.crm.api import routers as crm_routers
from salesforce_pro.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(auth_router)
router.include_router(users_router)
for crm_router in crm_routers:
    router.include_router(crm_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(require_roles(ROLE_DIRETOR))) -> Response:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
