from fastapi import APIRouter, Depends
from fastapi.responses import Response

from crm_api.accounts.api import auth_router, countries_router, regions_router, roles_router, users_router
from crm_api.core.auth import Principal
from crm_api.core.config import get_settings
from crm_api.core.errors import NotFoundError
from crm_api.core.rbac import require_permissions
from crm_api.crm.api import clients_router, opportunities_router, reports_router, rfps_router, sows_router
from crm_api.metrics import render_metrics

router = APIRouter()
router.include_router(auth_router)
router.include_router(users_router)
router.include_router(roles_router)
router.include_router(regions_router)
router.include_router(countries_router)
router.include_router(clients_router)
router.include_router(opportunities_router)
router.include_router(rfps_router)
router.include_router(sows_router)
router.include_router(reports_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics(_user: Principal = Depends(require_permissions("admin"))) -> Response:
    if not get_settings().metrics_enabled:
        raise NotFoundError("Not found", code="metrics_disabled")
    payload, content_type = render_metrics()
    return Response(content=payload, media_type=content_type)
