from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from floorline.core.auth import AuthUser, get_current_user
from floorline.core.config import get_settings
from floorline.crm.api import appointments_router, contacts_router, submissions_router
from floorline.metrics import generate_metrics_payload, metrics_content_type
from floorline.portal.api import customer_router, customer_users_router, projects_router
from floorline.sales.api import (
    contracts_router,
    customer_sales_router,
    estimates_router,
    invoices_router,
    payments_router,
)
from floorline.workflows.api import accounts_router, workflows_router

router = APIRouter()
router.include_router(workflows_router)
router.include_router(accounts_router)
router.include_router(contacts_router)
router.include_router(appointments_router)
router.include_router(submissions_router)
router.include_router(estimates_router)
router.include_router(contracts_router)
router.include_router(invoices_router)
router.include_router(payments_router)
router.include_router(projects_router)
router.include_router(customer_users_router)
router.include_router(customer_router)
router.include_router(customer_sales_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
