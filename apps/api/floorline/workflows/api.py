from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from floorline.api.errors import domain_error_response
from floorline.core.auth import AuthUser
from floorline.core.database import get_db
from floorline.core.rbac import require_any_permission, require_permissions
from floorline.errors import FloorlineError
from floorline.portal.schemas import CreateAccountRequest, CreateAccountResponse, CustomerUserRead
from floorline.portal.service import customer_account_service
from floorline.workflows.engine import workflow_engine
from floorline.workflows.schemas import (
    TRIGGER_CATALOG,
    ActionCatalogEntry,
    ActionResultRead,
    RunWorkflowResponse,
    TriggerRead,
    TriggerType,
    WorkflowCreate,
    WorkflowRead,
    WorkflowUpdate,
)
from floorline.workflows.service import workflow_service


workflows_router = APIRouter(prefix="/api/workflows", tags=["workflows"])
accounts_router = APIRouter(prefix="/api", tags=["workflows.accounts"])


@workflows_router.get("/triggers", response_model=list[TriggerRead])
def list_triggers(user: AuthUser = Depends(require_permissions("workflows.read"))) -> list[TriggerRead]:
    return TRIGGER_CATALOG


@workflows_router.get("/actions", response_model=list[ActionCatalogEntry])
def list_actions(user: AuthUser = Depends(require_permissions("workflows.read"))) -> list[ActionCatalogEntry]:
    return [ActionCatalogEntry.model_validate(entry) for entry in workflow_engine.registry.catalog()]


@workflows_router.get("", response_model=list[WorkflowRead])
def list_workflows(
    trigger_type: TriggerType | None = Query(default=None),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("workflows.read")),
) -> list[WorkflowRead]:
    workflows = workflow_service.list_workflows(db, trigger_type=trigger_type.value if trigger_type else None)
    return [WorkflowRead.model_validate(item) for item in workflows]


@workflows_router.post("", response_model=WorkflowRead, status_code=status.HTTP_201_CREATED)
def create_workflow(
    request: Request,
    dto: WorkflowCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("workflows.manage")),
) -> WorkflowRead | JSONResponse:
    try:
        return WorkflowRead.model_validate(workflow_service.create_workflow(db, dto, actor_user_id=user.sub))
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="workflow_create_failed")


@workflows_router.get("/{workflow_id}", response_model=WorkflowRead)
def get_workflow(
    request: Request,
    workflow_id: int,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("workflows.read")),
) -> WorkflowRead | JSONResponse:
    try:
        return WorkflowRead.model_validate(workflow_service.get_workflow(db, workflow_id))
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="workflow_get_failed")


@workflows_router.put("/{workflow_id}", response_model=WorkflowRead)
@workflows_router.patch("/{workflow_id}", response_model=WorkflowRead)
def update_workflow(
    request: Request,
    workflow_id: int,
    dto: WorkflowUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("workflows.manage")),
) -> WorkflowRead | JSONResponse:
    try:
        workflow = workflow_service.update_workflow(db, workflow_id, dto, actor_user_id=user.sub)
        return WorkflowRead.model_validate(workflow)
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="workflow_update_failed")


@workflows_router.delete("/{workflow_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_workflow(
    request: Request,
    workflow_id: int,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("workflows.manage")),
) -> dict[str, str] | JSONResponse:
    try:
        workflow_service.delete_workflow(db, workflow_id, actor_user_id=user.sub)
        return {"status": "deleted"}
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="workflow_delete_failed")


@workflows_router.post("/{workflow_id}/run", response_model=RunWorkflowResponse)
def run_workflow(
    request: Request,
    workflow_id: int,
    event_data: dict[str, Any] | None = Body(default=None),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_any_permission("workflows.execute", "workflows.manage")),
) -> RunWorkflowResponse | JSONResponse:
    try:
        results = workflow_engine.run_workflow(db, workflow_id, event_data or {})
    except FloorlineError as exc:
        db.rollback()
        return domain_error_response(request, exc, code="workflow_run_failed")
    if results is None:
        return RunWorkflowResponse(success=True, results=None)
    return RunWorkflowResponse(
        success=True,
        results=[
            ActionResultRead(action_type=result.action_type.value, success=result.success, output=result.output)
            for result in results
        ],
    )


@accounts_router.post(
    "/contacts/{contact_id}/create-account",
    response_model=CreateAccountResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_customer_account(
    request: Request,
    contact_id: int,
    dto: CreateAccountRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_any_permission("crm.manage", "workflows.manage")),
) -> CreateAccountResponse | JSONResponse:
    try:
        dto = dto or CreateAccountRequest()
        provisioned = customer_account_service.provision_customer_account(
            db,
            contact_id,
            email=dto.email,
            name=dto.name,
            phone=dto.phone,
            send_welcome_email=dto.send_welcome_email,
            actor_user_id=user.sub,
        )
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="customer_account_create_failed")
    return CreateAccountResponse(
        created=provisioned.created,
        welcome_email_sent=bool(provisioned.welcome_email and provisioned.welcome_email.success),
        customer_user=CustomerUserRead.model_validate(provisioned.user),
    )
