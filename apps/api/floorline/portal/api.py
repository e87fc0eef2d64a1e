from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from floorline.api.errors import domain_error_response, error_response
from floorline.core.auth import AuthUser, create_access_token, get_current_customer
from floorline.core.database import get_db
from floorline.core.rbac import require_permissions
from floorline.errors import EntityNotFoundError, FloorlineError
from floorline.portal.schemas import (
    CustomerLoginRequest,
    CustomerLoginResponse,
    CustomerUserRead,
    PasswordResetResponse,
    ProgressUpdateCreate,
    ProjectCreate,
    ProjectDocumentCreate,
    ProjectRead,
    ProjectStatusUpdate,
)
from floorline.portal.service import customer_account_service, project_service


projects_router = APIRouter(prefix="/api", tags=["portal.projects"])
customer_users_router = APIRouter(prefix="/api", tags=["portal.customer_users"])
customer_router = APIRouter(prefix="/api/customer", tags=["portal.customer"])


@projects_router.post("/projects", response_model=ProjectRead, status_code=status.HTTP_201_CREATED)
def create_project(
    request: Request,
    dto: ProjectCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("portal.manage")),
) -> ProjectRead | JSONResponse:
    try:
        project = project_service.create_project(db, **dto.model_dump(), actor_user_id=user.sub)
        return ProjectRead.model_validate(project)
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="portal_project_create_failed")


@projects_router.get("/projects/{project_id}", response_model=ProjectRead)
def get_project(
    request: Request,
    project_id: int,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("portal.manage")),
) -> ProjectRead | JSONResponse:
    try:
        return ProjectRead.model_validate(project_service.get_project(db, project_id))
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="portal_project_get_failed")


@projects_router.patch("/projects/{project_id}/status", response_model=ProjectRead)
def update_project_status(
    request: Request,
    project_id: int,
    dto: ProjectStatusUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("portal.manage")),
) -> ProjectRead | JSONResponse:
    try:
        project = project_service.update_status(db, project_id, dto.status, actor_user_id=user.sub)
        return ProjectRead.model_validate(project)
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="portal_project_status_failed")


@projects_router.post("/projects/{project_id}/progress", response_model=ProjectRead)
def add_progress_update(
    request: Request,
    project_id: int,
    dto: ProgressUpdateCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("portal.manage")),
) -> ProjectRead | JSONResponse:
    try:
        project = project_service.add_progress_update(
            db,
            project_id,
            status=dto.status,
            note=dto.note,
            occurred_at=dto.date,
            images=dto.images,
            notify_customer=dto.notify_customer,
            actor_user_id=user.sub,
        )
        return ProjectRead.model_validate(project)
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="portal_project_progress_failed")


@projects_router.post("/projects/{project_id}/documents", response_model=ProjectRead)
def add_project_document(
    request: Request,
    project_id: int,
    dto: ProjectDocumentCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("portal.manage")),
) -> ProjectRead | JSONResponse:
    try:
        project = project_service.add_document(
            db,
            project_id,
            name=dto.name,
            url=dto.url,
            document_type=dto.type,
            notify_customer=dto.notify_customer,
            actor_user_id=user.sub,
        )
        return ProjectRead.model_validate(project)
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="portal_project_document_failed")


@customer_users_router.post("/customer-users/{customer_user_id}/reset-password", response_model=PasswordResetResponse)
def reset_customer_password(
    request: Request,
    customer_user_id: int,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("portal.manage")),
) -> PasswordResetResponse | JSONResponse:
    try:
        result = customer_account_service.reset_password(db, customer_user_id, actor_user_id=user.sub)
        return PasswordResetResponse(customer_user_id=customer_user_id, credentials_sent=result.success)
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="portal_password_reset_failed")


@customer_router.post("/login", response_model=CustomerLoginResponse)
def customer_login(
    request: Request,
    dto: CustomerLoginRequest,
    db: Session = Depends(get_db),
) -> CustomerLoginResponse | JSONResponse:
    customer = customer_account_service.authenticate(db, dto.email, dto.password)
    if customer is None:
        return error_response(
            request,
            status_code=status.HTTP_401_UNAUTHORIZED,
            code="portal_login_failed",
            message="Invalid email or password",
        )
    return CustomerLoginResponse(
        access_token=create_access_token(str(customer.id), ["customer"]),
        customer_user=CustomerUserRead.model_validate(customer),
    )


@customer_router.get("/projects", response_model=list[ProjectRead])
def list_my_projects(
    db: Session = Depends(get_db),
    customer: AuthUser = Depends(get_current_customer),
) -> list[ProjectRead]:
    projects = project_service.list_projects_for_customer(db, int(customer.sub))
    return [ProjectRead.model_validate(project) for project in projects]


@customer_router.get("/projects/{project_id}", response_model=ProjectRead)
def get_my_project(
    request: Request,
    project_id: int,
    db: Session = Depends(get_db),
    customer: AuthUser = Depends(get_current_customer),
) -> ProjectRead | JSONResponse:
    try:
        project = project_service.get_project(db, project_id)
        if project.customer_id != int(customer.sub):
            raise EntityNotFoundError("project", project_id)
        return ProjectRead.model_validate(project)
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="portal_project_get_failed")
