from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from floorline.api.errors import domain_error_response
from floorline.core.auth import AuthUser
from floorline.core.database import get_db
from floorline.core.rbac import require_permissions
from floorline.crm.schemas import (
    AppointmentCreate,
    AppointmentRead,
    ContactCreate,
    ContactRead,
    ContactSubmissionCreate,
    ContactSubmissionRead,
    LeadStageChange,
    TaskRead,
)
from floorline.crm.service import contact_service, task_service
from floorline.errors import FloorlineError


contacts_router = APIRouter(prefix="/api", tags=["crm.contacts"])
appointments_router = APIRouter(prefix="/api", tags=["crm.appointments"])
submissions_router = APIRouter(prefix="/api", tags=["crm.submissions"])


@contacts_router.get("/contacts", response_model=list[ContactRead])
def list_contacts(
    lead_stage: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("crm.manage")),
) -> list[ContactRead]:
    return [ContactRead.model_validate(item) for item in contact_service.list_contacts(db, lead_stage=lead_stage)]


@contacts_router.post("/contacts", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    request: Request,
    dto: ContactCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("crm.manage")),
) -> ContactRead | JSONResponse:
    try:
        return ContactRead.model_validate(contact_service.create_contact(db, dto, actor_user_id=user.sub))
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="crm_contact_create_failed")


@contacts_router.get("/contacts/{contact_id}", response_model=ContactRead)
def get_contact(
    request: Request,
    contact_id: int,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("crm.manage")),
) -> ContactRead | JSONResponse:
    try:
        return ContactRead.model_validate(contact_service.get_contact(db, contact_id))
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="crm_contact_get_failed")


@contacts_router.post("/contacts/{contact_id}/lead-stage", response_model=ContactRead)
def change_lead_stage(
    request: Request,
    contact_id: int,
    dto: LeadStageChange,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("crm.manage")),
) -> ContactRead | JSONResponse:
    try:
        contact = contact_service.change_lead_stage(db, contact_id, dto.lead_stage, actor_user_id=user.sub)
        return ContactRead.model_validate(contact)
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="crm_lead_stage_change_failed")


@contacts_router.get("/contacts/{contact_id}/tasks", response_model=list[TaskRead])
def list_contact_tasks(
    request: Request,
    contact_id: int,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("crm.manage")),
) -> list[TaskRead] | JSONResponse:
    try:
        contact_service.get_contact(db, contact_id)
        return [TaskRead.model_validate(task) for task in task_service.list_tasks(db, contact_id=contact_id)]
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="crm_task_list_failed")


@appointments_router.post("/appointments", response_model=AppointmentRead, status_code=status.HTTP_201_CREATED)
def schedule_appointment(
    request: Request,
    dto: AppointmentCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions("crm.manage")),
) -> AppointmentRead | JSONResponse:
    try:
        appointment = contact_service.schedule_appointment(db, dto, actor_user_id=user.sub)
        return AppointmentRead.model_validate(appointment)
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="crm_appointment_create_failed")


@submissions_router.post(
    "/contact-submissions",
    response_model=ContactSubmissionRead,
    status_code=status.HTTP_201_CREATED,
)
def submit_contact_form(
    request: Request,
    dto: ContactSubmissionCreate,
    db: Session = Depends(get_db),
) -> ContactSubmissionRead | JSONResponse:
    try:
        return ContactSubmissionRead.model_validate(contact_service.submit_form(db, dto))
    except FloorlineError as exc:
        return domain_error_response(request, exc, code="crm_contact_submission_failed")
