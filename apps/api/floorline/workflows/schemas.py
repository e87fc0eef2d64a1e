from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from floorline.workflows.actions import ActionKind


class TriggerType(str, Enum):
    LEAD_STAGE_CHANGE = "lead_stage_change"
    ESTIMATE_APPROVAL = "estimate_approval"
    CONTRACT_SIGNED = "contract_signed"
    FORM_SUBMISSION = "form_submission"
    APPOINTMENT = "appointment"
    SCHEDULE = "schedule"
    MANUAL = "manual"


class TriggerRead(BaseModel):
    name: str
    description: str
    type: TriggerType


TRIGGER_CATALOG: list[TriggerRead] = [
    TriggerRead(
        name="lead_stage_change",
        description="Triggered when a lead changes stage",
        type=TriggerType.LEAD_STAGE_CHANGE,
    ),
    TriggerRead(
        name="estimate_approval",
        description="Triggered when a customer approves an estimate",
        type=TriggerType.ESTIMATE_APPROVAL,
    ),
    TriggerRead(
        name="contract_signed",
        description="Triggered when a customer signs a contract",
        type=TriggerType.CONTRACT_SIGNED,
    ),
    TriggerRead(
        name="form_submission",
        description="Triggered when a contact form is submitted",
        type=TriggerType.FORM_SUBMISSION,
    ),
    TriggerRead(
        name="appointment_scheduled",
        description="Triggered when an appointment is scheduled",
        type=TriggerType.APPOINTMENT,
    ),
    TriggerRead(
        name="appointment_reminder",
        description="Triggered before an appointment (reminder)",
        type=TriggerType.SCHEDULE,
    ),
    TriggerRead(
        name="manual_trigger",
        description="Manually triggered workflow",
        type=TriggerType.MANUAL,
    ),
]


class WorkflowActionDefinition(BaseModel):
    type: ActionKind
    data: dict[str, Any] = Field(default_factory=dict)


class WorkflowCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    trigger_type: TriggerType
    trigger_condition: str | None = Field(default=None, max_length=255)
    actions: list[WorkflowActionDefinition] = Field(min_length=1)
    is_active: bool = True
    delay_hours: int = Field(default=0, ge=0)


class WorkflowUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    trigger_type: TriggerType | None = None
    trigger_condition: str | None = Field(default=None, max_length=255)
    actions: list[WorkflowActionDefinition] | None = Field(default=None, min_length=1)
    is_active: bool | None = None
    delay_hours: int | None = Field(default=None, ge=0)


class WorkflowRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str | None
    trigger_type: str
    trigger_condition: str | None
    actions: list[dict[str, Any]]
    is_active: bool
    delay_hours: int
    created_at: datetime
    updated_at: datetime


class ActionFieldRead(BaseModel):
    name: str
    required: bool
    type: str


class ActionCatalogEntry(BaseModel):
    name: str
    description: str
    fields: list[ActionFieldRead]


class ActionResultRead(BaseModel):
    action_type: str
    success: bool
    output: dict[str, Any]


class RunWorkflowResponse(BaseModel):
    success: bool
    results: list[ActionResultRead] | None
