from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class ContactCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: str | None = Field(default=None, max_length=320)
    phone: str | None = Field(default=None, max_length=64)
    address: str | None = None
    lead_stage: str = Field(default="new", min_length=1, max_length=64)
    source: str | None = Field(default=None, max_length=64)
    notes: str | None = None


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str | None
    phone: str | None
    address: str | None
    lead_stage: str
    source: str | None
    is_customer: bool
    notes: str | None
    created_at: datetime
    updated_at: datetime


class LeadStageChange(BaseModel):
    lead_stage: str = Field(min_length=1, max_length=64)


class ContactSubmissionCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=320)
    phone: str | None = Field(default=None, max_length=64)
    service: str | None = Field(default=None, max_length=128)
    message: str = Field(min_length=1)


class ContactSubmissionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    contact_id: int | None
    name: str
    email: str
    phone: str | None
    service: str | None
    message: str
    created_at: datetime


class AppointmentCreate(BaseModel):
    contact_id: int
    title: str = Field(min_length=1, max_length=255)
    scheduled_at: datetime
    notes: str | None = None


class AppointmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    contact_id: int
    title: str
    scheduled_at: datetime
    status: str
    notes: str | None
    created_at: datetime


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    contact_id: int | None
    title: str
    description: str | None
    due_at: datetime | None
    status: str
    assigned_to: str | None
    created_at: datetime
