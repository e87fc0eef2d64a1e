from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CustomerUserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    username: str
    name: str
    phone: str | None
    contact_id: int | None
    is_active: bool
    last_login_at: datetime | None
    created_at: datetime


class CreateAccountRequest(BaseModel):
    email: str | None = None
    name: str | None = None
    phone: str | None = None
    send_welcome_email: bool = True


class CreateAccountResponse(BaseModel):
    created: bool
    welcome_email_sent: bool
    customer_user: CustomerUserRead


class PasswordResetResponse(BaseModel):
    customer_user_id: int
    credentials_sent: bool


class CustomerLoginRequest(BaseModel):
    email: str = Field(min_length=1)
    password: str = Field(min_length=1)


class CustomerLoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    customer_user: CustomerUserRead


class ProjectCreate(BaseModel):
    customer_id: int
    contact_id: int | None = None
    title: str = Field(min_length=1)
    description: str | None = None
    status: str = Field(default="pending", min_length=1)
    flooring_type: str | None = None
    square_footage: int | None = Field(default=None, ge=0)
    estimated_cost: Decimal | None = Field(default=None, ge=Decimal("0"))
    start_date: date | None = None
    estimated_completion_date: date | None = None
    notify_customer: bool = True


class ProjectStatusUpdate(BaseModel):
    status: str = Field(min_length=1)


class ProgressUpdateCreate(BaseModel):
    status: str = Field(min_length=1)
    note: str = Field(min_length=1)
    date: datetime | None = None
    images: list[str] = Field(default_factory=list)
    notify_customer: bool = True


class ProjectDocumentCreate(BaseModel):
    name: str = Field(min_length=1)
    url: str = Field(min_length=1)
    type: str = Field(min_length=1)
    notify_customer: bool = True


class ProjectRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    customer_id: int
    contact_id: int | None
    title: str
    description: str | None
    status: str
    flooring_type: str | None
    square_footage: int | None
    estimated_cost: Decimal | None
    start_date: date | None
    estimated_completion_date: date | None
    progress_updates: list[dict[str, Any]]
    documents: list[dict[str, Any]]
    created_at: datetime
    updated_at: datetime
