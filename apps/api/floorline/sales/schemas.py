from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class LineItem(BaseModel):
    description: str = Field(min_length=1)
    quantity: Decimal = Field(default=Decimal("1"), gt=Decimal("0"))
    unit: str = "each"
    unit_price: Decimal = Field(ge=Decimal("0"))
    total_price: Decimal | None = None
    category: str | None = None


class EstimateCreate(BaseModel):
    contact_id: int
    customer_user_id: int | None = None
    project_id: int | None = None
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    line_items: list[LineItem] = Field(min_length=1)
    tax: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    terms: str | None = None
    notes: str | None = None
    valid_until: date | None = None


class EstimateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    estimate_number: str
    contact_id: int
    customer_user_id: int | None
    project_id: int | None
    title: str
    description: str | None
    status: str
    line_items: list[dict[str, Any]]
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    terms: str | None
    notes: str | None
    customer_notes: str | None
    valid_until: date | None
    sent_at: datetime | None
    viewed_at: datetime | None
    approved_at: datetime | None
    rejected_at: datetime | None
    converted_at: datetime | None
    created_at: datetime


class CustomerDecision(BaseModel):
    customer_notes: str | None = None


class ConvertEstimateRequest(BaseModel):
    send_to_customer: bool = False


class ContractRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    contract_number: str
    estimate_id: int | None
    contact_id: int
    customer_user_id: int | None
    project_id: int | None
    title: str
    description: str | None
    content: str
    status: str
    amount: Decimal
    payment_schedule: list[dict[str, Any]]
    start_date: date | None
    completion_date: date | None
    customer_signature: str | None
    customer_signed_at: datetime | None
    sent_at: datetime | None
    viewed_at: datetime | None
    created_at: datetime


class ContractSignRequest(BaseModel):
    signature: str | None = None


class InvoiceFromContractCreate(BaseModel):
    contract_id: int
    payment_schedule_item_id: str = Field(min_length=1)
    due_date: date | None = None
    notes: str | None = None


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_number: str
    contract_id: int | None
    schedule_item_id: str | None
    contact_id: int
    customer_user_id: int | None
    project_id: int | None
    title: str
    description: str | None
    status: str
    line_items: list[dict[str, Any]]
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    amount_paid: Decimal
    amount_due: Decimal
    due_date: date | None
    notes: str | None
    sent_at: datetime | None
    viewed_at: datetime | None
    paid_at: datetime | None
    created_at: datetime


class PaymentCreate(BaseModel):
    amount: Decimal | None = None
    payment_method: str | None = None
    transaction_id: str | None = None
    notes: str | None = None


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_id: int
    customer_user_id: int | None
    amount: Decimal
    payment_method: str
    transaction_id: str | None
    status: str
    notes: str | None
    receipt_sent: bool
    paid_at: datetime


class PaymentRecorded(BaseModel):
    payment: PaymentRead
    invoice: InvoiceRead
