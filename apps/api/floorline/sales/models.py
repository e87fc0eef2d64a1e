from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from floorline.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Estimate(Base):
    __tablename__ = "sales_estimate"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    estimate_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    contact_id: Mapped[int] = mapped_column(ForeignKey("crm_contact.id", ondelete="RESTRICT"), nullable=False)
    customer_user_id: Mapped[int | None] = mapped_column(ForeignKey("portal_customer_user.id", ondelete="SET NULL"), nullable=True)
    project_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft", server_default="draft")
    line_items: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"), server_default="0")
    tax: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"), server_default="0")
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"), server_default="0")
    terms: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    customer_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    valid_until: Mapped[date | None] = mapped_column(Date(), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    viewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    converted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Contract(Base):
    __tablename__ = "sales_contract"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contract_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    # Unique: an estimate converts into at most one contract.
    estimate_id: Mapped[int | None] = mapped_column(ForeignKey("sales_estimate.id", ondelete="SET NULL"), nullable=True, unique=True)
    contact_id: Mapped[int] = mapped_column(ForeignKey("crm_contact.id", ondelete="RESTRICT"), nullable=False)
    customer_user_id: Mapped[int | None] = mapped_column(ForeignKey("portal_customer_user.id", ondelete="SET NULL"), nullable=True)
    project_id: Mapped[int | None] = mapped_column(ForeignKey("portal_customer_project.id", ondelete="SET NULL"), nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft", server_default="draft")
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    payment_schedule: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    start_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    completion_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    customer_signature: Mapped[str | None] = mapped_column(Text, nullable=True)
    customer_signed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    viewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Invoice(Base):
    __tablename__ = "sales_invoice"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    invoice_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    contract_id: Mapped[int | None] = mapped_column(ForeignKey("sales_contract.id", ondelete="SET NULL"), nullable=True)
    schedule_item_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    contact_id: Mapped[int] = mapped_column(ForeignKey("crm_contact.id", ondelete="RESTRICT"), nullable=False)
    customer_user_id: Mapped[int | None] = mapped_column(ForeignKey("portal_customer_user.id", ondelete="SET NULL"), nullable=True)
    project_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft", server_default="draft")
    line_items: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"), server_default="0")
    tax: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"), server_default="0")
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"), server_default="0")
    amount_due: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    viewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    payments: Mapped[list[Payment]] = relationship(
        "floorline.sales.models.Payment",
        back_populates="invoice",
        order_by="floorline.sales.models.Payment.id",
    )


class Payment(Base):
    __tablename__ = "sales_payment"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("sales_invoice.id", ondelete="RESTRICT"), nullable=False)
    customer_user_id: Mapped[int | None] = mapped_column(ForeignKey("portal_customer_user.id", ondelete="SET NULL"), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(64), nullable=False)
    transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="completed", server_default="completed")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    receipt_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    paid_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    invoice: Mapped[Invoice] = relationship("floorline.sales.models.Invoice", back_populates="payments")


Index("ix_sales_estimate_contact_id", Estimate.contact_id)
Index("ix_sales_estimate_customer_user_id", Estimate.customer_user_id)
Index("ix_sales_contract_customer_user_id", Contract.customer_user_id)
Index("ix_sales_invoice_contract_id", Invoice.contract_id)
Index("ix_sales_payment_invoice_id", Payment.invoice_id)
