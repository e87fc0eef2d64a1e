from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from floorline import audit, events
from floorline.core.config import get_settings
from floorline.crm.models import Contact
from floorline.errors import ActionInputError, EntityNotFoundError, InvalidTransitionError, PersistenceError
from floorline.notifications.service import NotificationService, notification_service
from floorline.notifications.sinks import NotificationResult
from floorline.portal.models import CustomerProject, CustomerUser
from floorline.portal.service import (
    CustomerAccountService,
    ProjectService,
    customer_account_service,
    project_service,
)
from floorline.sales.models import Contract, Estimate, Invoice, Payment
from floorline.sales.numbering import CONTRACT_PREFIX, ESTIMATE_PREFIX, INVOICE_PREFIX, next_document_number
from floorline.sales.schemas import EstimateCreate


logger = logging.getLogger("floorline.sales")

CENT = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _q(value: Decimal | str | int | float) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _payment_amount(amount: Decimal | str | None) -> Decimal:
    """Cent-rounded payment amount; anything that rounds to zero or below is rejected."""
    try:
        value = Decimal(str(amount)) if amount is not None else None
    except InvalidOperation:
        value = None
    if value is None or not value.is_finite() or _q(value) <= 0:
        raise ActionInputError("Payment amount must be greater than zero", details={"amount": str(amount)})
    return _q(value)


def _commit(session: Session, what: str) -> None:
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise PersistenceError(f"failed to save {what}") from exc


def _require_status(entity_type: str, entity_id: int, current: str, allowed: set[str], transition: str) -> None:
    if current not in allowed:
        raise InvalidTransitionError(
            f"Cannot {transition} {entity_type} in status '{current}'",
            details={
                "entity_type": entity_type,
                "entity_id": entity_id,
                "status": current,
                "allowed": sorted(allowed),
            },
        )


def _recipient(session: Session, customer_user_id: int | None, contact_id: int | None) -> tuple[str, str] | None:
    """Email and display name for a document's customer, preferring the portal account."""
    if customer_user_id is not None:
        user = session.scalar(select(CustomerUser).where(CustomerUser.id == customer_user_id))
        if user is not None:
            return user.email, user.name
    if contact_id is not None:
        contact = session.scalar(select(Contact).where(Contact.id == contact_id))
        if contact is not None and contact.email:
            return contact.email, contact.name
    return None


@dataclass(slots=True)
class EstimateService:
    accounts: CustomerAccountService = customer_account_service
    notifications: NotificationService = notification_service

    def create_estimate(self, session: Session, dto: EstimateCreate, *, actor_user_id: str) -> Estimate:
        contact = session.scalar(select(Contact).where(Contact.id == dto.contact_id))
        if contact is None:
            raise EntityNotFoundError("contact", dto.contact_id)
        # Numbered first: a failed lookup rolls the session back.
        estimate_number = next_document_number(session, Estimate.estimate_number, ESTIMATE_PREFIX)

        customer_user_id = dto.customer_user_id
        if customer_user_id is None and contact.email:
            provisioned = self.accounts.provision_customer_account(session, contact.id, actor_user_id=actor_user_id)
            customer_user_id = provisioned.user.id
        if not contact.is_customer and customer_user_id is not None:
            contact.is_customer = True
            session.add(contact)

        line_items: list[dict[str, Any]] = []
        subtotal = Decimal("0")
        for item in dto.line_items:
            total_price = _q(item.total_price if item.total_price is not None else item.quantity * item.unit_price)
            subtotal += total_price
            line_items.append(
                {
                    "description": item.description,
                    "quantity": str(item.quantity),
                    "unit": item.unit,
                    "unit_price": str(_q(item.unit_price)),
                    "total_price": str(total_price),
                    "category": item.category,
                }
            )
        subtotal = _q(subtotal)
        tax = _q(dto.tax)

        estimate = Estimate(
            estimate_number=estimate_number,
            contact_id=contact.id,
            customer_user_id=customer_user_id,
            project_id=dto.project_id,
            title=dto.title,
            description=dto.description,
            status="draft",
            line_items=line_items,
            subtotal=subtotal,
            tax=tax,
            total=_q(subtotal + tax),
            terms=dto.terms,
            notes=dto.notes,
            valid_until=dto.valid_until,
        )
        session.add(estimate)
        _commit(session, "estimate")
        session.refresh(estimate)

        audit.record(
            actor_user_id=actor_user_id,
            entity_type="sales.estimate",
            entity_id=str(estimate.id),
            action="estimate.created",
            before=None,
            after={"estimate_number": estimate.estimate_number, "total": str(estimate.total), "status": "draft"},
        )
        events.publish(
            {
                "event_type": "sales.estimate.created",
                "estimate_id": estimate.id,
                "contact_id": estimate.contact_id,
                "total": str(estimate.total),
            }
        )
        return estimate

    def get_estimate(self, session: Session, estimate_id: int) -> Estimate:
        estimate = session.scalar(select(Estimate).where(Estimate.id == estimate_id))
        if estimate is None:
            raise EntityNotFoundError("estimate", estimate_id)
        return estimate

    def list_estimates(
        self,
        session: Session,
        *,
        contact_id: int | None = None,
        customer_user_id: int | None = None,
    ) -> list[Estimate]:
        stmt = select(Estimate)
        if contact_id is not None:
            stmt = stmt.where(Estimate.contact_id == contact_id)
        if customer_user_id is not None:
            stmt = stmt.where(Estimate.customer_user_id == customer_user_id)
        return list(session.scalars(stmt.order_by(Estimate.id.desc())).all())

    def send_estimate(self, session: Session, estimate_id: int, *, actor_user_id: str) -> Estimate:
        estimate = self.get_estimate(session, estimate_id)
        _require_status("estimate", estimate.id, estimate.status, {"draft", "sent"}, "send")
        before = estimate.status
        estimate.status = "sent"
        estimate.sent_at = utcnow()
        session.add(estimate)
        _commit(session, "estimate")
        session.refresh(estimate)

        audit.record(
            actor_user_id=actor_user_id,
            entity_type="sales.estimate",
            entity_id=str(estimate.id),
            action="estimate.sent",
            before={"status": before},
            after={"status": "sent"},
        )
        events.publish({"event_type": "sales.estimate.sent", "estimate_id": estimate.id})

        recipient = _recipient(session, estimate.customer_user_id, estimate.contact_id)
        if recipient is not None:
            self.notifications.send_document_ready(
                recipient[0],
                name=recipient[1],
                document_kind="estimate",
                document_number=estimate.estimate_number,
                title=estimate.title,
                amount=estimate.total,
                view_path=f"/customer/estimates/{estimate.id}",
            )
        return estimate

    def mark_viewed(self, session: Session, estimate_id: int) -> Estimate:
        estimate = self.get_estimate(session, estimate_id)
        if estimate.status != "sent":
            return estimate
        estimate.status = "viewed"
        estimate.viewed_at = utcnow()
        session.add(estimate)
        _commit(session, "estimate")
        session.refresh(estimate)
        return estimate

    def approve_estimate(
        self,
        session: Session,
        estimate_id: int,
        *,
        actor_user_id: str,
        customer_notes: str | None = None,
    ) -> Estimate:
        estimate = self._decide(session, estimate_id, "approved", actor_user_id=actor_user_id, customer_notes=customer_notes)
        events.publish(
            {
                "event_type": "sales.estimate.approved",
                "estimate_id": estimate.id,
                "contact_id": estimate.contact_id,
                "customer_user_id": estimate.customer_user_id,
            }
        )
        return estimate

    def reject_estimate(
        self,
        session: Session,
        estimate_id: int,
        *,
        actor_user_id: str,
        customer_notes: str | None = None,
    ) -> Estimate:
        estimate = self._decide(session, estimate_id, "rejected", actor_user_id=actor_user_id, customer_notes=customer_notes)
        events.publish(
            {
                "event_type": "sales.estimate.rejected",
                "estimate_id": estimate.id,
                "contact_id": estimate.contact_id,
            }
        )
        return estimate

    def _decide(
        self,
        session: Session,
        estimate_id: int,
        decision: str,
        *,
        actor_user_id: str,
        customer_notes: str | None,
    ) -> Estimate:
        estimate = self.get_estimate(session, estimate_id)
        verb = "approve" if decision == "approved" else "reject"
        _require_status("estimate", estimate.id, estimate.status, {"sent", "viewed"}, verb)
        before = estimate.status
        estimate.status = decision
        estimate.customer_notes = customer_notes
        if decision == "approved":
            estimate.approved_at = utcnow()
        else:
            estimate.rejected_at = utcnow()
        session.add(estimate)
        _commit(session, "estimate")
        session.refresh(estimate)

        audit.record(
            actor_user_id=actor_user_id,
            entity_type="sales.estimate",
            entity_id=str(estimate.id),
            action=f"estimate.{decision}",
            before={"status": before},
            after={"status": decision, "customer_notes": customer_notes},
        )
        return estimate


@dataclass(slots=True)
class ContractService:
    projects: ProjectService = project_service
    notifications: NotificationService = notification_service

    def create_from_estimate(
        self,
        session: Session,
        estimate_id: int,
        *,
        send_to_customer: bool = False,
        actor_user_id: str = "system",
    ) -> Contract:
        """Convert an approved estimate into a draft contract with a deposit/final payment schedule."""
        estimate = session.scalar(select(Estimate).where(Estimate.id == estimate_id))
        if estimate is None:
            raise EntityNotFoundError("estimate", estimate_id)
        _require_status("estimate", estimate.id, estimate.status, {"approved"}, "convert")
        existing = session.scalar(select(Contract.id).where(Contract.estimate_id == estimate.id))
        if existing is not None:
            raise InvalidTransitionError(
                "Estimate has already been converted to a contract",
                details={"estimate_id": estimate.id, "contract_id": existing},
            )

        settings = get_settings()
        total = _q(estimate.total)
        ratio = Decimal(str(settings.contract_deposit_ratio))
        deposit = _q(total * ratio)
        final = total - deposit
        today = date.today()
        deposit_pct = f"{settings.contract_deposit_ratio * 100:g}%"
        final_pct = f"{(1 - settings.contract_deposit_ratio) * 100:g}%"
        schedule = [
            {
                "id": uuid.uuid4().hex,
                "description": f"Deposit ({deposit_pct})",
                "amount": str(deposit),
                "due_date": today.isoformat(),
                "status": "scheduled",
            },
            {
                "id": uuid.uuid4().hex,
                "description": f"Final payment ({final_pct})",
                "amount": str(final),
                "due_date": (today + timedelta(days=settings.contract_final_due_days)).isoformat(),
                "status": "scheduled",
            },
        ]

        contract = Contract(
            contract_number=next_document_number(session, Contract.contract_number, CONTRACT_PREFIX),
            estimate_id=estimate.id,
            contact_id=estimate.contact_id,
            customer_user_id=estimate.customer_user_id,
            project_id=estimate.project_id,
            title=estimate.title,
            description=estimate.description,
            content=self._contract_body(estimate, schedule),
            status="draft",
            amount=total,
            payment_schedule=schedule,
        )
        estimate.status = "converted"
        estimate.converted_at = utcnow()
        session.add(contract)
        session.add(estimate)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise InvalidTransitionError(
                "Estimate has already been converted to a contract",
                details={"estimate_id": estimate_id},
            ) from exc
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceError("failed to save contract") from exc
        session.refresh(contract)

        audit.record(
            actor_user_id=actor_user_id,
            entity_type="sales.contract",
            entity_id=str(contract.id),
            action="contract.created_from_estimate",
            before={"estimate_id": estimate.id, "estimate_status": "approved"},
            after={"contract_number": contract.contract_number, "amount": str(contract.amount)},
        )
        events.publish(
            {
                "event_type": "sales.estimate.converted",
                "estimate_id": estimate.id,
                "contract_id": contract.id,
            }
        )
        logger.info("estimate_converted", extra={"entity_type": "contract", "entity_id": contract.id})

        if send_to_customer:
            contract = self.send_contract(session, contract.id, actor_user_id=actor_user_id)
        return contract

    def get_contract(self, session: Session, contract_id: int) -> Contract:
        contract = session.scalar(select(Contract).where(Contract.id == contract_id))
        if contract is None:
            raise EntityNotFoundError("contract", contract_id)
        return contract

    def list_contracts(self, session: Session, *, customer_user_id: int | None = None) -> list[Contract]:
        stmt = select(Contract)
        if customer_user_id is not None:
            stmt = stmt.where(Contract.customer_user_id == customer_user_id)
        return list(session.scalars(stmt.order_by(Contract.id.desc())).all())

    def send_contract(self, session: Session, contract_id: int, *, actor_user_id: str) -> Contract:
        contract = self.get_contract(session, contract_id)
        _require_status("contract", contract.id, contract.status, {"draft", "sent"}, "send")
        before = contract.status
        contract.status = "sent"
        contract.sent_at = utcnow()
        session.add(contract)
        _commit(session, "contract")
        session.refresh(contract)

        audit.record(
            actor_user_id=actor_user_id,
            entity_type="sales.contract",
            entity_id=str(contract.id),
            action="contract.sent",
            before={"status": before},
            after={"status": "sent"},
        )
        events.publish({"event_type": "sales.contract.sent", "contract_id": contract.id})

        recipient = _recipient(session, contract.customer_user_id, contract.contact_id)
        if recipient is not None:
            self.notifications.send_document_ready(
                recipient[0],
                name=recipient[1],
                document_kind="contract",
                document_number=contract.contract_number,
                title=contract.title,
                amount=contract.amount,
                view_path=f"/customer/contracts/{contract.id}",
            )
        return contract

    def mark_viewed(self, session: Session, contract_id: int) -> Contract:
        contract = self.get_contract(session, contract_id)
        if contract.status != "sent":
            return contract
        contract.status = "viewed"
        contract.viewed_at = utcnow()
        session.add(contract)
        _commit(session, "contract")
        session.refresh(contract)
        return contract

    def sign_contract(self, session: Session, contract_id: int, *, signature: str | None, actor_user_id: str) -> Contract:
        """Record the customer's signature and link the contract to a project.

        A contract that already points at a project moves that project to ``in_progress``. Otherwise, when both
        the contact and the customer account are known, a new ``in_progress`` project is created and stored on the
        contract.
        """
        contract = self.get_contract(session, contract_id)
        if not signature or not signature.strip():
            raise InvalidTransitionError(
                "A signature is required to sign a contract",
                details={"contract_id": contract.id},
            )
        _require_status("contract", contract.id, contract.status, {"sent", "viewed"}, "sign")

        before = contract.status
        contract.status = "signed"
        contract.customer_signature = signature.strip()
        contract.customer_signed_at = utcnow()
        session.add(contract)

        if contract.project_id is not None:
            project = session.scalar(select(CustomerProject).where(CustomerProject.id == contract.project_id))
            if project is not None:
                project.status = "in_progress"
                session.add(project)
            _commit(session, "contract")
        else:
            _commit(session, "contract")
            if contract.contact_id is not None and contract.customer_user_id is not None:
                project = self.projects.create_project(
                    session,
                    customer_id=contract.customer_user_id,
                    contact_id=contract.contact_id,
                    title=contract.title,
                    description=contract.description,
                    status="in_progress",
                    estimated_cost=contract.amount,
                    start_date=contract.start_date,
                    notify_customer=False,
                    actor_user_id=actor_user_id,
                )
                contract.project_id = project.id
                session.add(contract)
                _commit(session, "contract")
        session.refresh(contract)

        audit.record(
            actor_user_id=actor_user_id,
            entity_type="sales.contract",
            entity_id=str(contract.id),
            action="contract.signed",
            before={"status": before},
            after={"status": "signed", "project_id": contract.project_id},
        )
        events.publish(
            {
                "event_type": "sales.contract.signed",
                "contract_id": contract.id,
                "contact_id": contract.contact_id,
                "customer_user_id": contract.customer_user_id,
                "project_id": contract.project_id,
            }
        )
        return contract

    def _contract_body(self, estimate: Estimate, schedule: list[dict[str, Any]]) -> str:
        lines = [
            f"CONTRACT FOR: {estimate.title}",
            "",
            f"This contract is based on estimate {estimate.estimate_number}.",
        ]
        if estimate.description:
            lines += ["", estimate.description]
        lines += ["", "SCOPE OF WORK:"]
        for item in estimate.line_items or []:
            lines.append(
                f"- {item.get('description')}: {item.get('quantity')} {item.get('unit')} "
                f"@ ${item.get('unit_price')} = ${item.get('total_price')}"
            )
        lines += ["", f"TOTAL CONTRACT AMOUNT: ${_q(estimate.total)}", "", "PAYMENT SCHEDULE:"]
        for entry in schedule:
            lines.append(f"- {entry['description']}: ${entry['amount']} due {entry['due_date']}")
        lines += ["", "TERMS AND CONDITIONS:", estimate.terms or "Standard terms and conditions apply."]
        return "\n".join(lines)


@dataclass(slots=True)
class InvoiceService:
    notifications: NotificationService = notification_service

    def create_from_contract(
        self,
        session: Session,
        contract_id: int,
        schedule_item_id: str,
        *,
        due_date: date | None = None,
        notes: str | None = None,
        actor_user_id: str = "system",
    ) -> Invoice:
        contract = session.scalar(select(Contract).where(Contract.id == contract_id))
        if contract is None:
            raise EntityNotFoundError("contract", contract_id)
        item = next((entry for entry in contract.payment_schedule or [] if entry.get("id") == schedule_item_id), None)
        if item is None:
            raise EntityNotFoundError("payment_schedule_item", schedule_item_id)
        if item.get("status") != "scheduled":
            raise InvalidTransitionError(
                f"Payment schedule item is already {item.get('status')}",
                details={"contract_id": contract.id, "schedule_item_id": schedule_item_id, "status": item.get("status")},
            )

        amount = _q(item["amount"])
        resolved_due = due_date
        if resolved_due is None and item.get("due_date"):
            resolved_due = date.fromisoformat(item["due_date"])

        invoice = Invoice(
            invoice_number=next_document_number(session, Invoice.invoice_number, INVOICE_PREFIX),
            contract_id=contract.id,
            schedule_item_id=schedule_item_id,
            contact_id=contract.contact_id,
            customer_user_id=contract.customer_user_id,
            project_id=contract.project_id,
            title=f"{contract.title} - {item.get('description')}",
            description=f"Invoice for contract {contract.contract_number}",
            status="draft",
            line_items=[
                {
                    "description": item.get("description"),
                    "quantity": "1",
                    "unit": "payment",
                    "unit_price": str(amount),
                    "total_price": str(amount),
                }
            ],
            subtotal=amount,
            tax=Decimal("0"),
            total=amount,
            amount_paid=Decimal("0"),
            amount_due=amount,
            due_date=resolved_due,
            notes=notes,
        )
        contract.payment_schedule = [
            {**entry, "status": "invoiced"} if entry.get("id") == schedule_item_id else entry
            for entry in contract.payment_schedule
        ]
        session.add(invoice)
        session.add(contract)
        _commit(session, "invoice")
        session.refresh(invoice)

        audit.record(
            actor_user_id=actor_user_id,
            entity_type="sales.invoice",
            entity_id=str(invoice.id),
            action="invoice.created_from_contract",
            before=None,
            after={"contract_id": contract.id, "schedule_item_id": schedule_item_id, "total": str(amount)},
        )
        events.publish(
            {
                "event_type": "sales.invoice.created",
                "invoice_id": invoice.id,
                "contract_id": contract.id,
                "total": str(invoice.total),
            }
        )
        return invoice

    def get_invoice(self, session: Session, invoice_id: int) -> Invoice:
        invoice = session.scalar(select(Invoice).where(Invoice.id == invoice_id))
        if invoice is None:
            raise EntityNotFoundError("invoice", invoice_id)
        return invoice

    def list_invoices(self, session: Session, *, customer_user_id: int | None = None) -> list[Invoice]:
        stmt = select(Invoice)
        if customer_user_id is not None:
            stmt = stmt.where(Invoice.customer_user_id == customer_user_id)
        return list(session.scalars(stmt.order_by(Invoice.id.desc())).all())

    def send_invoice(self, session: Session, invoice_id: int, *, actor_user_id: str) -> Invoice:
        invoice = self.get_invoice(session, invoice_id)
        _require_status("invoice", invoice.id, invoice.status, {"draft", "sent"}, "send")
        before = invoice.status
        invoice.status = "sent"
        invoice.sent_at = utcnow()
        session.add(invoice)
        _commit(session, "invoice")
        session.refresh(invoice)

        audit.record(
            actor_user_id=actor_user_id,
            entity_type="sales.invoice",
            entity_id=str(invoice.id),
            action="invoice.sent",
            before={"status": before},
            after={"status": "sent"},
        )
        events.publish({"event_type": "sales.invoice.sent", "invoice_id": invoice.id})

        recipient = _recipient(session, invoice.customer_user_id, invoice.contact_id)
        if recipient is not None:
            self.notifications.send_document_ready(
                recipient[0],
                name=recipient[1],
                document_kind="invoice",
                document_number=invoice.invoice_number,
                title=invoice.title,
                amount=invoice.amount_due,
                view_path=f"/customer/invoices/{invoice.id}",
            )
        return invoice

    def mark_viewed(self, session: Session, invoice_id: int) -> Invoice:
        invoice = self.get_invoice(session, invoice_id)
        if invoice.status != "sent":
            return invoice
        invoice.status = "viewed"
        invoice.viewed_at = utcnow()
        session.add(invoice)
        _commit(session, "invoice")
        session.refresh(invoice)
        return invoice


@dataclass(slots=True)
class PaymentService:
    notifications: NotificationService = notification_service

    def record_payment(
        self,
        session: Session,
        invoice_id: int,
        *,
        amount: Decimal | str | None,
        payment_method: str | None,
        transaction_id: str | None = None,
        notes: str | None = None,
        customer_user_id: int | None = None,
        actor_user_id: str = "system",
    ) -> Payment:
        """Store a completed payment and recompute the invoice and its contract schedule item.

        ``amount_paid`` is re-summed from the stored payments rather than incremented, so ``amount_due`` always
        equals ``total - amount_paid``.
        """
        invoice = session.scalar(select(Invoice).where(Invoice.id == invoice_id))
        if invoice is None:
            raise EntityNotFoundError("invoice", invoice_id)
        payment_amount = _payment_amount(amount)
        if not payment_method or not payment_method.strip():
            raise ActionInputError("A payment method is required")
        if invoice.status in {"paid", "cancelled"}:
            raise InvalidTransitionError(
                f"Cannot record a payment on a {invoice.status} invoice",
                details={"invoice_id": invoice.id, "status": invoice.status},
            )

        payment = Payment(
            invoice_id=invoice.id,
            customer_user_id=customer_user_id if customer_user_id is not None else invoice.customer_user_id,
            amount=payment_amount,
            payment_method=payment_method.strip(),
            transaction_id=transaction_id,
            status="completed",
            notes=notes,
            paid_at=utcnow(),
        )
        session.add(payment)
        try:
            session.flush()
            paid_total = session.scalar(
                select(func.coalesce(func.sum(Payment.amount), 0)).where(
                    Payment.invoice_id == invoice.id,
                    Payment.status == "completed",
                )
            )
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceError("failed to save payment") from exc

        before = {"status": invoice.status, "amount_paid": str(invoice.amount_paid), "amount_due": str(invoice.amount_due)}
        invoice.amount_paid = _q(paid_total)
        invoice.amount_due = _q(Decimal(invoice.total) - invoice.amount_paid)
        if invoice.amount_due <= 0:
            invoice.status = "paid"
            invoice.paid_at = utcnow()
        else:
            invoice.status = "partially_paid"
        session.add(invoice)

        if invoice.status == "paid" and invoice.contract_id is not None:
            self._mark_schedule_item_paid(session, invoice)
        _commit(session, "payment")
        session.refresh(payment)
        session.refresh(invoice)

        audit.record(
            actor_user_id=actor_user_id,
            entity_type="sales.invoice",
            entity_id=str(invoice.id),
            action="invoice.payment_recorded",
            before=before,
            after={"status": invoice.status, "amount_paid": str(invoice.amount_paid), "amount_due": str(invoice.amount_due)},
        )
        events.publish(
            {
                "event_type": "sales.payment.recorded",
                "payment_id": payment.id,
                "invoice_id": invoice.id,
                "amount": str(payment.amount),
            }
        )
        if invoice.status == "paid":
            events.publish(
                {
                    "event_type": "sales.invoice.paid",
                    "invoice_id": invoice.id,
                    "contract_id": invoice.contract_id,
                }
            )
        return payment

    def get_payment(self, session: Session, payment_id: int) -> Payment:
        payment = session.scalar(select(Payment).where(Payment.id == payment_id))
        if payment is None:
            raise EntityNotFoundError("payment", payment_id)
        return payment

    def send_receipt(self, session: Session, payment_id: int, *, actor_user_id: str) -> tuple[Payment, NotificationResult]:
        payment = self.get_payment(session, payment_id)
        invoice = session.scalar(select(Invoice).where(Invoice.id == payment.invoice_id))
        if invoice is None:
            raise EntityNotFoundError("invoice", payment.invoice_id)
        recipient = _recipient(session, payment.customer_user_id or invoice.customer_user_id, invoice.contact_id)
        if recipient is None:
            raise ActionInputError("No email address is available for this payment's customer")

        result = self.notifications.send_payment_receipt(
            recipient[0],
            name=recipient[1],
            invoice_number=invoice.invoice_number,
            amount=payment.amount,
            payment_method=payment.payment_method,
            paid_at=payment.paid_at,
            amount_due=invoice.amount_due,
        )
        if result.success:
            payment.receipt_sent = True
            session.add(payment)
            _commit(session, "payment")
            session.refresh(payment)
            audit.record(
                actor_user_id=actor_user_id,
                entity_type="sales.payment",
                entity_id=str(payment.id),
                action="payment.receipt_sent",
                before={"receipt_sent": False},
                after={"receipt_sent": True},
            )
        return payment, result

    def _mark_schedule_item_paid(self, session: Session, invoice: Invoice) -> None:
        contract = session.scalar(select(Contract).where(Contract.id == invoice.contract_id))
        if contract is None:
            return
        schedule = list(contract.payment_schedule or [])
        target_index: int | None = None
        if invoice.schedule_item_id:
            target_index = next(
                (index for index, entry in enumerate(schedule) if entry.get("id") == invoice.schedule_item_id),
                None,
            )
        else:
            # Invoices without a schedule reference fall back to matching by amount.
            target_index = next(
                (
                    index
                    for index, entry in enumerate(schedule)
                    if entry.get("status") == "invoiced" and _q(entry.get("amount", "0")) == _q(invoice.total)
                ),
                None,
            )
        if target_index is None:
            logger.warning(
                "payment_schedule_item_unmatched",
                extra={"entity_type": "invoice", "entity_id": invoice.id},
            )
            return
        schedule[target_index] = {**schedule[target_index], "status": "paid"}
        contract.payment_schedule = schedule
        session.add(contract)


estimate_service = EstimateService()
contract_service = ContractService()
invoice_service = InvoiceService()
payment_service = PaymentService()
