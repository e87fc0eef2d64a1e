from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.orm import Session

from floorline.crm.service import TaskService, task_service
from floorline.errors import ActionInputError
from floorline.notifications.service import NotificationService, notification_service, substitute_tokens
from floorline.portal.service import CustomerAccountService, ProjectService, customer_account_service, project_service
from floorline.sales.service import ContractService, InvoiceService, contract_service, invoice_service


logger = logging.getLogger("floorline.workflows")


class ActionKind(str, Enum):
    SEND_EMAIL = "send_email"
    SEND_SMS = "send_sms"
    CREATE_TASK = "create_task"
    CREATE_CUSTOMER_ACCOUNT = "create_customer_account"
    CREATE_PROJECT = "create_project"
    CONVERT_TO_CONTRACT = "convert_to_contract"
    CREATE_INVOICE = "create_invoice"


@dataclass
class ActionResult:
    action_type: ActionKind
    success: bool
    output: dict[str, Any] = field(default_factory=dict)
    # Merged into the run context so later actions in the same workflow can use them.
    context_updates: dict[str, Any] = field(default_factory=dict)


class ActionHandler(Protocol):
    def __call__(self, session: Session, payload: Any) -> ActionResult: ...


class ActionInput(BaseModel):
    model_config = ConfigDict(extra="ignore")


class SendEmailInput(ActionInput):
    recipient_email: str | None = None
    email: str | None = None
    template_id: int | None = None
    custom_subject: str | None = None
    custom_body: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)


class SendSmsInput(ActionInput):
    recipient_phone: str | None = None
    phone: str | None = None
    template_id: int | None = None
    custom_message: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)


class CreateTaskInput(ActionInput):
    title: str = Field(min_length=1)
    contact_id: int | None = None
    description: str | None = None
    due_in_days: int | None = Field(default=None, ge=0)
    assigned_to: str | None = None


class CreateCustomerAccountInput(ActionInput):
    contact_id: int
    email: str | None = None
    name: str | None = None
    phone: str | None = None
    send_welcome_email: bool = True


class CreateProjectInput(ActionInput):
    customer_id: int
    contact_id: int | None = None
    title: str = Field(min_length=1)
    description: str | None = None
    flooring_type: str | None = None
    square_footage: int | None = Field(default=None, ge=0)
    estimated_cost: Decimal | None = Field(default=None, ge=Decimal("0"))
    notify_customer: bool = True


class ConvertToContractInput(ActionInput):
    estimate_id: int
    send_to_customer: bool = False


class CreateInvoiceInput(ActionInput):
    contract_id: int
    payment_schedule_item_id: str = Field(min_length=1)
    due_date: date | None = None
    notes: str | None = None


@dataclass(frozen=True)
class RegisteredAction:
    kind: ActionKind
    description: str
    input_model: type[ActionInput]
    handler: ActionHandler


def _type_label(annotation: Any) -> str:
    name = getattr(annotation, "__name__", None)
    if name and not getattr(annotation, "__args__", None):
        return name
    return str(annotation).replace("typing.", "").replace("decimal.", "").replace("datetime.", "")


class ActionRegistry:
    """Closed set of workflow actions keyed by :class:`ActionKind`."""

    def __init__(self) -> None:
        self._actions: dict[ActionKind, RegisteredAction] = {}

    def register(
        self,
        kind: ActionKind,
        handler: ActionHandler,
        *,
        description: str,
        input_model: type[ActionInput],
    ) -> None:
        self._actions[kind] = RegisteredAction(
            kind=kind,
            description=description,
            input_model=input_model,
            handler=handler,
        )

    def resolve(self, action_type: Any) -> RegisteredAction | None:
        try:
            kind = ActionKind(action_type)
        except ValueError:
            return None
        return self._actions.get(kind)

    def kinds(self) -> list[ActionKind]:
        return list(self._actions)

    def execute(self, session: Session, action: RegisteredAction, data: dict[str, Any]) -> ActionResult:
        try:
            payload = action.input_model.model_validate(data)
        except ValidationError as exc:
            raise ActionInputError(
                f"Invalid input for action '{action.kind.value}'",
                details=[
                    {"loc": [str(part) for part in error["loc"]], "msg": error["msg"], "type": error["type"]}
                    for error in exc.errors()
                ],
            ) from exc
        return action.handler(session, payload)

    def catalog(self) -> list[dict[str, Any]]:
        entries: list[dict[str, Any]] = []
        for action in self._actions.values():
            entries.append(
                {
                    "name": action.kind.value,
                    "description": action.description,
                    "fields": [
                        {"name": name, "required": info.is_required(), "type": _type_label(info.annotation)}
                        for name, info in action.input_model.model_fields.items()
                    ],
                }
            )
        return entries


class DefaultActions:
    def __init__(
        self,
        *,
        notifications: NotificationService | None = None,
        accounts: CustomerAccountService | None = None,
        projects: ProjectService | None = None,
        tasks: TaskService | None = None,
        contracts: ContractService | None = None,
        invoices: InvoiceService | None = None,
    ) -> None:
        self.notifications = notifications or notification_service
        self.accounts = accounts or customer_account_service
        self.projects = projects or project_service
        self.tasks = tasks or task_service
        self.contracts = contracts or contract_service
        self.invoices = invoices or invoice_service

    def send_email(self, session: Session, payload: SendEmailInput) -> ActionResult:
        recipient = payload.recipient_email or payload.email
        if not recipient:
            raise ActionInputError("A recipient email address is required for send_email")

        subject: str | None = None
        html: str | None = None
        if payload.template_id is not None:
            template = self.notifications.get_email_template(session, payload.template_id)
            if template is not None:
                subject = substitute_tokens(template.subject, payload.variables)
                html = substitute_tokens(template.html_content, payload.variables)
            else:
                logger.warning(
                    "email_template_missing",
                    extra={"entity_type": "email_template", "entity_id": payload.template_id},
                )
        if html is None:
            if not payload.custom_subject or not payload.custom_body:
                raise ActionInputError("Email template or custom content not provided")
            subject = payload.custom_subject
            html = substitute_tokens(payload.custom_body, payload.variables)

        result = self.notifications.send_custom_email(recipient, subject or "", html)
        return ActionResult(
            action_type=ActionKind.SEND_EMAIL,
            success=result.success,
            output={"recipient": recipient, "subject": subject, "message_id": result.message_id, "error": result.error},
        )

    def send_sms(self, session: Session, payload: SendSmsInput) -> ActionResult:
        recipient = payload.recipient_phone or payload.phone
        if not recipient:
            raise ActionInputError("A recipient phone number is required for send_sms")

        body: str | None = None
        if payload.template_id is not None:
            template = self.notifications.get_sms_template(session, payload.template_id)
            if template is not None:
                body = substitute_tokens(template.content, payload.variables)
        if body is None:
            if not payload.custom_message:
                raise ActionInputError("SMS template or custom message not provided")
            body = substitute_tokens(payload.custom_message, payload.variables)

        result = self.notifications.send_sms(recipient, body)
        return ActionResult(
            action_type=ActionKind.SEND_SMS,
            success=result.success,
            output={"recipient": recipient, "message_id": result.message_id, "error": result.error},
        )

    def create_task(self, session: Session, payload: CreateTaskInput) -> ActionResult:
        due_at = None
        if payload.due_in_days is not None:
            due_at = datetime.now(timezone.utc) + timedelta(days=payload.due_in_days)
        task = self.tasks.create_task(
            session,
            title=payload.title,
            contact_id=payload.contact_id,
            description=payload.description,
            due_at=due_at,
            assigned_to=payload.assigned_to,
        )
        return ActionResult(
            action_type=ActionKind.CREATE_TASK,
            success=True,
            output={"task_id": task.id, "title": task.title, "contact_id": task.contact_id},
            context_updates={"task_id": task.id},
        )

    def create_customer_account(self, session: Session, payload: CreateCustomerAccountInput) -> ActionResult:
        provisioned = self.accounts.provision_customer_account(
            session,
            payload.contact_id,
            email=payload.email,
            name=payload.name,
            phone=payload.phone,
            send_welcome_email=payload.send_welcome_email,
        )
        user = provisioned.user
        return ActionResult(
            action_type=ActionKind.CREATE_CUSTOMER_ACCOUNT,
            success=True,
            output={
                "customer_user_id": user.id,
                "email": user.email,
                "name": user.name,
                "contact_id": user.contact_id,
                "created": provisioned.created,
                "welcome_email_sent": bool(provisioned.welcome_email and provisioned.welcome_email.success),
            },
            context_updates={"customer_id": user.id, "customer_user_id": user.id},
        )

    def create_project(self, session: Session, payload: CreateProjectInput) -> ActionResult:
        project = self.projects.create_project(
            session,
            customer_id=payload.customer_id,
            contact_id=payload.contact_id,
            title=payload.title,
            description=payload.description,
            flooring_type=payload.flooring_type,
            square_footage=payload.square_footage,
            estimated_cost=payload.estimated_cost,
            notify_customer=payload.notify_customer,
        )
        return ActionResult(
            action_type=ActionKind.CREATE_PROJECT,
            success=True,
            output={
                "project_id": project.id,
                "customer_id": project.customer_id,
                "title": project.title,
                "status": project.status,
            },
            context_updates={"project_id": project.id},
        )

    def convert_to_contract(self, session: Session, payload: ConvertToContractInput) -> ActionResult:
        contract = self.contracts.create_from_estimate(
            session,
            payload.estimate_id,
            send_to_customer=payload.send_to_customer,
        )
        return ActionResult(
            action_type=ActionKind.CONVERT_TO_CONTRACT,
            success=True,
            output={
                "contract_id": contract.id,
                "contract_number": contract.contract_number,
                "status": contract.status,
                "amount": str(contract.amount),
            },
            context_updates={"contract_id": contract.id},
        )

    def create_invoice(self, session: Session, payload: CreateInvoiceInput) -> ActionResult:
        invoice = self.invoices.create_from_contract(
            session,
            payload.contract_id,
            payload.payment_schedule_item_id,
            due_date=payload.due_date,
            notes=payload.notes,
        )
        return ActionResult(
            action_type=ActionKind.CREATE_INVOICE,
            success=True,
            output={
                "invoice_id": invoice.id,
                "invoice_number": invoice.invoice_number,
                "total": str(invoice.total),
                "status": invoice.status,
            },
            context_updates={"invoice_id": invoice.id},
        )


def build_default_registry(actions: DefaultActions | None = None) -> ActionRegistry:
    handlers = actions or DefaultActions()
    registry = ActionRegistry()
    registry.register(
        ActionKind.SEND_EMAIL,
        handlers.send_email,
        description="Sends an email using a template or custom content",
        input_model=SendEmailInput,
    )
    registry.register(
        ActionKind.SEND_SMS,
        handlers.send_sms,
        description="Sends a text message using a template or custom content",
        input_model=SendSmsInput,
    )
    registry.register(
        ActionKind.CREATE_TASK,
        handlers.create_task,
        description="Creates a follow-up task",
        input_model=CreateTaskInput,
    )
    registry.register(
        ActionKind.CREATE_CUSTOMER_ACCOUNT,
        handlers.create_customer_account,
        description="Creates a customer portal account",
        input_model=CreateCustomerAccountInput,
    )
    registry.register(
        ActionKind.CREATE_PROJECT,
        handlers.create_project,
        description="Creates a customer project",
        input_model=CreateProjectInput,
    )
    registry.register(
        ActionKind.CONVERT_TO_CONTRACT,
        handlers.convert_to_contract,
        description="Converts an approved estimate to a contract",
        input_model=ConvertToContractInput,
    )
    registry.register(
        ActionKind.CREATE_INVOICE,
        handlers.create_invoice,
        description="Creates an invoice for a contract payment schedule item",
        input_model=CreateInvoiceInput,
    )
    return registry
