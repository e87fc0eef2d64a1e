from __future__ import annotations

from collections.abc import Generator
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import floorline.models  # noqa: F401
from floorline import audit, events
from floorline.core.config import get_settings
from floorline.core.database import Base
from floorline.crm.models import Contact, Task
from floorline.errors import ActionInputError, EntityNotFoundError, InvalidTransitionError
from floorline.notifications import sinks
from floorline.notifications.models import EmailTemplate, SmsTemplate
from floorline.portal.models import CustomerUser
from floorline.sales.models import Contract, Estimate, Invoice
from floorline.workflows.actions import ActionKind, ActionRegistry, build_default_registry


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_state() -> Generator[None, None, None]:
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    sinks.sent_messages.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    sinks.sent_messages.clear()


@pytest.fixture()
def registry() -> ActionRegistry:
    return build_default_registry()


def _run(registry: ActionRegistry, session: Session, action_type: str, data: dict[str, object]):  # type: ignore[no-untyped-def]
    action = registry.resolve(action_type)
    assert action is not None
    return registry.execute(session, action, data)


def _contact(session: Session, email: str | None = "lee@example.com") -> Contact:
    contact = Contact(name="Lee Oak", email=email, phone="555-0122")
    session.add(contact)
    session.commit()
    session.refresh(contact)
    return contact


def _approved_estimate(session: Session, contact: Contact, total: str = "1000.00") -> Estimate:
    estimate = Estimate(
        estimate_number="EST-2026-0001",
        contact_id=contact.id,
        title="Oak hardwood, living room",
        status="approved",
        line_items=[
            {"description": "Oak planks", "quantity": "400", "unit": "sqft", "unit_price": "2.50", "total_price": total}
        ],
        subtotal=Decimal(total),
        tax=Decimal("0"),
        total=Decimal(total),
    )
    session.add(estimate)
    session.commit()
    session.refresh(estimate)
    return estimate


def test_resolve_returns_none_for_unknown_types(registry: ActionRegistry) -> None:
    assert registry.resolve("send_fax") is None
    assert registry.resolve(None) is None
    assert registry.resolve("send_email") is not None
    assert set(registry.kinds()) == set(ActionKind)


def test_send_email_prefers_template(registry: ActionRegistry, db_session: Session) -> None:
    template = EmailTemplate(name="Thanks", subject="Thanks {{name}}", html_content="<p>Hi {{name}}, {{unknown}}</p>")
    db_session.add(template)
    db_session.commit()

    result = _run(
        registry,
        db_session,
        "send_email",
        {
            "email": "lee@example.com",
            "template_id": template.id,
            "custom_subject": "ignored",
            "custom_body": "ignored",
            "variables": {"name": "Lee"},
        },
    )

    assert result.success is True
    assert sinks.sent_messages[-1]["subject"] == "Thanks Lee"
    assert sinks.sent_messages[-1]["body"] == "<p>Hi Lee, {{unknown}}</p>"


def test_send_email_falls_back_to_custom_content(registry: ActionRegistry, db_session: Session) -> None:
    result = _run(
        registry,
        db_session,
        "send_email",
        {"recipient_email": "lee@example.com", "template_id": 12345, "custom_subject": "Hello", "custom_body": "Body"},
    )
    assert result.success is True
    assert result.output["recipient"] == "lee@example.com"
    assert sinks.sent_messages[-1]["subject"] == "Hello"


def test_send_email_without_content_or_recipient_fails(registry: ActionRegistry, db_session: Session) -> None:
    with pytest.raises(ActionInputError, match="Email template or custom content not provided"):
        _run(registry, db_session, "send_email", {"email": "lee@example.com"})
    with pytest.raises(ActionInputError):
        _run(registry, db_session, "send_email", {"custom_subject": "Hi", "custom_body": "Body"})
    assert sinks.sent_messages == []


def test_send_sms_uses_template_content(registry: ActionRegistry, db_session: Session) -> None:
    template = SmsTemplate(name="Reminder", content="See you {{day}}")
    db_session.add(template)
    db_session.commit()

    result = _run(
        registry,
        db_session,
        "send_sms",
        {"phone": "555-0122", "template_id": template.id, "variables": {"day": "Monday"}},
    )

    assert result.success is True
    assert sinks.sent_messages[-1]["channel"] == "sms"
    assert sinks.sent_messages[-1]["body"] == "See you Monday"


def test_create_task_sets_due_date(registry: ActionRegistry, db_session: Session) -> None:
    contact = _contact(db_session)
    result = _run(
        registry,
        db_session,
        "create_task",
        {"title": "Measure room", "contact_id": contact.id, "due_in_days": 3, "assigned_to": "crew-1"},
    )

    task = db_session.scalars(select(Task)).one()
    assert result.context_updates == {"task_id": task.id}
    assert task.assigned_to == "crew-1"
    assert task.due_at is not None


def test_invalid_input_is_reported_with_details(registry: ActionRegistry, db_session: Session) -> None:
    with pytest.raises(ActionInputError) as excinfo:
        _run(registry, db_session, "create_project", {"title": "No owner"})
    assert excinfo.value.details[0]["loc"] == ["customer_id"]


def test_create_customer_account_requires_email(registry: ActionRegistry, db_session: Session) -> None:
    contact = _contact(db_session, email=None)
    with pytest.raises(ActionInputError):
        _run(registry, db_session, "create_customer_account", {"contact_id": contact.id})

    result = _run(
        registry,
        db_session,
        "create_customer_account",
        {"contact_id": contact.id, "email": "Lee.Oak@Example.com", "send_welcome_email": True},
    )
    user = db_session.scalars(select(CustomerUser)).one()
    assert result.output["created"] is True
    assert result.output["welcome_email_sent"] is True
    assert user.username == "lee.oak@example.com"
    assert "password" not in result.output


def test_create_customer_account_for_unknown_contact(registry: ActionRegistry, db_session: Session) -> None:
    with pytest.raises(EntityNotFoundError):
        _run(registry, db_session, "create_customer_account", {"contact_id": 404})


def test_convert_to_contract_and_invoice_deposit(registry: ActionRegistry, db_session: Session) -> None:
    contact = _contact(db_session)
    estimate = _approved_estimate(db_session, contact)

    converted = _run(registry, db_session, "convert_to_contract", {"estimate_id": estimate.id})
    contract = db_session.get(Contract, converted.context_updates["contract_id"])
    assert contract is not None
    assert converted.output["amount"] == "1000.00"
    deposit = contract.payment_schedule[0]

    invoiced = _run(
        registry,
        db_session,
        "create_invoice",
        {"contract_id": contract.id, "payment_schedule_item_id": deposit["id"]},
    )
    invoice = db_session.get(Invoice, invoiced.context_updates["invoice_id"])
    assert invoice is not None
    assert invoice.total == Decimal("250.00")
    assert invoice.schedule_item_id == deposit["id"]

    with pytest.raises(InvalidTransitionError):
        _run(registry, db_session, "convert_to_contract", {"estimate_id": estimate.id})
    with pytest.raises(InvalidTransitionError):
        _run(
            registry,
            db_session,
            "create_invoice",
            {"contract_id": contract.id, "payment_schedule_item_id": deposit["id"]},
        )
    with pytest.raises(EntityNotFoundError):
        _run(registry, db_session, "create_invoice", {"contract_id": contract.id, "payment_schedule_item_id": "nope"})
