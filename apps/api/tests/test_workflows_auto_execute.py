from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import floorline.models  # noqa: F401
from floorline import audit, events
from floorline.core.auth import AuthUser, get_current_user
from floorline.core.config import get_settings
from floorline.core.database import Base, get_db
from floorline.crm.models import Contact, Task
from floorline.main import app
from floorline.notifications import sinks
from floorline.sales.models import Contract
from floorline.workflows.models import Workflow
from floorline.workflows.scheduler import workflow_scheduler


ADMIN = AuthUser(
    sub="admin-1",
    roles=["workflows.read", "workflows.manage", "workflows.execute", "crm.manage", "sales.manage", "portal.manage"],
)


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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("WORKFLOW_EVENTS_ENABLED", "true")
    monkeypatch.setenv("WORKFLOW_DELAY_ENABLED", "true")
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
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[AuthUser], None]], None, None]:
    state = {"current": ADMIN}

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return state["current"]

    def set_actor(actor: AuthUser) -> None:
        state["current"] = actor

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _create_workflow(test_client: TestClient, body: dict[str, object]) -> dict[str, object]:
    response = test_client.post("/api/workflows", json=body)
    assert response.status_code == 201
    return response.json()


def _create_contact(test_client: TestClient, **overrides: object) -> dict[str, object]:
    body: dict[str, object] = {"name": "Rita Tile", "email": "rita@example.com", "phone": "555-0177"}
    body.update(overrides)
    response = test_client.post("/api/contacts", json=body)
    assert response.status_code == 201
    return response.json()


def _sent_estimate(test_client: TestClient, contact_id: int) -> dict[str, object]:
    created = test_client.post(
        "/api/estimates",
        json={
            "contact_id": contact_id,
            "title": "Kitchen tile",
            "line_items": [{"description": "Porcelain tile", "quantity": "400", "unit": "sqft", "unit_price": "2.50"}],
        },
    )
    assert created.status_code == 201
    sent = test_client.post(f"/api/estimates/{created.json()['id']}/send")
    assert sent.status_code == 200
    return sent.json()


def test_lead_stage_change_runs_matching_workflows_only(
    client: tuple[TestClient, Callable[[AuthUser], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    _create_workflow(
        test_client,
        {
            "name": "Qualified follow-up",
            "trigger_type": "lead_stage_change",
            "trigger_condition": "qualified",
            "actions": [{"type": "create_task", "data": {"title": "Book a measure"}}],
        },
    )
    _create_workflow(
        test_client,
        {
            "name": "Lost lead",
            "trigger_type": "lead_stage_change",
            "trigger_condition": "lost",
            "actions": [{"type": "create_task", "data": {"title": "Ask for feedback"}}],
        },
    )
    contact = _create_contact(test_client)

    response = test_client.post(f"/api/contacts/{contact['id']}/lead-stage", json={"lead_stage": "qualified"})
    assert response.status_code == 200
    assert response.json()["lead_stage"] == "qualified"

    tasks = db_session.scalars(select(Task)).all()
    assert [(task.title, task.contact_id) for task in tasks] == [("Book a measure", contact["id"])]

    tasks_response = test_client.get(f"/api/contacts/{contact['id']}/tasks")
    assert [task["title"] for task in tasks_response.json()] == ["Book a measure"]


def test_unchanged_lead_stage_does_not_trigger(
    client: tuple[TestClient, Callable[[AuthUser], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    _create_workflow(
        test_client,
        {
            "name": "New lead",
            "trigger_type": "lead_stage_change",
            "trigger_condition": "new",
            "actions": [{"type": "create_task", "data": {"title": "Should not run"}}],
        },
    )
    contact = _create_contact(test_client)

    response = test_client.post(f"/api/contacts/{contact['id']}/lead-stage", json={"lead_stage": "new"})
    assert response.status_code == 200
    assert db_session.scalars(select(Task)).all() == []
    assert not any(event["event_type"] == "crm.contact.lead_stage_changed" for event in events.published_events)


def test_failing_workflow_does_not_fail_originating_request(
    client: tuple[TestClient, Callable[[AuthUser], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    _create_workflow(
        test_client,
        {
            "name": "Broken",
            "trigger_type": "lead_stage_change",
            "trigger_condition": "contacted",
            "actions": [{"type": "send_sms", "data": {}}],
        },
    )
    contact = _create_contact(test_client, phone=None)

    response = test_client.post(f"/api/contacts/{contact['id']}/lead-stage", json={"lead_stage": "contacted"})
    assert response.status_code == 200
    stored = db_session.get(Contact, contact["id"])
    assert stored is not None
    assert stored.lead_stage == "contacted"
    run_entries = [entry for entry in audit.audit_entries if entry["action"] == "workflow.run"]
    assert run_entries[-1]["after"]["status"] == "failed"


def test_form_submission_emails_the_submitter(client: tuple[TestClient, Callable[[AuthUser], None]]) -> None:
    test_client, _ = client
    _create_workflow(
        test_client,
        {
            "name": "Website reply",
            "trigger_type": "form_submission",
            "actions": [
                {
                    "type": "send_email",
                    "data": {"customSubject": "Thanks for reaching out", "customBody": "<p>We will call you soon.</p>"},
                }
            ],
        },
    )

    response = test_client.post(
        "/api/contact-submissions",
        json={"name": "Omar Vinyl", "email": "omar@example.com", "message": "Need a quote for LVP"},
    )
    assert response.status_code == 201
    assert response.json()["contact_id"] is not None

    assert [(message["to"], message["subject"]) for message in sinks.sent_messages] == [
        ("omar@example.com", "Thanks for reaching out")
    ]


def test_appointment_scheduling_creates_task_for_contact(
    client: tuple[TestClient, Callable[[AuthUser], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    _create_workflow(
        test_client,
        {
            "name": "Prep measure visit",
            "trigger_type": "appointment",
            "actions": [{"type": "create_task", "data": {"title": "Load samples", "dueInDays": 1}}],
        },
    )
    contact = _create_contact(test_client)

    response = test_client.post(
        "/api/appointments",
        json={"contact_id": contact["id"], "title": "In-home measure", "scheduled_at": "2026-11-02T15:00:00Z"},
    )
    assert response.status_code == 201

    task = db_session.scalars(select(Task)).one()
    assert task.title == "Load samples"
    assert task.contact_id == contact["id"]


def test_estimate_approval_converts_to_contract(
    client: tuple[TestClient, Callable[[AuthUser], None]],
    db_session: Session,
) -> None:
    test_client, set_actor = client
    _create_workflow(
        test_client,
        {
            "name": "Auto contract",
            "trigger_type": "estimate_approval",
            "actions": [{"type": "convert_to_contract", "data": {"sendToCustomer": True}}],
        },
    )
    contact = _create_contact(test_client)
    estimate = _sent_estimate(test_client, int(contact["id"]))
    customer_user_id = estimate["customer_user_id"]
    assert customer_user_id is not None

    set_actor(AuthUser(sub=str(customer_user_id), roles=["customer"]))
    approved = test_client.post(f"/api/customer/estimates/{estimate['id']}/approve", json={"customer_notes": "Go"})
    assert approved.status_code == 200
    assert approved.json()["status"] == "approved"

    contract = db_session.scalars(select(Contract).where(Contract.estimate_id == estimate["id"])).one()
    assert contract.status == "sent"
    assert str(contract.amount) == "1000.00"
    assert contract.customer_user_id == customer_user_id

    converted = next(event for event in events.published_events if event["event_type"] == "sales.estimate.converted")
    assert converted["meta"] == {"workflow_depth": 1}
    approved_event = next(event for event in events.published_events if event["event_type"] == "sales.estimate.approved")
    assert "meta" not in approved_event
    assert converted["correlation_id"] == approved_event["correlation_id"]

    contract_audit = audit.entries_for("sales.contract", contract.id)
    assert [(entry["action"], entry["workflow_depth"]) for entry in contract_audit] == [
        ("contract.created_from_estimate", 1),
        ("contract.sent", 1),
    ]
    assert contract_audit[0]["actor_user_id"] == "system"
    estimate_audit = audit.entries_for("sales.estimate", estimate["id"])
    assert estimate_audit[-1]["workflow_depth"] is None


def test_contract_signing_notifies_customer(
    client: tuple[TestClient, Callable[[AuthUser], None]],
    db_session: Session,
) -> None:
    test_client, set_actor = client
    _create_workflow(
        test_client,
        {
            "name": "Signed thank-you",
            "trigger_type": "contract_signed",
            "actions": [
                {
                    "type": "send_email",
                    "data": {
                        "customSubject": "Your install is booked",
                        "customBody": "<p>Hi {{first_name}}, we have your signature.</p>",
                        "variables": {"first_name": "Rita"},
                    },
                }
            ],
        },
    )
    contact = _create_contact(test_client)
    estimate = _sent_estimate(test_client, int(contact["id"]))
    customer = AuthUser(sub=str(estimate["customer_user_id"]), roles=["customer"])

    set_actor(customer)
    assert test_client.post(f"/api/customer/estimates/{estimate['id']}/approve", json={}).status_code == 200
    set_actor(ADMIN)
    contract = test_client.post(f"/api/estimates/{estimate['id']}/convert", json={"send_to_customer": True})
    assert contract.status_code == 201

    set_actor(customer)
    signed = test_client.post(f"/api/customer/contracts/{contract.json()['id']}/sign", json={"signature": "Rita Tile"})
    assert signed.status_code == 200
    assert signed.json()["status"] == "signed"
    assert signed.json()["project_id"] is not None

    thank_you = [message for message in sinks.sent_messages if message["subject"] == "Your install is booked"]
    assert len(thank_you) == 1
    assert thank_you[0]["to"] == "rita@example.com"
    assert thank_you[0]["body"] == "<p>Hi Rita, we have your signature.</p>"


def test_delayed_trigger_is_scheduled_not_run(
    client: tuple[TestClient, Callable[[AuthUser], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    workflow = _create_workflow(
        test_client,
        {
            "name": "Next-day follow-up",
            "trigger_type": "form_submission",
            "delay_hours": 24,
            "actions": [{"type": "create_task", "data": {"title": "Call tomorrow"}}],
        },
    )

    pending_before = workflow_scheduler.pending_count()
    response = test_client.post(
        "/api/contact-submissions",
        json={"name": "Ivy Carpet", "email": "ivy@example.com", "message": "Carpet for two rooms"},
    )
    assert response.status_code == 201

    assert db_session.scalars(select(Task)).all() == []
    assert workflow_scheduler.pending_count() == pending_before + 1
    stored = db_session.get(Workflow, workflow["id"])
    assert stored is not None
    assert stored.delay_hours == 24


def test_events_disabled_skips_workflows(
    client: tuple[TestClient, Callable[[AuthUser], None]],
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, _ = client
    _create_workflow(
        test_client,
        {
            "name": "Appointment task",
            "trigger_type": "appointment",
            "actions": [{"type": "create_task", "data": {"title": "Never created"}}],
        },
    )
    contact = _create_contact(test_client)
    monkeypatch.setenv("WORKFLOW_EVENTS_ENABLED", "false")
    get_settings.cache_clear()

    response = test_client.post(
        "/api/appointments",
        json={"contact_id": contact["id"], "title": "Measure", "scheduled_at": "2026-11-03T15:00:00Z"},
    )
    assert response.status_code == 201
    assert db_session.scalars(select(Task)).all() == []
