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
from floorline.crm.models import Contact
from floorline.main import app
from floorline.notifications import sinks
from floorline.portal.models import CustomerProject, CustomerUser


ADMIN_ROLES = ["workflows.read", "workflows.manage", "workflows.execute", "crm.manage"]


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
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[list[str]], None]], None, None]:
    state = {"roles": list(ADMIN_ROLES)}

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(sub="admin-1", roles=state["roles"])

    def set_roles(roles: list[str]) -> None:
        state["roles"] = roles

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_roles
    app.dependency_overrides.clear()


def _create_contact(db_session: Session, *, email: str | None = "jane@example.com") -> Contact:
    contact = Contact(name="Jane Doe", email=email, phone="555-0100", lead_stage="new")
    db_session.add(contact)
    db_session.commit()
    db_session.refresh(contact)
    return contact


def _workflow_body(**overrides: object) -> dict[str, object]:
    body: dict[str, object] = {
        "name": "Welcome new customer",
        "trigger_type": "estimate_approval",
        "actions": [{"type": "create_customer_account", "data": {"sendWelcomeEmail": False}}],
    }
    body.update(overrides)
    return body


def test_trigger_catalog_lists_seven_triggers(client: tuple[TestClient, Callable[[list[str]], None]]) -> None:
    test_client, _ = client
    response = test_client.get("/api/workflows/triggers")
    assert response.status_code == 200
    triggers = {item["name"]: item["type"] for item in response.json()}
    assert triggers == {
        "lead_stage_change": "lead_stage_change",
        "estimate_approval": "estimate_approval",
        "contract_signed": "contract_signed",
        "form_submission": "form_submission",
        "appointment_scheduled": "appointment",
        "appointment_reminder": "schedule",
        "manual_trigger": "manual",
    }


def test_action_catalog_describes_every_action(client: tuple[TestClient, Callable[[list[str]], None]]) -> None:
    test_client, _ = client
    response = test_client.get("/api/workflows/actions")
    assert response.status_code == 200
    catalog = {item["name"]: item for item in response.json()}
    assert set(catalog) == {
        "send_email",
        "send_sms",
        "create_task",
        "create_customer_account",
        "create_project",
        "convert_to_contract",
        "create_invoice",
    }
    invoice_fields = {field["name"]: field["required"] for field in catalog["create_invoice"]["fields"]}
    assert invoice_fields["contract_id"] is True
    assert invoice_fields["payment_schedule_item_id"] is True
    assert invoice_fields["notes"] is False


def test_workflow_crud_round_trip(client: tuple[TestClient, Callable[[list[str]], None]]) -> None:
    test_client, _ = client

    created = test_client.post("/api/workflows", json=_workflow_body(delay_hours=2))
    assert created.status_code == 201
    workflow = created.json()
    assert workflow["is_active"] is True
    assert workflow["delay_hours"] == 2
    assert workflow["actions"] == [{"type": "create_customer_account", "data": {"sendWelcomeEmail": False}}]

    listed = test_client.get("/api/workflows", params={"trigger_type": "estimate_approval"})
    assert listed.status_code == 200
    assert [item["id"] for item in listed.json()] == [workflow["id"]]
    assert test_client.get("/api/workflows", params={"trigger_type": "contract_signed"}).json() == []

    updated = test_client.patch(f"/api/workflows/{workflow['id']}", json={"is_active": False, "name": "Paused"})
    assert updated.status_code == 200
    assert updated.json()["is_active"] is False
    assert updated.json()["name"] == "Paused"
    assert updated.json()["trigger_type"] == "estimate_approval"

    deleted = test_client.delete(f"/api/workflows/{workflow['id']}")
    assert deleted.status_code == 200
    assert deleted.json() == {"status": "deleted"}
    missing = test_client.get(f"/api/workflows/{workflow['id']}")
    assert missing.status_code == 404
    assert missing.json()["code"] == "workflow_get_failed"

    actions = [entry["action"] for entry in audit.audit_entries if entry["entity_type"] == "workflow"]
    assert actions == ["workflow.created", "workflow.updated", "workflow.deleted"]


@pytest.mark.parametrize(
    "overrides",
    [
        {"trigger_type": "lead_created"},
        {"actions": [{"type": "launch_rocket", "data": {}}]},
        {"actions": []},
        {"delay_hours": -1},
    ],
)
def test_invalid_workflow_definitions_are_rejected(
    client: tuple[TestClient, Callable[[list[str]], None]],
    overrides: dict[str, object],
) -> None:
    test_client, _ = client
    response = test_client.post("/api/workflows", json=_workflow_body(**overrides))
    assert response.status_code == 422


def test_workflow_routes_require_permissions(client: tuple[TestClient, Callable[[list[str]], None]]) -> None:
    test_client, set_roles = client
    set_roles(["workflows.read"])
    assert test_client.get("/api/workflows").status_code == 200
    assert test_client.post("/api/workflows", json=_workflow_body()).status_code == 403

    set_roles([])
    assert test_client.get("/api/workflows/triggers").status_code == 403


def test_manual_run_creates_account_then_project(
    client: tuple[TestClient, Callable[[list[str]], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    contact = _create_contact(db_session)
    workflow = test_client.post(
        "/api/workflows",
        json=_workflow_body(
            trigger_type="manual",
            actions=[
                {"type": "create_customer_account", "data": {"sendWelcomeEmail": False}},
                {"type": "create_project", "data": {"title": "Install"}},
            ],
        ),
    ).json()

    response = test_client.post(
        f"/api/workflows/{workflow['id']}/run",
        json={"contactId": contact.id, "customerId": None},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert [result["action_type"] for result in body["results"]] == ["create_customer_account", "create_project"]

    users = db_session.scalars(select(CustomerUser)).all()
    assert len(users) == 1
    assert users[0].contact_id == contact.id
    projects = db_session.scalars(select(CustomerProject)).all()
    assert len(projects) == 1
    assert projects[0].title == "Install"
    assert projects[0].customer_id == users[0].id

    subjects = [message["subject"] for message in sinks.sent_messages]
    assert "Welcome to your Customer Portal" not in subjects
    assert "Update on Your Project: Install" in subjects

    run_entries = [entry for entry in audit.audit_entries if entry["action"] == "workflow.run"]
    assert run_entries[-1]["after"] == {
        "status": "completed",
        "actions_executed": ["create_customer_account", "create_project"],
    }


def test_inactive_workflow_run_returns_no_results(
    client: tuple[TestClient, Callable[[list[str]], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    contact = _create_contact(db_session)
    workflow = test_client.post("/api/workflows", json=_workflow_body(is_active=False)).json()

    response = test_client.post(f"/api/workflows/{workflow['id']}/run", json={"contact_id": contact.id})
    assert response.status_code == 200
    assert response.json() == {"success": True, "results": None}
    assert db_session.scalars(select(CustomerUser)).all() == []


def test_run_reports_action_input_errors(
    client: tuple[TestClient, Callable[[list[str]], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    contact = _create_contact(db_session, email=None)
    workflow = test_client.post("/api/workflows", json=_workflow_body()).json()

    response = test_client.post(f"/api/workflows/{workflow['id']}/run", json={"contactId": contact.id})
    assert response.status_code == 422
    assert response.json()["code"] == "workflow_run_failed"


def test_run_unknown_workflow_is_not_found(client: tuple[TestClient, Callable[[list[str]], None]]) -> None:
    test_client, _ = client
    response = test_client.post("/api/workflows/999/run", json={})
    assert response.status_code == 404


def test_create_account_endpoint_provisions_once(
    client: tuple[TestClient, Callable[[list[str]], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    contact = _create_contact(db_session)

    first = test_client.post(f"/api/contacts/{contact.id}/create-account", json={"send_welcome_email": True})
    assert first.status_code == 201
    assert first.json()["created"] is True
    assert first.json()["welcome_email_sent"] is True
    assert first.json()["customer_user"]["email"] == "jane@example.com"

    second = test_client.post(f"/api/contacts/{contact.id}/create-account")
    assert second.status_code == 201
    assert second.json()["created"] is False
    assert second.json()["customer_user"]["id"] == first.json()["customer_user"]["id"]

    welcome = [message for message in sinks.sent_messages if message["subject"] == "Welcome to your Customer Portal"]
    assert len(welcome) == 1
    db_session.refresh(contact)
    assert contact.is_customer is True
