from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import floorline.models  # noqa: F401
from floorline import audit, events
from floorline.core.auth import AuthUser, get_current_user
from floorline.core.config import get_settings
from floorline.core.database import Base, get_db
from floorline.main import app
from floorline.notifications import sinks


ADMIN = AuthUser(sub="user-1", roles=["crm.manage", "workflows.read", "workflows.manage"])


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
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    sinks.sent_messages.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    sinks.sent_messages.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: ADMIN
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_contact(client: TestClient, correlation_id: str) -> dict:
    response = client.post(
        "/api/contacts",
        json={"name": "Corr Contact", "email": "corr@example.com"},
        headers={"X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 201
    return response.json()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get("/api/contacts/9999")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["code"] == "crm_contact_get_failed"
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get("/api/contacts/9999", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_malformed_correlation_id_is_replaced(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "not allowed; spaces"})
    assert response.status_code == 200
    assert response.headers.get("x-correlation-id") != "not allowed; spaces"
    assert len(response.headers["x-correlation-id"]) == 36


def test_audit_uses_request_correlation_id(client: TestClient) -> None:
    _create_contact(client, "corr-audit-1")

    contact_audits = [entry for entry in audit.audit_entries if entry.get("entity_type") == "crm.contact"]
    assert contact_audits
    assert contact_audits[-1]["correlation_id"] == "corr-audit-1"


def test_event_envelope_includes_correlation_id(client: TestClient) -> None:
    contact = _create_contact(client, "corr-event-1")

    response = client.post(
        f"/api/contacts/{contact['id']}/lead-stage",
        json={"lead_stage": "contacted"},
        headers={"X-Correlation-Id": "corr-event-1"},
    )
    assert response.status_code == 200

    changed = [item for item in events.published_events if item.get("event_type") == "crm.contact.lead_stage_changed"]
    assert changed
    assert changed[-1]["correlation_id"] == "corr-event-1"
    assert changed[-1]["event_id"]


def test_triggered_workflow_runs_under_request_correlation_id(client: TestClient) -> None:
    workflow = client.post(
        "/api/workflows",
        json={
            "name": "Qualified follow-up",
            "trigger_type": "lead_stage_change",
            "trigger_condition": "qualified",
            "actions": [{"type": "create_task", "data": {"title": "Call back"}}],
        },
    )
    assert workflow.status_code == 201
    contact = _create_contact(client, "corr-workflow-1")

    response = client.post(
        f"/api/contacts/{contact['id']}/lead-stage",
        json={"lead_stage": "qualified"},
        headers={"X-Correlation-Id": "corr-workflow-1"},
    )
    assert response.status_code == 200

    runs = [entry for entry in audit.audit_entries if entry["action"] == "workflow.run"]
    assert len(runs) == 1
    assert runs[0]["entity_id"] == str(workflow.json()["id"])
    assert runs[0]["correlation_id"] == "corr-workflow-1"
    assert runs[0]["after"] == {"status": "completed", "actions_executed": ["create_task"]}
