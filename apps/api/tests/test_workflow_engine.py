from __future__ import annotations

from collections.abc import Callable, Generator
from typing import Any

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import floorline.models  # noqa: F401
from floorline import audit, events
from floorline.context import get_workflow_depth
from floorline.core.config import get_settings
from floorline.core.database import Base
from floorline.crm.models import Contact, Task
from floorline.errors import ActionInputError, EntityNotFoundError
from floorline.notifications import sinks
from floorline.workflows.actions import ActionKind, ActionRegistry, ActionResult, CreateTaskInput, build_default_registry
from floorline.workflows.engine import WorkflowEngine, normalize_keys
from floorline.workflows.models import Workflow


class RecordingScheduler:
    def __init__(self) -> None:
        self.scheduled: list[tuple[float, Callable[[], None]]] = []

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> str:
        self.scheduled.append((delay_seconds, callback))
        return f"run-{len(self.scheduled)}"


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
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest.fixture()
def engine(db_session: Session, scheduler: RecordingScheduler) -> WorkflowEngine:
    class _Scope:
        def __enter__(self) -> Session:
            return db_session

        def __exit__(self, *exc_info: object) -> None:
            return None

    return WorkflowEngine(build_default_registry(), scheduler, session_scope=_Scope)  # type: ignore[arg-type]


def _add_workflow(db_session: Session, **fields: Any) -> Workflow:
    values: dict[str, Any] = {
        "name": "wf",
        "trigger_type": "manual",
        "actions": [],
        "is_active": True,
        "delay_hours": 0,
    }
    values.update(fields)
    workflow = Workflow(**values)
    db_session.add(workflow)
    db_session.commit()
    db_session.refresh(workflow)
    return workflow


def _add_contact(db_session: Session, **fields: Any) -> Contact:
    values: dict[str, Any] = {"name": "Sam Floor", "email": "sam@example.com", "phone": "555-0111"}
    values.update(fields)
    contact = Contact(**values)
    db_session.add(contact)
    db_session.commit()
    db_session.refresh(contact)
    return contact


def test_normalize_keys_converts_camel_case_top_level_only() -> None:
    normalized = normalize_keys({"contactId": 7, "customer_id": None, "variables": {"firstName": "Ana"}})
    assert normalized == {"contact_id": 7, "customer_id": None, "variables": {"firstName": "Ana"}}
    assert normalize_keys(None) == {}


def test_static_action_data_wins_over_event_data(db_session: Session, engine: WorkflowEngine) -> None:
    contact = _add_contact(db_session)
    workflow = _add_workflow(
        db_session,
        actions=[{"type": "create_task", "data": {"title": "Call back", "contactId": contact.id}}],
    )

    results = engine.run_workflow(db_session, workflow.id, {"title": "From event", "contact_id": 999})

    assert results is not None
    assert [result.action_type for result in results] == [ActionKind.CREATE_TASK]
    task = db_session.scalars(select(Task)).one()
    assert task.title == "Call back"
    assert task.contact_id == contact.id


def test_inactive_workflow_has_no_side_effects(db_session: Session, engine: WorkflowEngine) -> None:
    workflow = _add_workflow(
        db_session,
        is_active=False,
        actions=[{"type": "send_email", "data": {"customSubject": "Hi", "customBody": "Hello"}}],
    )

    assert engine.run_workflow(db_session, workflow.id, {"email": "x@example.com"}) is None
    assert sinks.sent_messages == []
    assert audit.audit_entries == []


def test_unknown_workflow_raises_not_found(db_session: Session, engine: WorkflowEngine) -> None:
    with pytest.raises(EntityNotFoundError):
        engine.run_workflow(db_session, 404, {})


def test_unknown_action_type_is_skipped(db_session: Session, engine: WorkflowEngine) -> None:
    workflow = _add_workflow(
        db_session,
        actions=[
            {"type": "send_fax", "data": {}},
            {"type": "send_email", "data": {"customSubject": "Hello {{name}}", "customBody": "Hi {{name}}"}},
        ],
    )

    results = engine.run_workflow(
        db_session,
        workflow.id,
        {"email": "ana@example.com", "variables": {"name": "Ana"}},
    )

    assert results is not None
    assert [result.action_type for result in results] == [ActionKind.SEND_EMAIL]
    assert sinks.sent_messages[0]["to"] == "ana@example.com"
    assert sinks.sent_messages[0]["body"] == "Hi Ana"


def test_earlier_action_outputs_feed_later_actions(db_session: Session, engine: WorkflowEngine) -> None:
    contact = _add_contact(db_session)
    workflow = _add_workflow(
        db_session,
        actions=[
            {"type": "create_customer_account", "data": {"sendWelcomeEmail": False}},
            {"type": "create_project", "data": {"title": "Install", "notifyCustomer": False}},
        ],
    )

    results = engine.run_workflow(db_session, workflow.id, {"contactId": contact.id, "customerId": None})

    assert results is not None
    customer_id = results[0].output["customer_user_id"]
    assert results[1].output["customer_id"] == customer_id
    assert results[1].output["title"] == "Install"


def test_failing_action_stops_run_without_undoing_earlier_actions(
    db_session: Session,
    engine: WorkflowEngine,
) -> None:
    contact = _add_contact(db_session)
    workflow = _add_workflow(
        db_session,
        actions=[
            {"type": "create_task", "data": {"title": "First"}},
            {"type": "send_email", "data": {}},
            {"type": "create_task", "data": {"title": "Never"}},
        ],
    )

    with pytest.raises(ActionInputError):
        engine.run_workflow(db_session, workflow.id, {"contact_id": contact.id, "email": "sam@example.com"})

    titles = [task.title for task in db_session.scalars(select(Task)).all()]
    assert titles == ["First"]
    run_entry = next(entry for entry in audit.audit_entries if entry["action"] == "workflow.run")
    assert run_entry["after"] == {"status": "failed", "actions_executed": ["create_task"]}


def test_workflow_depth_is_raised_while_actions_run(db_session: Session, scheduler: RecordingScheduler) -> None:
    seen: list[int | None] = []

    def probe(session: Session, payload: CreateTaskInput) -> ActionResult:
        seen.append(get_workflow_depth())
        return ActionResult(action_type=ActionKind.CREATE_TASK, success=True)

    registry = ActionRegistry()
    registry.register(ActionKind.CREATE_TASK, probe, description="probe", input_model=CreateTaskInput)
    engine = WorkflowEngine(registry, scheduler)  # type: ignore[arg-type]
    workflow = _add_workflow(db_session, actions=[{"type": "create_task", "data": {"title": "probe"}}])

    engine.run_workflow(db_session, workflow.id, {})

    assert seen == [1]
    assert get_workflow_depth() is None


def test_run_by_trigger_matches_condition_and_isolates_failures(
    db_session: Session,
    engine: WorkflowEngine,
) -> None:
    contact = _add_contact(db_session)
    broken = _add_workflow(
        db_session,
        trigger_type="lead_stage_change",
        trigger_condition="qualified",
        actions=[{"type": "send_email", "data": {}}],
    )
    healthy = _add_workflow(
        db_session,
        trigger_type="lead_stage_change",
        trigger_condition="qualified",
        actions=[{"type": "create_task", "data": {"title": "Schedule measure"}}],
    )
    _add_workflow(
        db_session,
        trigger_type="lead_stage_change",
        trigger_condition="lost",
        actions=[{"type": "create_task", "data": {"title": "Wrong stage"}}],
    )
    _add_workflow(
        db_session,
        trigger_type="lead_stage_change",
        trigger_condition="qualified",
        is_active=False,
        actions=[{"type": "create_task", "data": {"title": "Inactive"}}],
    )

    outcomes = engine.run_workflows_by_trigger(
        db_session,
        "lead_stage_change",
        {"contact_id": contact.id, "email": "sam@example.com"},
        condition="qualified",
    )

    assert [(outcome.workflow_id, outcome.status) for outcome in outcomes] == [
        (broken.id, "failed"),
        (healthy.id, "completed"),
    ]
    assert [task.title for task in db_session.scalars(select(Task)).all()] == ["Schedule measure"]


def test_delayed_workflows_are_scheduled(
    db_session: Session,
    engine: WorkflowEngine,
    scheduler: RecordingScheduler,
) -> None:
    contact = _add_contact(db_session)
    workflow = _add_workflow(
        db_session,
        trigger_type="form_submission",
        delay_hours=2,
        actions=[{"type": "create_task", "data": {"title": "Follow up"}}],
    )

    outcomes = engine.run_workflows_by_trigger(db_session, "form_submission", {"contact_id": contact.id})

    assert outcomes[0].workflow_id == workflow.id
    assert outcomes[0].status == "scheduled"
    assert outcomes[0].run_id == "run-1"
    assert db_session.scalars(select(Task)).all() == []

    delay_seconds, callback = scheduler.scheduled[0]
    assert delay_seconds == 7200
    callback()
    assert [task.title for task in db_session.scalars(select(Task)).all()] == ["Follow up"]


def test_delays_run_inline_when_disabled(
    db_session: Session,
    engine: WorkflowEngine,
    scheduler: RecordingScheduler,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("WORKFLOW_DELAY_ENABLED", "false")
    get_settings.cache_clear()
    _add_workflow(
        db_session,
        trigger_type="form_submission",
        delay_hours=24,
        actions=[{"type": "create_task", "data": {"title": "Immediate"}}],
    )

    outcomes = engine.run_workflows_by_trigger(db_session, "form_submission", {})

    assert outcomes[0].status == "completed"
    assert scheduler.scheduled == []
    assert [task.title for task in db_session.scalars(select(Task)).all()] == ["Immediate"]
