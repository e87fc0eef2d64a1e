from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from functools import partial
from time import perf_counter
from typing import Any

from pydantic.alias_generators import to_snake
from sqlalchemy import select
from sqlalchemy.orm import Session

from floorline import audit
from floorline.context import get_workflow_depth, reset_workflow_depth, set_workflow_depth
from floorline.core.config import get_settings
from floorline.core.database import session_scope
from floorline.errors import EntityNotFoundError
from floorline.metrics import observe_workflow_action, observe_workflow_run
from floorline.otel import workflow_run_span
from floorline.workflows.actions import ActionRegistry, ActionResult, build_default_registry
from floorline.workflows.models import Workflow
from floorline.workflows.scheduler import DelayedWorkflowScheduler, workflow_scheduler


logger = logging.getLogger("floorline.workflows")

SessionScope = Callable[[], AbstractContextManager[Session]]


def normalize_keys(data: dict[str, Any] | None) -> dict[str, Any]:
    """Top-level keys to snake_case so camelCase and snake_case payloads merge onto the same names."""
    if not data:
        return {}
    return {to_snake(str(key)): value for key, value in data.items()}


@dataclass
class WorkflowRunOutcome:
    workflow_id: int
    status: str
    results: list[ActionResult] = field(default_factory=list)
    run_id: str | None = None
    error: str | None = None


class WorkflowEngine:
    def __init__(
        self,
        registry: ActionRegistry,
        scheduler: DelayedWorkflowScheduler,
        session_scope: SessionScope = session_scope,
    ) -> None:
        self.registry = registry
        self.scheduler = scheduler
        self.session_scope = session_scope

    def run_workflow(self, session: Session, workflow_id: int, event_data: dict[str, Any] | None) -> list[ActionResult] | None:
        """Run one workflow's actions in order and return the results of the actions that ran.

        Returns ``None`` for an inactive workflow. An action that raises stops the run; actions that already
        ran are not undone.
        """
        workflow = session.scalar(select(Workflow).where(Workflow.id == workflow_id))
        if workflow is None:
            raise EntityNotFoundError("workflow", workflow_id)
        if not workflow.is_active:
            logger.info("workflow_inactive", extra={"workflow_id": workflow.id, "workflow_name": workflow.name})
            return None

        workflow_key = workflow.id
        trigger_label = workflow.trigger_type
        context = normalize_keys(event_data)
        results: list[ActionResult] = []
        status = "failed"
        started = perf_counter()
        depth_token = set_workflow_depth((get_workflow_depth() or 0) + 1)
        logger.info(
            "workflow_run_started",
            extra={"workflow_id": workflow.id, "workflow_name": workflow.name, "trigger_type": workflow.trigger_type},
        )
        try:
            with workflow_run_span(workflow_key, trigger_label) as span:
                for index, definition in enumerate(workflow.actions or []):
                    action_type = definition.get("type") if isinstance(definition, dict) else None
                    action = self.registry.resolve(action_type)
                    if action is None:
                        logger.warning(
                            "workflow_action_unknown",
                            extra={"workflow_id": workflow_key, "action_type": str(action_type), "action_index": index},
                        )
                        observe_workflow_action(str(action_type), "skipped")
                        continue

                    static_data = definition.get("data") if isinstance(definition.get("data"), dict) else {}
                    merged = {**context, **normalize_keys(static_data)}
                    try:
                        result = self.registry.execute(session, action, merged)
                    except Exception as exc:
                        observe_workflow_action(action.kind.value, "failed")
                        logger.warning(
                            "workflow_action_failed",
                            extra={
                                "workflow_id": workflow_key,
                                "action_type": action.kind.value,
                                "action_index": index,
                                "error": str(exc),
                            },
                        )
                        raise
                    observe_workflow_action(action.kind.value, "succeeded" if result.success else "failed")
                    results.append(result)
                    context.update(result.context_updates)
                span.set_attribute("workflow.actions_executed", len(results))
            status = "completed"
        finally:
            reset_workflow_depth(depth_token)
            observe_workflow_run(trigger_label, status, perf_counter() - started)
            audit.record(
                actor_user_id="system",
                entity_type="workflow",
                entity_id=str(workflow_key),
                action="workflow.run",
                before=None,
                after={"status": status, "actions_executed": [result.action_type.value for result in results]},
            )

        logger.info(
            "workflow_run_completed",
            extra={"workflow_id": workflow_key, "trigger_type": trigger_label, "status": status},
        )
        return results

    def run_workflows_by_trigger(
        self,
        session: Session,
        trigger_type: str,
        event_data: dict[str, Any] | None,
        condition: str | None = None,
    ) -> list[WorkflowRunOutcome]:
        """Run or schedule every active workflow for ``trigger_type``.

        With a ``condition`` only workflows whose trigger condition equals it match. A failing workflow is logged
        and reported as ``failed`` without affecting the other matches.
        """
        stmt = select(Workflow).where(Workflow.trigger_type == trigger_type, Workflow.is_active.is_(True))
        if condition is not None:
            stmt = stmt.where(Workflow.trigger_condition == condition)
        workflows = list(session.scalars(stmt.order_by(Workflow.id.asc())).all())

        settings = get_settings()
        outcomes: list[WorkflowRunOutcome] = []
        for workflow in workflows:
            workflow_id = workflow.id
            if workflow.delay_hours > 0 and settings.workflow_delay_enabled:
                run_id = self.scheduler.schedule(
                    workflow.delay_hours * 3600,
                    partial(self._run_detached, workflow_id, dict(event_data or {})),
                )
                logger.info(
                    "workflow_scheduled",
                    extra={"workflow_id": workflow_id, "delay_hours": workflow.delay_hours, "run_id": run_id},
                )
                outcomes.append(WorkflowRunOutcome(workflow_id=workflow_id, status="scheduled", run_id=run_id))
                continue

            try:
                results = self.run_workflow(session, workflow_id, event_data)
            except Exception as exc:
                session.rollback()
                logger.exception(
                    "workflow_run_failed",
                    extra={"workflow_id": workflow_id, "trigger_type": trigger_type, "error": str(exc)},
                )
                outcomes.append(WorkflowRunOutcome(workflow_id=workflow_id, status="failed", error=str(exc)))
                continue
            outcomes.append(WorkflowRunOutcome(workflow_id=workflow_id, status="completed", results=results or []))
        return outcomes

    def _run_detached(self, workflow_id: int, event_data: dict[str, Any]) -> None:
        with self.session_scope() as session:
            self.run_workflow(session, workflow_id, event_data)


workflow_engine = WorkflowEngine(build_default_registry(), workflow_scheduler)
