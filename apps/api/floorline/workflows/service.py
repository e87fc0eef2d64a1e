from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from floorline import audit
from floorline.errors import EntityNotFoundError, PersistenceError
from floorline.workflows.models import Workflow
from floorline.workflows.schemas import WorkflowCreate, WorkflowUpdate


logger = logging.getLogger("floorline.workflows")


def _commit(session: Session, what: str) -> None:
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise PersistenceError(f"failed to save {what}") from exc


def workflow_snapshot(workflow: Workflow) -> dict[str, Any]:
    return {
        "id": workflow.id,
        "name": workflow.name,
        "trigger_type": workflow.trigger_type,
        "trigger_condition": workflow.trigger_condition,
        "actions": [action.get("type") for action in workflow.actions or []],
        "is_active": workflow.is_active,
        "delay_hours": workflow.delay_hours,
    }


class WorkflowService:
    def list_workflows(self, session: Session, *, trigger_type: str | None = None) -> list[Workflow]:
        stmt = select(Workflow)
        if trigger_type is not None:
            stmt = stmt.where(Workflow.trigger_type == trigger_type)
        return list(session.scalars(stmt.order_by(Workflow.id.asc())).all())

    def get_workflow(self, session: Session, workflow_id: int) -> Workflow:
        workflow = session.scalar(select(Workflow).where(Workflow.id == workflow_id))
        if workflow is None:
            raise EntityNotFoundError("workflow", workflow_id)
        return workflow

    def create_workflow(self, session: Session, dto: WorkflowCreate, *, actor_user_id: str) -> Workflow:
        workflow = Workflow(
            name=dto.name,
            description=dto.description,
            trigger_type=dto.trigger_type.value,
            trigger_condition=dto.trigger_condition,
            actions=[action.model_dump(mode="json") for action in dto.actions],
            is_active=dto.is_active,
            delay_hours=dto.delay_hours,
        )
        session.add(workflow)
        _commit(session, "workflow")
        session.refresh(workflow)

        audit.record(
            actor_user_id=actor_user_id,
            entity_type="workflow",
            entity_id=str(workflow.id),
            action="workflow.created",
            before=None,
            after=workflow_snapshot(workflow),
        )
        logger.info(
            "workflow_created",
            extra={"workflow_id": workflow.id, "workflow_name": workflow.name, "trigger_type": workflow.trigger_type},
        )
        return workflow

    def update_workflow(
        self,
        session: Session,
        workflow_id: int,
        dto: WorkflowUpdate,
        *,
        actor_user_id: str,
    ) -> Workflow:
        workflow = self.get_workflow(session, workflow_id)
        before = workflow_snapshot(workflow)

        changes = dto.model_dump(exclude_unset=True, mode="json")
        if "actions" in changes and changes["actions"] is None:
            changes.pop("actions")
        for field_name in ("name", "trigger_type", "is_active", "delay_hours"):
            if field_name in changes and changes[field_name] is None:
                changes.pop(field_name)
        for field_name, value in changes.items():
            setattr(workflow, field_name, value)

        session.add(workflow)
        _commit(session, "workflow")
        session.refresh(workflow)

        audit.record(
            actor_user_id=actor_user_id,
            entity_type="workflow",
            entity_id=str(workflow.id),
            action="workflow.updated",
            before=before,
            after=workflow_snapshot(workflow),
        )
        return workflow

    def delete_workflow(self, session: Session, workflow_id: int, *, actor_user_id: str) -> None:
        workflow = self.get_workflow(session, workflow_id)
        before = workflow_snapshot(workflow)
        session.delete(workflow)
        _commit(session, "workflow")

        audit.record(
            actor_user_id=actor_user_id,
            entity_type="workflow",
            entity_id=str(workflow_id),
            action="workflow.deleted",
            before=before,
            after=None,
        )


workflow_service = WorkflowService()
