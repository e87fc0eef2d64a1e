from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from floorline import audit
from floorline.context import bound_context, get_workflow_depth
from floorline.core.config import get_settings
from floorline.core.database import session_scope
from floorline.core.events import InProcessEventBus, InternalEvent
from floorline.crm.models import Appointment, Contact, ContactSubmission
from floorline.crm.schemas import AppointmentRead, ContactRead, ContactSubmissionRead
from floorline.metrics import observe_workflow_guardrail_block
from floorline.sales.models import Contract, Estimate
from floorline.sales.schemas import ContractRead, EstimateRead
from floorline.workflows.engine import SessionScope, WorkflowEngine, WorkflowRunOutcome, workflow_engine


logger = logging.getLogger("floorline.workflows.events")


def _contact_fields(session: Session, contact_id: int | None) -> dict[str, Any]:
    if contact_id is None:
        return {}
    contact = session.scalar(select(Contact).where(Contact.id == contact_id))
    if contact is None:
        return {}
    return {"email": contact.email, "name": contact.name, "phone": contact.phone}


class WorkflowEventEmitter:
    """Turns committed domain events into workflow trigger runs."""

    event_triggers = {
        "sales.estimate.approved": "estimate_approval",
        "sales.contract.signed": "contract_signed",
        "crm.form.submitted": "form_submission",
        "crm.contact.lead_stage_changed": "lead_stage_change",
        "crm.appointment.scheduled": "appointment",
    }

    def __init__(self, engine: WorkflowEngine, session_scope: SessionScope = session_scope) -> None:
        self.engine = engine
        self.session_scope = session_scope

    def register(self, bus: InProcessEventBus) -> None:
        for event_name in self.event_triggers:
            bus.subscribe(event_name, self.dispatch)

    def unregister(self, bus: InProcessEventBus) -> None:
        for event_name in self.event_triggers:
            bus.unsubscribe(event_name, self.dispatch)

    def dispatch(self, event: InternalEvent) -> None:
        if not isinstance(event.payload, dict) or not get_settings().workflow_events_enabled:
            return
        envelope: dict[str, Any] = event.payload
        if self._blocked_by_depth(event.name, envelope):
            return

        correlation_id = envelope.get("correlation_id") if isinstance(envelope.get("correlation_id"), str) else None
        try:
            with bound_context(correlation_id, get_workflow_depth()), self.session_scope() as session:
                if event.name == "sales.estimate.approved":
                    self.on_estimate_approved(session, int(envelope["estimate_id"]))
                elif event.name == "sales.contract.signed":
                    self.on_contract_signed(session, int(envelope["contract_id"]))
                elif event.name == "crm.form.submitted":
                    self.on_form_submitted(session, int(envelope["submission_id"]))
                elif event.name == "crm.contact.lead_stage_changed":
                    self.on_lead_stage_changed(
                        session,
                        int(envelope["contact_id"]),
                        str(envelope["new_stage"]),
                        envelope.get("old_stage"),
                    )
                elif event.name == "crm.appointment.scheduled":
                    self.on_appointment_scheduled(session, int(envelope["appointment_id"]))
        except Exception as exc:
            logger.exception("workflow_event_failed", extra={"event_name": event.name, "error": str(exc)[:500]})

    def on_estimate_approved(self, session: Session, estimate_id: int) -> list[WorkflowRunOutcome]:
        estimate = session.scalar(select(Estimate).where(Estimate.id == estimate_id))
        if estimate is None:
            return []
        data = {
            **_contact_fields(session, estimate.contact_id),
            "estimate_id": estimate.id,
            "estimate": EstimateRead.model_validate(estimate).model_dump(mode="json"),
            "contact_id": estimate.contact_id,
            "customer_id": estimate.customer_user_id,
            "customer_user_id": estimate.customer_user_id,
        }
        return self.engine.run_workflows_by_trigger(session, "estimate_approval", data)

    def on_contract_signed(self, session: Session, contract_id: int) -> list[WorkflowRunOutcome]:
        contract = session.scalar(select(Contract).where(Contract.id == contract_id))
        if contract is None:
            return []
        data = {
            **_contact_fields(session, contract.contact_id),
            "contract_id": contract.id,
            "contract": ContractRead.model_validate(contract).model_dump(mode="json"),
            "contact_id": contract.contact_id,
            "customer_id": contract.customer_user_id,
            "customer_user_id": contract.customer_user_id,
            "project_id": contract.project_id,
        }
        return self.engine.run_workflows_by_trigger(session, "contract_signed", data)

    def on_form_submitted(self, session: Session, submission_id: int) -> list[WorkflowRunOutcome]:
        submission = session.scalar(select(ContactSubmission).where(ContactSubmission.id == submission_id))
        if submission is None:
            return []
        data = {
            "submission_id": submission.id,
            "submission": ContactSubmissionRead.model_validate(submission).model_dump(mode="json"),
            "contact_id": submission.contact_id,
            "email": submission.email,
            "name": submission.name,
            "phone": submission.phone,
        }
        return self.engine.run_workflows_by_trigger(session, "form_submission", data)

    def on_lead_stage_changed(
        self,
        session: Session,
        contact_id: int,
        new_stage: str,
        old_stage: str | None,
    ) -> list[WorkflowRunOutcome]:
        contact = session.scalar(select(Contact).where(Contact.id == contact_id))
        if contact is None:
            return []
        data = {
            "contact_id": contact.id,
            "contact": ContactRead.model_validate(contact).model_dump(mode="json"),
            "new_stage": new_stage,
            "old_stage": old_stage,
            "email": contact.email,
            "name": contact.name,
            "phone": contact.phone,
        }
        return self.engine.run_workflows_by_trigger(session, "lead_stage_change", data, condition=new_stage)

    def on_appointment_scheduled(self, session: Session, appointment_id: int) -> list[WorkflowRunOutcome]:
        appointment = session.scalar(select(Appointment).where(Appointment.id == appointment_id))
        if appointment is None:
            return []
        data = {
            **_contact_fields(session, appointment.contact_id),
            "appointment_id": appointment.id,
            "appointment": AppointmentRead.model_validate(appointment).model_dump(mode="json"),
            "contact_id": appointment.contact_id,
        }
        return self.engine.run_workflows_by_trigger(session, "appointment", data)

    def _blocked_by_depth(self, event_name: str, envelope: dict[str, Any]) -> bool:
        settings = get_settings()
        meta = envelope.get("meta") if isinstance(envelope.get("meta"), dict) else {}
        depth_raw = meta.get("workflow_depth", get_workflow_depth() or 0)
        try:
            workflow_depth = int(depth_raw)
        except (TypeError, ValueError):
            workflow_depth = 0
        if workflow_depth < settings.workflow_max_depth:
            return False

        logger.warning(
            "workflow_guardrail_blocked",
            extra={
                "reason": "MAX_DEPTH",
                "event_name": event_name,
                "workflow_depth": workflow_depth,
                "max_depth": settings.workflow_max_depth,
            },
        )
        observe_workflow_guardrail_block("MAX_DEPTH")
        audit.record(
            actor_user_id="system",
            entity_type="workflow",
            entity_id=str(envelope.get("event_id") or event_name),
            action="workflow.blocked",
            before=None,
            after={
                "reason": "MAX_DEPTH",
                "event_type": event_name,
                "workflow_depth": workflow_depth,
                "max_depth": settings.workflow_max_depth,
            },
            correlation_id=envelope.get("correlation_id") if isinstance(envelope.get("correlation_id"), str) else None,
        )
        return True


workflow_event_emitter = WorkflowEventEmitter(workflow_engine)
