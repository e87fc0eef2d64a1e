from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from floorline import audit, events
from floorline.crm.models import Appointment, Contact, ContactSubmission, Task
from floorline.crm.schemas import AppointmentCreate, ContactCreate, ContactSubmissionCreate
from floorline.errors import EntityNotFoundError, PersistenceError


logger = logging.getLogger("floorline.crm")


def _commit(session: Session, what: str) -> None:
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise PersistenceError(f"failed to save {what}") from exc


def contact_snapshot(contact: Contact) -> dict[str, object]:
    return {
        "id": contact.id,
        "name": contact.name,
        "email": contact.email,
        "phone": contact.phone,
        "lead_stage": contact.lead_stage,
        "source": contact.source,
        "is_customer": contact.is_customer,
    }


class ContactService:
    def create_contact(self, session: Session, dto: ContactCreate, *, actor_user_id: str) -> Contact:
        contact = Contact(**dto.model_dump())
        session.add(contact)
        _commit(session, "contact")
        session.refresh(contact)
        audit.record(
            actor_user_id=actor_user_id,
            entity_type="crm.contact",
            entity_id=str(contact.id),
            action="contact.created",
            before=None,
            after=contact_snapshot(contact),
        )
        return contact

    def get_contact(self, session: Session, contact_id: int) -> Contact:
        contact = session.scalar(select(Contact).where(Contact.id == contact_id))
        if contact is None:
            raise EntityNotFoundError("contact", contact_id)
        return contact

    def list_contacts(self, session: Session, *, lead_stage: str | None = None) -> list[Contact]:
        stmt = select(Contact)
        if lead_stage is not None:
            stmt = stmt.where(Contact.lead_stage == lead_stage)
        return list(session.scalars(stmt.order_by(Contact.id.asc())).all())

    def change_lead_stage(self, session: Session, contact_id: int, new_stage: str, *, actor_user_id: str) -> Contact:
        contact = self.get_contact(session, contact_id)
        old_stage = contact.lead_stage
        if old_stage == new_stage:
            return contact

        contact.lead_stage = new_stage
        session.add(contact)
        _commit(session, "contact")
        session.refresh(contact)

        audit.record(
            actor_user_id=actor_user_id,
            entity_type="crm.contact",
            entity_id=str(contact.id),
            action="contact.lead_stage_changed",
            before={"lead_stage": old_stage},
            after={"lead_stage": new_stage},
        )
        events.publish(
            {
                "event_type": "crm.contact.lead_stage_changed",
                "contact_id": contact.id,
                "old_stage": old_stage,
                "new_stage": new_stage,
            }
        )
        return contact

    def submit_form(self, session: Session, dto: ContactSubmissionCreate) -> ContactSubmission:
        """Store a public contact-form submission, attaching it to a contact matched by email."""
        email = dto.email.strip()
        contact = session.scalar(
            select(Contact).where(func.lower(Contact.email) == email.lower()).order_by(Contact.id.asc())
        )
        if contact is None:
            contact = Contact(name=dto.name, email=email, phone=dto.phone, lead_stage="new", source="website")
            session.add(contact)
            session.flush()

        submission = ContactSubmission(
            contact_id=contact.id,
            name=dto.name,
            email=email,
            phone=dto.phone,
            service=dto.service,
            message=dto.message,
        )
        session.add(submission)
        _commit(session, "contact submission")
        session.refresh(submission)

        logger.info("contact_form_submitted", extra={"entity_type": "contact_submission", "entity_id": submission.id})
        events.publish(
            {
                "event_type": "crm.form.submitted",
                "submission_id": submission.id,
                "contact_id": submission.contact_id,
            }
        )
        return submission

    def schedule_appointment(self, session: Session, dto: AppointmentCreate, *, actor_user_id: str) -> Appointment:
        self.get_contact(session, dto.contact_id)
        appointment = Appointment(**dto.model_dump())
        session.add(appointment)
        _commit(session, "appointment")
        session.refresh(appointment)

        audit.record(
            actor_user_id=actor_user_id,
            entity_type="crm.appointment",
            entity_id=str(appointment.id),
            action="appointment.scheduled",
            before=None,
            after={"contact_id": appointment.contact_id, "scheduled_at": appointment.scheduled_at.isoformat()},
        )
        events.publish(
            {
                "event_type": "crm.appointment.scheduled",
                "appointment_id": appointment.id,
                "contact_id": appointment.contact_id,
            }
        )
        return appointment


class TaskService:
    def create_task(
        self,
        session: Session,
        *,
        title: str,
        contact_id: int | None = None,
        description: str | None = None,
        due_at: datetime | None = None,
        assigned_to: str | None = None,
    ) -> Task:
        if contact_id is not None and session.scalar(select(Contact.id).where(Contact.id == contact_id)) is None:
            raise EntityNotFoundError("contact", contact_id)
        task = Task(
            contact_id=contact_id,
            title=title,
            description=description,
            due_at=due_at,
            assigned_to=assigned_to,
        )
        session.add(task)
        _commit(session, "task")
        session.refresh(task)
        return task

    def list_tasks(self, session: Session, *, contact_id: int | None = None) -> list[Task]:
        stmt = select(Task)
        if contact_id is not None:
            stmt = stmt.where(Task.contact_id == contact_id)
        return list(session.scalars(stmt.order_by(Task.id.asc())).all())


contact_service = ContactService()
task_service = TaskService()
