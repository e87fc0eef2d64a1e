from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from floorline import audit, events
from floorline.core.config import get_settings
from floorline.crm.models import Contact
from floorline.errors import ActionInputError, EntityNotFoundError, PersistenceError
from floorline.notifications.service import NotificationService, notification_service
from floorline.notifications.sinks import NotificationResult
from floorline.portal.models import CustomerProject, CustomerUser
from floorline.portal.passwords import generate_temporary_password, hash_password, verify_password


logger = logging.getLogger("floorline.portal")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProvisionedAccount:
    user: CustomerUser
    created: bool
    welcome_email: NotificationResult | None = None


class CustomerAccountService:
    def __init__(self, notifications: NotificationService | None = None) -> None:
        self.notifications = notifications or notification_service

    def provision_customer_account(
        self,
        session: Session,
        contact_id: int,
        *,
        email: str | None = None,
        name: str | None = None,
        phone: str | None = None,
        send_welcome_email: bool = True,
        actor_user_id: str = "system",
    ) -> ProvisionedAccount:
        """Return the portal account linked to ``contact_id``, creating it on first use.

        A new account gets a random temporary password. Unless suppressed, the welcome
        email carries that password in plain text.
        """
        contact = session.scalar(select(Contact).where(Contact.id == contact_id))
        if contact is None:
            raise EntityNotFoundError("contact", contact_id)

        existing = session.scalar(
            select(CustomerUser).where(CustomerUser.contact_id == contact_id).order_by(CustomerUser.id.asc())
        )
        if existing is not None:
            return ProvisionedAccount(user=existing, created=False)

        resolved_email = (email or contact.email or "").strip()
        if not resolved_email:
            raise ActionInputError(
                "An email address is required to create a customer account",
                details={"contact_id": contact_id},
            )

        same_email = self._find_by_login(session, resolved_email)
        if same_email is not None:
            if same_email.contact_id is None:
                same_email.contact_id = contact.id
                session.add(same_email)
                self._commit(session)
            return ProvisionedAccount(user=same_email, created=False)

        settings = get_settings()
        password = generate_temporary_password(settings.temporary_password_length)
        user = CustomerUser(
            email=resolved_email,
            username=resolved_email.lower(),
            password_hash=hash_password(password),
            name=(name or contact.name).strip(),
            phone=phone or contact.phone,
            contact_id=contact.id,
        )
        contact.is_customer = True
        session.add(user)
        session.add(contact)
        self._commit(session)
        session.refresh(user)

        audit.record(
            actor_user_id=actor_user_id,
            entity_type="portal.customer_user",
            entity_id=str(user.id),
            action="customer_user.created",
            before=None,
            after={"email": user.email, "contact_id": contact.id},
        )
        events.publish(
            {
                "event_type": "portal.customer_user.created",
                "customer_user_id": user.id,
                "contact_id": contact.id,
            }
        )
        logger.info("customer_account_created", extra={"entity_type": "customer_user", "entity_id": user.id})

        welcome: NotificationResult | None = None
        if send_welcome_email:
            welcome = self.notifications.send_customer_portal_welcome(
                user.email,
                name=user.name,
                email=user.email,
                password=password,
            )
        return ProvisionedAccount(user=user, created=True, welcome_email=welcome)

    def get_customer_user(self, session: Session, customer_user_id: int) -> CustomerUser:
        user = session.scalar(select(CustomerUser).where(CustomerUser.id == customer_user_id))
        if user is None:
            raise EntityNotFoundError("customer_user", customer_user_id)
        return user

    def reset_password(self, session: Session, customer_user_id: int, *, actor_user_id: str) -> NotificationResult:
        user = self.get_customer_user(session, customer_user_id)
        password = generate_temporary_password(get_settings().temporary_password_length)
        user.password_hash = hash_password(password)
        session.add(user)
        self._commit(session)

        audit.record(
            actor_user_id=actor_user_id,
            entity_type="portal.customer_user",
            entity_id=str(user.id),
            action="customer_user.password_reset",
            before=None,
            after=None,
        )
        return self.notifications.send_customer_portal_credentials(
            user.email,
            name=user.name,
            email=user.email,
            password=password,
        )

    def authenticate(self, session: Session, login: str, password: str) -> CustomerUser | None:
        user = self._find_by_login(session, login)
        if user is None or not user.is_active or not verify_password(password, user.password_hash):
            return None
        user.last_login_at = utcnow()
        session.add(user)
        self._commit(session)
        session.refresh(user)
        return user

    def _find_by_login(self, session: Session, login: str) -> CustomerUser | None:
        normalized = login.strip().lower()
        return session.scalar(
            select(CustomerUser).where(
                or_(func.lower(CustomerUser.email) == normalized, CustomerUser.username == normalized)
            )
        )

    def _commit(self, session: Session) -> None:
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceError("failed to save customer account") from exc


class ProjectService:
    def __init__(self, notifications: NotificationService | None = None) -> None:
        self.notifications = notifications or notification_service

    def create_project(
        self,
        session: Session,
        *,
        customer_id: int,
        title: str,
        contact_id: int | None = None,
        description: str | None = None,
        status: str = "pending",
        flooring_type: str | None = None,
        square_footage: int | None = None,
        estimated_cost: Decimal | None = None,
        start_date: date | None = None,
        estimated_completion_date: date | None = None,
        notify_customer: bool = True,
        actor_user_id: str = "system",
    ) -> CustomerProject:
        project = CustomerProject(
            customer_id=customer_id,
            contact_id=contact_id,
            title=title,
            description=description,
            status=status,
            flooring_type=flooring_type,
            square_footage=square_footage,
            estimated_cost=estimated_cost,
            start_date=start_date,
            estimated_completion_date=estimated_completion_date,
            progress_updates=[],
            documents=[],
        )
        session.add(project)
        self._commit(session)
        session.refresh(project)

        audit.record(
            actor_user_id=actor_user_id,
            entity_type="portal.customer_project",
            entity_id=str(project.id),
            action="project.created",
            before=None,
            after={"customer_id": customer_id, "title": title, "status": status},
        )

        if notify_customer:
            self._notify_customer(
                session,
                project,
                lambda user: self.notifications.send_project_update(
                    user.email,
                    name=user.name,
                    project_title=project.title,
                    update_message=(
                        f'Your new project "{project.title}" has been created in your customer portal. '
                        "Log in to view details."
                    ),
                ),
            )
        return project

    def get_project(self, session: Session, project_id: int) -> CustomerProject:
        project = session.scalar(select(CustomerProject).where(CustomerProject.id == project_id))
        if project is None:
            raise EntityNotFoundError("project", project_id)
        return project

    def list_projects_for_customer(self, session: Session, customer_id: int) -> list[CustomerProject]:
        stmt = select(CustomerProject).where(CustomerProject.customer_id == customer_id)
        return list(session.scalars(stmt.order_by(CustomerProject.created_at.desc())).all())

    def update_status(self, session: Session, project_id: int, status: str, *, actor_user_id: str) -> CustomerProject:
        project = self.get_project(session, project_id)
        before = project.status
        project.status = status
        session.add(project)
        self._commit(session)
        session.refresh(project)
        audit.record(
            actor_user_id=actor_user_id,
            entity_type="portal.customer_project",
            entity_id=str(project.id),
            action="project.status_changed",
            before={"status": before},
            after={"status": status},
        )
        return project

    def add_progress_update(
        self,
        session: Session,
        project_id: int,
        *,
        status: str,
        note: str,
        occurred_at: datetime | None = None,
        images: list[str] | None = None,
        notify_customer: bool = True,
        actor_user_id: str = "system",
    ) -> CustomerProject:
        project = self.get_project(session, project_id)
        entry: dict[str, Any] = {
            "date": (occurred_at or utcnow()).isoformat(),
            "status": status,
            "note": note,
            "images": list(images or []),
        }
        # Reassign rather than mutate so earlier entries stay untouched and the change is tracked.
        project.progress_updates = [*(project.progress_updates or []), entry]
        project.status = status
        session.add(project)
        self._commit(session)
        session.refresh(project)

        audit.record(
            actor_user_id=actor_user_id,
            entity_type="portal.customer_project",
            entity_id=str(project.id),
            action="project.progress_added",
            before=None,
            after=entry,
        )
        if notify_customer:
            self._notify_customer(
                session,
                project,
                lambda user: self.notifications.send_project_update(
                    user.email,
                    name=user.name,
                    project_title=project.title,
                    update_message=note,
                ),
            )
        return project

    def add_document(
        self,
        session: Session,
        project_id: int,
        *,
        name: str,
        url: str,
        document_type: str,
        notify_customer: bool = True,
        actor_user_id: str = "system",
    ) -> CustomerProject:
        project = self.get_project(session, project_id)
        entry = {"name": name, "url": url, "type": document_type, "uploadDate": utcnow().isoformat()}
        project.documents = [*(project.documents or []), entry]
        session.add(project)
        self._commit(session)
        session.refresh(project)

        audit.record(
            actor_user_id=actor_user_id,
            entity_type="portal.customer_project",
            entity_id=str(project.id),
            action="project.document_added",
            before=None,
            after=entry,
        )
        if notify_customer:
            self._notify_customer(
                session,
                project,
                lambda user: self.notifications.send_new_document_notification(
                    user.email,
                    name=user.name,
                    project_title=project.title,
                    document_name=name,
                    document_type=document_type,
                ),
            )
        return project

    def _notify_customer(self, session: Session, project: CustomerProject, send) -> NotificationResult | None:  # type: ignore[no-untyped-def]
        customer = session.scalar(select(CustomerUser).where(CustomerUser.id == project.customer_id))
        if customer is None:
            return None
        return send(customer)

    def _commit(self, session: Session) -> None:
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceError("failed to save customer project") from exc


customer_account_service = CustomerAccountService()
project_service = ProjectService()
