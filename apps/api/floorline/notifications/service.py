from __future__ import annotations

import logging
import re
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, select_autoescape
from sqlalchemy import select
from sqlalchemy.orm import Session

from floorline.core.config import get_settings
from floorline.metrics import observe_notification
from floorline.notifications.models import EmailTemplate, SmsTemplate
from floorline.notifications.sinks import NotificationResult, NotificationSink, build_notification_sink


logger = logging.getLogger("floorline.notifications")

_TOKEN_RE = re.compile(r"\{\{\s*([A-Za-z0-9_.]+)\s*\}\}")

_templates = Environment(
    loader=FileSystemLoader(str(Path(__file__).parent / "templates")),
    autoescape=select_autoescape(["html"]),
)


def substitute_tokens(text: str, variables: dict[str, Any]) -> str:
    """Replace ``{{key}}`` tokens with values from ``variables``; unknown keys stay literal."""

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in variables or variables[key] is None:
            return match.group(0)
        return str(variables[key])

    return _TOKEN_RE.sub(_replace, text)


class NotificationService:
    def __init__(self, sink: NotificationSink | None = None) -> None:
        self._sink = sink

    @property
    def sink(self) -> NotificationSink:
        if self._sink is not None:
            return self._sink
        return build_notification_sink(get_settings())

    def get_email_template(self, session: Session, template_id: int) -> EmailTemplate | None:
        return session.scalar(select(EmailTemplate).where(EmailTemplate.id == template_id))

    def get_sms_template(self, session: Session, template_id: int) -> SmsTemplate | None:
        return session.scalar(select(SmsTemplate).where(SmsTemplate.id == template_id))

    def send_custom_email(self, to: str, subject: str, html: str) -> NotificationResult:
        return self._deliver("email", to, subject, html)

    def send_sms(self, to: str, body: str) -> NotificationResult:
        return self._deliver("sms", to, None, body)

    def send_customer_portal_welcome(self, to: str, *, name: str, email: str, password: str) -> NotificationResult:
        html = self._render(
            "customer_portal_welcome.html",
            name=name,
            email=email,
            password=password,
            login_url=self._portal_url("/customer/login"),
        )
        return self._deliver("email", to, "Welcome to your Customer Portal", html)

    def send_customer_portal_credentials(self, to: str, *, name: str, email: str, password: str) -> NotificationResult:
        html = self._render(
            "customer_portal_credentials.html",
            name=name,
            email=email,
            password=password,
            login_url=self._portal_url("/customer/login"),
        )
        return self._deliver("email", to, "Your Customer Portal Credentials", html)

    def send_project_update(self, to: str, *, name: str, project_title: str, update_message: str) -> NotificationResult:
        html = self._render(
            "project_update.html",
            name=name,
            project_title=project_title,
            update_message=update_message,
            login_url=self._portal_url("/customer/projects"),
        )
        return self._deliver("email", to, f"Update on Your Project: {project_title}", html)

    def send_new_document_notification(
        self,
        to: str,
        *,
        name: str,
        project_title: str,
        document_name: str,
        document_type: str,
    ) -> NotificationResult:
        html = self._render(
            "new_document.html",
            name=name,
            project_title=project_title,
            document_name=document_name,
            document_type=document_type,
            login_url=self._portal_url("/customer/projects"),
        )
        return self._deliver("email", to, f"New Document Available: {project_title}", html)

    def send_document_ready(
        self,
        to: str,
        *,
        name: str,
        document_kind: str,
        document_number: str,
        title: str,
        amount: Decimal | None,
        view_path: str,
    ) -> NotificationResult:
        html = self._render(
            "document_ready.html",
            name=name,
            document_kind=document_kind,
            document_number=document_number,
            title=title,
            amount=amount,
            view_url=self._portal_url(view_path),
        )
        subject = f"Your {document_kind.title()} {document_number} is Ready"
        return self._deliver("email", to, subject, html)

    def send_payment_receipt(
        self,
        to: str,
        *,
        name: str,
        invoice_number: str,
        amount: Decimal,
        payment_method: str,
        paid_at: datetime,
        amount_due: Decimal,
    ) -> NotificationResult:
        html = self._render(
            "payment_receipt.html",
            name=name,
            invoice_number=invoice_number,
            amount=amount,
            payment_method=payment_method,
            paid_at=paid_at,
            amount_due=amount_due,
        )
        return self._deliver("email", to, f"Payment Receipt for Invoice {invoice_number}", html)

    def _render(self, template_name: str, **context: Any) -> str:
        return _templates.get_template(template_name).render(year=datetime.now().year, **context)

    def _portal_url(self, path: str) -> str:
        return f"{get_settings().portal_base_url.rstrip('/')}{path}"

    def _deliver(self, channel: str, to: str, subject: str | None, body: str) -> NotificationResult:
        try:
            if channel == "sms":
                message_id = self.sink.send_sms(to, body)
            else:
                message_id = self.sink.send_email(to, subject or "", body)
        except Exception as exc:
            observe_notification(channel, "failed")
            logger.warning(
                "notification_delivery_failed",
                extra={"channel": channel, "recipient": to, "error": str(exc)},
            )
            return NotificationResult(success=False, error=str(exc))

        observe_notification(channel, "sent")
        logger.info("notification_sent", extra={"channel": channel, "recipient": to})
        return NotificationResult(success=True, message_id=message_id)


notification_service = NotificationService()
