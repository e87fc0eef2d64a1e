from __future__ import annotations

import smtplib
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Any, Protocol

from floorline.core.config import Settings
from floorline.errors import NotificationDeliveryError

sent_messages: list[dict[str, Any]] = []


@dataclass
class NotificationResult:
    success: bool
    message_id: str | None = None
    error: str | None = None


class NotificationSink(Protocol):
    def send_email(self, to: str, subject: str, html: str) -> str:
        """Deliver an HTML email and return the transport message id."""

    def send_sms(self, to: str, body: str) -> str:
        """Deliver a text message and return the transport message id."""


class OutboxNotificationSink:
    """Keeps messages in the in-process outbox instead of delivering them."""

    def send_email(self, to: str, subject: str, html: str) -> str:
        message_id = f"outbox-{uuid.uuid4()}"
        sent_messages.append(
            {
                "id": message_id,
                "channel": "email",
                "to": to,
                "subject": subject,
                "body": html,
                "queued_at": datetime.now(timezone.utc).isoformat(),
            }
        )
        return message_id

    def send_sms(self, to: str, body: str) -> str:
        message_id = f"outbox-{uuid.uuid4()}"
        sent_messages.append(
            {
                "id": message_id,
                "channel": "sms",
                "to": to,
                "subject": None,
                "body": body,
                "queued_at": datetime.now(timezone.utc).isoformat(),
            }
        )
        return message_id


class SmtpNotificationSink:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def send_email(self, to: str, subject: str, html: str) -> str:
        message_id = make_msgid(domain=self.settings.mail_from_address.split("@")[-1] or None)
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.settings.mail_from_name} <{self.settings.mail_from_address}>"
        msg["To"] = to
        msg["Message-ID"] = message_id
        msg.attach(MIMEText(html, "html"))

        try:
            with smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port, timeout=30) as server:
                server.ehlo()
                if self.settings.smtp_use_tls:
                    server.starttls()
                    server.ehlo()
                if self.settings.smtp_username and self.settings.smtp_password:
                    server.login(self.settings.smtp_username, self.settings.smtp_password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationDeliveryError(f"SMTP delivery to {to} failed: {exc}") from exc
        return message_id

    def send_sms(self, to: str, body: str) -> str:
        raise NotificationDeliveryError("SMS delivery is not available on the smtp backend")


def build_notification_sink(settings: Settings) -> NotificationSink:
    if settings.notification_backend.lower() == "smtp":
        return SmtpNotificationSink(settings)
    return OutboxNotificationSink()
