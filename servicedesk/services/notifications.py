"""
Email notifications for case lifecycle events.

Delivery is at-most-once and best-effort: messages are built while the request
still holds the database session, then handed to a scheduler (FastAPI
BackgroundTasks in the routes) that runs the SMTP send after the response.
Failures end up in the log and nowhere else.
"""
import html
import smtplib
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from typing import Callable, List, Optional

import pytz
import structlog
from fastapi import Request

from ..config import Settings
from ..errors import DeliveryError
from ..models.models import User
from .cases import CaseKind, as_utc


log = structlog.get_logger(__name__)

Scheduler = Callable[..., None]


@dataclass
class OutgoingMessage:
    to: str
    subject: str
    text: str
    template_key: str


class Mailer:
    """SMTP transport. ``send`` raises DeliveryError when the server cannot be reached."""

    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    def configured(self) -> bool:
        return bool(self.settings.enable_email and self.settings.smtp_host and self.settings.mail_from)

    def send(self, to: str, subject: str, body: str) -> None:
        if not self.configured:
            log.info("email_disabled", to=to, subject=subject)
            return
        s = self.settings
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = s.mail_from
        msg["To"] = to
        msg.set_content(body)
        msg.add_alternative(
            f"<div style=\"font-family: Arial, sans-serif; white-space: pre-wrap;\">{html.escape(body)}</div>",
            subtype="html",
        )
        try:
            with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=30) as conn:
                if s.smtp_tls:
                    conn.starttls()
                if s.smtp_username and s.smtp_password:
                    conn.login(s.smtp_username, s.smtp_password)
                conn.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(f"SMTP delivery to {to} failed: {e}") from e
        log.info("email_sent", to=to, subject=subject)


class NotificationDispatcher:
    def __init__(self, settings: Settings, mailer: Mailer):
        self.mailer = mailer
        self.admin_email = settings.admin_email
        self.brand = settings.mail_brand
        self.public_base_url = settings.public_base_url.rstrip("/")
        self.tz = pytz.timezone(settings.tz_display)

    # -- formatting -----------------------------------------------------------

    def format_visit(self, value: Optional[datetime]) -> Optional[str]:
        """Render a visit time like 'March 05, 2025 02:30 PM' in the display zone."""
        value = as_utc(value)
        if value is None:
            return None
        return value.astimezone(self.tz).strftime("%B %d, %Y %I:%M %p")

    @staticmethod
    def map_link(lat: float, lng: float) -> str:
        return f"https://www.google.com/maps?q={lat},{lng}"

    def _footer(self, kind: CaseKind) -> List[str]:
        return [
            "",
            f"You can view all updates on your {kind.noun} in your dashboard.",
            "Thank you for your patience.",
            f"{self.brand} - Installation and Services",
        ]

    # -- builders -------------------------------------------------------------

    def new_case_for_admin(self, kind: CaseKind, case, owner: User) -> Optional[OutgoingMessage]:
        if not self.admin_email:
            log.warning("admin_email_not_configured", kind=kind.key, reference=case.reference)
            return None
        subject = f"New {kind.label} Created: {case.reference}"
        lines = [
            f"{self.brand} - New {kind.label}",
            "",
            f"{kind.label} ID: {case.reference}",
            f"Category: {case.category}",
            f"Title: {case.title}",
            "",
            f"Name: {owner.name}",
            f"Company: {owner.company_name}",
            "",
            "Description:",
            case.description,
            "",
            f"Email: {owner.email}",
            f"Phone: {owner.phone}",
        ]
        preferred = self.format_visit(case.preferred_visit_at)
        if preferred:
            lines.append(f"Preferred Visit Time: {preferred}")
        lines.append(f"Location: {self.map_link(case.lat, case.lng)}")
        return OutgoingMessage(self.admin_email, subject, "\n".join(lines), f"{kind.key}_new_admin")

    def case_confirmation(self, kind: CaseKind, case, owner: User) -> OutgoingMessage:
        subject = f"{kind.label} Confirmation: {case.reference}"
        lines = [
            f"{kind.label} Created Successfully",
            "",
            f"Dear {owner.name},",
            f"Your {kind.noun} has been created successfully.",
            "",
            f"{kind.label} ID: {case.reference}",
            f"Category: {case.category}",
            f"Title: {case.title}",
            f"Status: {case.status}",
            "",
            f"We will review your {kind.noun} and get back to you soon.",
        ]
        return OutgoingMessage(owner.email, subject, "\n".join(lines), f"{kind.key}_confirmation")

    def owner_update(
        self,
        kind: CaseKind,
        case,
        owner: User,
        note: str,
        visit_at: Optional[datetime] = None,
        is_final: bool = False,
    ) -> Optional[OutgoingMessage]:
        """Admin reply, visit scheduling or status change, sent to the case owner."""
        if not owner.email:
            log.warning("owner_email_missing", kind=kind.key, reference=case.reference)
            return None
        if is_final:
            subject = f"Your {kind.noun} has been resolved and {case.status.lower()}"
        else:
            subject = f"Admin Reply on {kind.label}: {case.reference}"
        status_label = "New" if case.status == kind.initial_status else case.status
        lines = [
            f"{self.brand} - {kind.label} Update",
            "",
            f"Dear {owner.name},",
            f"You have received a reply from our admin team regarding your {kind.noun}.",
            "",
            f"{kind.label} ID: {case.reference}",
            f"Category: {case.category}",
            f"Title: {case.title}",
            f"Description: {case.description}",
            f"Current Status: {status_label}",
        ]
        scheduled = self.format_visit(visit_at or case.assigned_visit_at)
        if scheduled:
            lines += ["", f"Scheduled Visit Time: {scheduled}"]
        lines += ["", "Admin Reply:", note]
        lines += self._footer(kind)
        return OutgoingMessage(owner.email, subject, "\n".join(lines), f"{kind.key}_owner_update")

    def password_reset(self, user: User, token: str) -> OutgoingMessage:
        link = f"{self.public_base_url}/reset-password?token={token}"
        lines = [
            f"Dear {user.name},",
            "",
            "We received a request to reset your password.",
            f"Use this link to choose a new one: {link}",
            "",
            "If you did not ask for this, you can ignore this email.",
        ]
        return OutgoingMessage(user.email, f"{self.brand} password reset", "\n".join(lines), "password_reset")

    # -- delivery -------------------------------------------------------------

    def deliver(self, message: OutgoingMessage) -> None:
        try:
            self.mailer.send(message.to, message.subject, message.text)
        except DeliveryError as e:
            log.warning("notification_failed", template=message.template_key, to=message.to, error=str(e))
        except Exception:
            log.exception("notification_failed", template=message.template_key, to=message.to)

    def dispatch(self, schedule: Scheduler, message: Optional[OutgoingMessage]) -> None:
        """Hand ``message`` to ``schedule`` for detached delivery. ``None`` is skipped."""
        if message is None:
            return
        schedule(self.deliver, message)


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher
