"""
Best-effort booking emails.

Notifications are collected by the booking core while it changes state and
dispatched afterwards, outside the request that produced them. A rendering or
delivery failure is logged and dropped; it never reverses, retries or blocks
the transition that triggered it.
"""
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

from utils import format_class_date

logger = logging.getLogger("herd.notifications")

TEMPLATE_DIR = Path(__file__).parent / "templates" / "emails"
RESEND_URL = "https://api.resend.com/emails"


class NotificationTemplate(str, Enum):
    APPROVAL_REQUEST = "booking-approval-request"
    CONFIRMED_GUEST = "booking-confirmed-guest"
    CONFIRMED_HOST = "booking-confirmed"
    DENIED_GUEST = "booking-denied"


SUBJECTS = {
    NotificationTemplate.APPROVAL_REQUEST: "Booking Request for {title} - Approval Required",
    NotificationTemplate.CONFIRMED_GUEST: "Booking Confirmed: {title}",
    NotificationTemplate.CONFIRMED_HOST: "New Booking: {title}",
    NotificationTemplate.DENIED_GUEST: "Booking Update: {title}",
}


@dataclass
class Notification:
    template: NotificationTemplate
    booking: Dict[str, Any]
    cls: Dict[str, Any]
    recipient: Dict[str, Any]
    extra: Dict[str, Any] = field(default_factory=dict)


# ---------- Delivery ----------
class EmailSender(Protocol):
    def send(self, to: str, subject: str, html: str, text: str) -> None:
        """Deliver one message or raise."""


class LoggingEmailSender:
    """Used when no mail API key is configured."""

    def send(self, to, subject, html, text):
        logger.warning("Email delivery disabled, not sending %r to %s", subject, to)


class MemoryEmailSender:
    def __init__(self):
        self.sent: List[Dict[str, str]] = []

    def send(self, to, subject, html, text):
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text})


class ResendEmailSender:
    def __init__(self, api_key: str, from_address: str, redirect_to: str = "", client: Optional[httpx.Client] = None):
        self.api_key = api_key
        self.from_address = from_address
        self.redirect_to = redirect_to
        self.client = client or httpx.Client(timeout=10.0)

    def send(self, to, subject, html, text):
        recipient = to
        if self.redirect_to and to != self.redirect_to:
            # Development mode: everything goes to one verified inbox.
            note = f"This email was originally intended for {to}."
            recipient = self.redirect_to
            subject = f"[DEV] {subject} (for {to})"
            html = f"{html}<p style=\"font-size: 12px; color: #666;\">{note}</p>"
            text = f"{text}\n\n---\n{note}"

        response = self.client.post(
            RESEND_URL,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={"from": self.from_address, "to": [recipient], "subject": subject, "html": html, "text": text},
        )
        response.raise_for_status()
        logger.info("Email sent to %s: %s (id=%s)", recipient, subject, response.json().get("id"))


# ---------- Rendering ----------
_TEXT_RULES: List[Tuple[str, str]] = [
    (r"<h[1-6][^>]*>", "\n\n"),
    (r"</h[1-6]>", "\n"),
    (r"<p[^>]*>|</p>|<br[^>]*>", "\n"),
    (r"<li[^>]*>", "\n- "),
    (r'<a[^>]*href="([^"]*)"[^>]*>([^<]*)</a>', r"\2 (\1)"),
    (r"<[^>]+>", ""),
    (r"&nbsp;", " "),
    (r"&#39;", "'"),
    (r"&quot;", '"'),
    (r"&lt;", "<"),
    (r"&gt;", ">"),
    (r"&amp;", "&"),
    (r"[ \t]+\n", "\n"),
    (r"\n\s*\n\s*\n+", "\n\n"),
]


def html_to_text(html: str, subject: str) -> str:
    text = html
    for pattern, repl in _TEXT_RULES:
        text = re.sub(pattern, repl, text, flags=re.IGNORECASE)
    return f"HERD - {subject}\n\n{text.strip()}\n\nQuestions? Reply to this email or contact us at support@herd-app.com"


class EmailRenderer:
    def __init__(self, app_origin: str, timezone: str, template_dir: Path = TEMPLATE_DIR):
        self.app_origin = app_origin.rstrip("/")
        self.timezone = timezone
        self.env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            autoescape=select_autoescape(["html"]),
        )

    def variables(self, n: Notification) -> Dict[str, Any]:
        booking, cls = n.booking, n.cls
        return {
            "host_name": booking.get("hostName"),
            "guest_name": booking.get("userName"),
            "instructor_name": cls.get("instructorName") or booking.get("hostName"),
            "class_title": cls.get("title"),
            "class_address": cls.get("address"),
            "class_date": format_class_date(cls.get("startDate"), cls.get("startTime"), self.timezone),
            "student_count": booking.get("studentCount"),
            "student_names": ", ".join(booking.get("studentNames") or []),
            "host_earnings": f"{booking.get('subtotal', 0):.2f}",
            "total_amount": f"{booking.get('totalAmount', 0):.2f}",
            "host_message": booking.get("hostMessage"),
            "dashboard_url": f"{self.app_origin}/dashboard",
            "classes_url": f"{self.app_origin}/classes",
            "approve_url": f"{self.app_origin}/dashboard?booking={booking.get('id')}&action=approve",
            "decline_url": f"{self.app_origin}/dashboard?booking={booking.get('id')}&action=deny",
            **n.extra,
        }

    def render(self, n: Notification) -> Tuple[str, str, str]:
        subject = SUBJECTS[n.template].format(title=n.cls.get("title", "your class"))
        variables = self.variables(n)
        content = self.env.get_template(f"{n.template.value}.html").render(**variables)
        html = self.env.get_template("base.html").render(subject=subject, content=content)
        return subject, html, html_to_text(content, subject)


class NotificationDispatcher:
    def __init__(self, renderer: EmailRenderer, sender: EmailSender):
        self.renderer = renderer
        self.sender = sender

    def notify(self, notification: Notification) -> bool:
        to = notification.recipient.get("email")
        template = notification.template.value
        try:
            if not to:
                raise ValueError("recipient has no email address")
            subject, html, text = self.renderer.render(notification)
            self.sender.send(to, subject, html, text)
        except Exception:
            logger.warning(
                "Notification %s for %s not delivered (non-blocking)",
                template, notification.booking.get("id"), exc_info=True,
            )
            return False
        logger.info("Notification %s for %s delivered to %s", template, notification.booking.get("id"), to)
        return True

    def dispatch_all(self, notifications: Iterable[Notification]) -> int:
        return sum(1 for n in notifications if self.notify(n))
