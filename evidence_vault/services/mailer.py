"""Outbound buyer notifications rendered from Jinja2 templates."""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from email.utils import make_msgid
from pathlib import Path
from typing import Any, Protocol

from jinja2 import Environment, FileSystemLoader, select_autoescape

from evidence_vault.core.config import Settings

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "email"

SUBJECTS: dict[str, str] = {
    "purchase": "Your download for order {order_number}",
    "stage_released": "New delivery available for order {order_number}",
}


class Mailer(Protocol):
    def send(self, template: str, recipient: str, data: dict[str, Any]) -> dict[str, str]: ...


def _environment() -> Environment:
    return Environment(loader=FileSystemLoader(str(TEMPLATE_DIR)), autoescape=select_autoescape(["html"]))


def render_email(template: str, data: dict[str, Any]) -> tuple[str, str]:
    """Return ``(subject, html_body)`` for a known template."""
    if template not in SUBJECTS:
        raise ValueError(f"Unknown email template: {template}")
    html = _environment().get_template(f"{template}.html").render(**data)
    return SUBJECTS[template].format(**data), html


class SmtpMailer:
    """Sends rendered templates over SMTP (SSL on 465, STARTTLS otherwise)."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def send(self, template: str, recipient: str, data: dict[str, Any]) -> dict[str, str]:
        subject, html = render_email(template, data)
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = f"{data.get('store_name') or self._settings.store_name} <{self._settings.from_email}>"
        message["To"] = recipient
        message_id = make_msgid(domain=self._settings.from_email.split("@")[-1])
        message["Message-ID"] = message_id
        message.set_content("This message requires an HTML-capable mail client.")
        message.add_alternative(html, subtype="html")

        host, port = self._settings.smtp_host, self._settings.smtp_port
        if port == 465:
            with smtplib.SMTP_SSL(host, port, timeout=30) as server:
                self._deliver(server, message)
        else:
            with smtplib.SMTP(host, port, timeout=30) as server:
                server.starttls()
                self._deliver(server, message)
        logger.info("[MAILER] %s sent to %s", template, recipient)
        return {"messageId": message_id}

    def _deliver(self, server: smtplib.SMTP, message: EmailMessage) -> None:
        if self._settings.smtp_user:
            server.login(self._settings.smtp_user, self._settings.smtp_pass)
        server.send_message(message)


class NullMailer:
    """Used when SMTP is not configured: renders, logs and drops."""

    def send(self, template: str, recipient: str, data: dict[str, Any]) -> dict[str, str]:
        render_email(template, data)
        logger.warning("[MAILER] SMTP not configured; %s for %s not sent", template, recipient)
        return {"messageId": "not-sent"}


def build_mailer(settings: Settings) -> Mailer:
    if settings.smtp_host:
        return SmtpMailer(settings)
    return NullMailer()
