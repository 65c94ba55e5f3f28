"""Email transports used by flow ``send_email`` actions and campaigns.

Three providers share one contract (``EmailSender.send``): an HTTP JSON API,
plain SMTP with STARTTLS, and a log-only sender for development. Senders
never raise on delivery problems; they return an ``EmailResult`` with the
error text.
"""
from __future__ import annotations
import logging
import smtplib
import ssl
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from email.message import EmailMessage

import requests

from lifecycle_engine.config import Settings, get_settings, parse_email_provider

logger = logging.getLogger(__name__)


@dataclass
class EmailPayload:
    to: str
    subject: str
    html: str
    text: str | None = None
    from_name: str | None = None
    from_email: str | None = None
    reply_to: str | None = None
    tags: dict[str, str] = field(default_factory=dict)


@dataclass
class EmailResult:
    success: bool
    provider: str
    message_id: str | None = None
    error: str | None = None


def format_sender(payload: EmailPayload, default_from: str) -> str:
    address = payload.from_email or default_from
    return f"{payload.from_name} <{address}>" if payload.from_name else address


class EmailSender(ABC):
    provider = ""

    @abstractmethod
    def send(self, payload: EmailPayload) -> EmailResult:
        ...


class ApiEmailSender(EmailSender):
    """Resend-style JSON API: bearer auth, returns ``{"id": ...}``."""
    provider = "api"

    def __init__(self, api_key: str, api_url: str, default_from: str,
                 session: requests.Session | None = None, timeout: float = 15.0):
        self.api_key = api_key
        self.api_url = api_url
        self.default_from = default_from
        self.session = session or requests.Session()
        self.timeout = timeout

    def send(self, payload: EmailPayload) -> EmailResult:
        body = {
            "from": format_sender(payload, self.default_from),
            "to": [payload.to],
            "subject": payload.subject,
            "html": payload.html,
        }
        if payload.text:
            body["text"] = payload.text
        if payload.reply_to:
            body["reply_to"] = payload.reply_to
        if payload.tags:
            body["tags"] = [{"name": k, "value": v} for k, v in payload.tags.items()]
        try:
            resp = self.session.post(
                self.api_url,
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"Email API request failed for {payload.to}: {e}")
            return EmailResult(False, self.provider, error=str(e))
        if not resp.ok:
            return EmailResult(False, self.provider, error=f"Email API {resp.status_code}: {resp.text}")
        try:
            message_id = (resp.json() or {}).get("id")
        except ValueError:
            message_id = None
        return EmailResult(True, self.provider, message_id=message_id)


class SmtpEmailSender(EmailSender):
    provider = "smtp"

    def __init__(self, host: str, port: int = 587, username: str | None = None,
                 password: str | None = None, default_from: str = "notifications@localhost", timeout: float = 15.0):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.default_from = default_from
        self.timeout = timeout

    def _message(self, payload: EmailPayload) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = payload.subject
        msg["From"] = format_sender(payload, self.default_from)
        msg["To"] = payload.to
        msg["Message-ID"] = f"<{uuid.uuid4().hex}@{self.host}>"
        if payload.reply_to:
            msg["Reply-To"] = payload.reply_to
        msg.set_content(payload.text or "This email requires an HTML capable client.")
        msg.add_alternative(payload.html, subtype="html")
        return msg

    def send(self, payload: EmailPayload) -> EmailResult:
        msg = self._message(payload)
        try:
            context = ssl.create_default_context()
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.starttls(context=context)
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning(f"SMTP send to {payload.to} failed: {e}")
            return EmailResult(False, self.provider, error=f"SMTP send failed: {e}")
        return EmailResult(True, self.provider, message_id=msg["Message-ID"])


class LogEmailSender(EmailSender):
    """Development sender: logs the message and keeps it in ``sent``."""
    provider = "log"

    def __init__(self):
        self.sent: list[EmailPayload] = []

    def send(self, payload: EmailPayload) -> EmailResult:
        message_id = f"log_{uuid.uuid4().hex[:10]}"
        self.sent.append(payload)
        logger.info(f"Email not sent (log mode) id={message_id} to={payload.to} subject={payload.subject!r}")
        return EmailResult(True, self.provider, message_id=message_id)


def build_email_sender(settings: Settings | None = None) -> EmailSender:
    s = settings or get_settings()
    provider = parse_email_provider(s.email_provider)
    if provider == "api" and s.email_api_key:
        return ApiEmailSender(s.email_api_key, s.email_api_url, s.email_from)
    if provider == "smtp" and s.smtp_host:
        return SmtpEmailSender(s.smtp_host, s.smtp_port, s.smtp_user, s.smtp_password, s.email_from)
    if provider != "log":
        logger.warning(f"Email provider {provider!r} is not configured; falling back to log mode")
    return LogEmailSender()
