"""Transports that deliver rendered lifecycle notices."""
from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Dict, Optional

from .config import EmailConfig

logger = logging.getLogger(__name__)

NOTICE_KEY_HEADER = "X-Petplan-Notice-Key"


@dataclass(frozen=True)
class LifecycleMessage:
    """One rendered notice addressed to a contract holder."""

    recipient: str
    subject: str
    text_body: str
    html_body: str
    notice_key: str
    contract_id: Optional[str] = None


class EmailProvider:
    """Delivers :class:`LifecycleMessage` values. Subclasses raise on failure."""

    name = "base"

    def __init__(self, *, from_email: str, reply_to: Optional[str] = None) -> None:
        self.from_email = from_email
        self.reply_to = reply_to

    def deliver(self, message: LifecycleMessage) -> None:
        raise NotImplementedError

    def describe(self) -> Dict[str, str]:
        return {"email_provider": self.name, "email_sender": self.from_email}


class DevPrintProvider(EmailProvider):
    """Logs notices instead of sending them."""

    name = "dev"

    def deliver(self, message: LifecycleMessage) -> None:
        logger.info(
            "Dev email dispatch: %s",
            message.subject,
            extra={
                "email_recipient": message.recipient,
                "contract_id": message.contract_id,
                "idempotency_key": message.notice_key,
            },
        )


class SMTPProvider(EmailProvider):
    name = "smtp"

    def __init__(
        self,
        *,
        from_email: str,
        host: str,
        port: int,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        timeout: float = 30.0,
        reply_to: Optional[str] = None,
    ) -> None:
        super().__init__(from_email=from_email, reply_to=reply_to)
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: EmailConfig) -> "SMTPProvider":
        return cls(
            from_email=config.from_email,
            host=config.smtp_host,
            port=config.smtp_port,
            username=config.smtp_username,
            password=config.smtp_password,
            use_tls=config.smtp_use_tls,
            timeout=config.smtp_timeout,
            reply_to=config.reply_to,
        )

    def build_message(self, message: LifecycleMessage) -> EmailMessage:
        """Multipart text/HTML message carrying the notice key for bounce tracing."""

        email = EmailMessage()
        email["From"] = self.from_email
        email["To"] = message.recipient
        email["Subject"] = message.subject
        if self.reply_to:
            email["Reply-To"] = self.reply_to
        email["Message-ID"] = make_msgid(domain=self.from_email.rpartition("@")[2] or None)
        email[NOTICE_KEY_HEADER] = message.notice_key
        email.set_content(message.text_body)
        email.add_alternative(message.html_body, subtype="html")
        return email

    def deliver(self, message: LifecycleMessage) -> None:
        email = self.build_message(message)
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as client:
            if self.use_tls:
                client.starttls()
            if self.username and self.password:
                client.login(self.username, self.password)
            client.send_message(email)


def create_email_provider(config: EmailConfig) -> EmailProvider:
    if config.provider_name == "smtp":
        return SMTPProvider.from_config(config)
    if config.provider_name != "dev":
        logger.warning("Unknown EMAIL_PROVIDER %r; lifecycle notices will only be logged", config.provider_name)
    return DevPrintProvider(from_email=config.from_email, reply_to=config.reply_to)


__all__ = [
    "DevPrintProvider",
    "EmailProvider",
    "LifecycleMessage",
    "NOTICE_KEY_HEADER",
    "SMTPProvider",
    "create_email_provider",
]
