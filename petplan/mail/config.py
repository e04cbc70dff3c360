"""Settings for the lifecycle notice mailer."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from ..config import parse_bool, parse_float, parse_int


@dataclass(frozen=True)
class EmailConfig:
    provider_name: str
    from_email: str
    reply_to: Optional[str]
    smtp_host: str
    smtp_port: int
    smtp_username: Optional[str]
    smtp_password: Optional[str]
    smtp_use_tls: bool
    smtp_timeout: float
    app_base_url: str


def load_email_config(env: Optional[Mapping[str, str]] = None) -> EmailConfig:
    """Load :class:`EmailConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    return EmailConfig(
        provider_name=(env_mapping.get("EMAIL_PROVIDER") or "dev").strip().lower() or "dev",
        from_email=env_mapping.get("FROM_EMAIL", "noreply@petplan.local"),
        reply_to=(env_mapping.get("BILLING_REPLY_TO") or "").strip() or None,
        smtp_host=env_mapping.get("SMTP_HOST", "localhost"),
        smtp_port=parse_int("SMTP_PORT", env_mapping.get("SMTP_PORT"), default=587),
        smtp_username=env_mapping.get("SMTP_USER") or None,
        smtp_password=env_mapping.get("SMTP_PASS") or None,
        smtp_use_tls=parse_bool(env_mapping.get("SMTP_USE_TLS"), default=True),
        smtp_timeout=parse_float("SMTP_TIMEOUT", env_mapping.get("SMTP_TIMEOUT"), default=30.0),
        app_base_url=env_mapping.get("APP_BASE_URL", "http://localhost:5000").rstrip("/"),
    )


__all__ = ["EmailConfig", "load_email_config"]
