"""Outbound email for lifecycle notices."""

from .config import EmailConfig, load_email_config
from .providers import (
    NOTICE_KEY_HEADER,
    DevPrintProvider,
    EmailProvider,
    LifecycleMessage,
    SMTPProvider,
    create_email_provider,
)
from .renderer import LifecycleEmail, render_lifecycle_email

__all__ = [
    "DevPrintProvider",
    "EmailConfig",
    "EmailProvider",
    "LifecycleEmail",
    "LifecycleMessage",
    "NOTICE_KEY_HEADER",
    "SMTPProvider",
    "create_email_provider",
    "load_email_config",
    "render_lifecycle_email",
]
