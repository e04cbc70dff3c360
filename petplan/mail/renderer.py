"""Template rendering for lifecycle emails."""
from __future__ import annotations

import re
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Tuple

_TEMPLATE_PATH = Path(__file__).resolve().parent / "templates"
_PLACEHOLDER_PATTERN = re.compile(r"{{\s*(\w+)\s*}}")


class LifecycleEmail(str, Enum):
    UPCOMING_DUE = "upcoming_due"
    OVERDUE = "overdue"
    RENEWAL_SUCCESS = "renewal_success"
    RENEWAL_FAILURE = "renewal_failure"


def _load_template(template: str) -> str:
    return (_TEMPLATE_PATH / template).read_text(encoding="utf-8")


def _render_template(template: str, context: Dict[str, Any]) -> str:
    source = _load_template(template)

    def _replace(match: re.Match[str]) -> str:
        value = context.get(match.group(1), "")
        return "" if value is None else str(value)

    return _PLACEHOLDER_PATTERN.sub(_replace, source)


def render_lifecycle_email(kind: LifecycleEmail, context: Dict[str, Any]) -> Tuple[str, str, str]:
    """Return ``(subject, text_body, html_body)`` for ``kind``."""

    base = LifecycleEmail(kind).value
    subject = _render_template(f"{base}_subject.txt.j2", context)
    text_body = _render_template(f"{base}_body.txt.j2", context)
    html_body = _render_template(f"{base}_body.html.j2", context)
    return subject.strip(), text_body.strip(), html_body.strip()


__all__ = ["LifecycleEmail", "render_lifecycle_email"]
