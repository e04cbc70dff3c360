"""Process configuration for the billing lifecycle engine."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple


DEFAULT_TIMEZONE = "America/Sao_Paulo"


@dataclass(frozen=True)
class JobTime:
    """Time of day at which a scheduled job fires."""

    hour: int
    minute: int = 0

    def __str__(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"


@dataclass(frozen=True)
class Settings:
    """Settings read once at process start."""

    database_url: Optional[str]
    db_params: Dict[str, Any]
    pool_max: int = 20
    pool_min: int = 5
    connect_timeout: float = 10.0
    health_check_interval: float = 30.0
    recovery_attempts: int = 5
    recovery_delay: float = 2.0
    query_max_retries: int = 3
    query_retry_delay: float = 1.0
    cron_enabled: bool = True
    cron_timezone: str = DEFAULT_TIMEZONE
    upcoming_due_time: JobTime = JobTime(8)
    renewal_time: JobTime = JobTime(3)
    status_time: JobTime = JobTime(4)
    overdue_time: JobTime = JobTime(10)
    upcoming_days_ahead: int = 3
    grace_period_days: int = 15
    cancellation_days: int = 60
    renewal_min_days_overdue: int = 1
    overdue_milestones: Tuple[int, ...] = field(default_factory=tuple)
    admin_api_token: Optional[str] = None

    def connection_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments handed to ``psycopg2.connect`` by the pool."""

        kwargs: Dict[str, Any] = {"connect_timeout": max(1, int(round(self.connect_timeout)))}
        if self.database_url:
            kwargs["dsn"] = self.database_url
        else:
            kwargs.update(self.db_params)
        return kwargs


def parse_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def parse_int(name: str, value: Optional[str], *, default: int) -> int:
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc


def parse_float(name: str, value: Optional[str], *, default: float) -> float:
    if value is None or value.strip() == "":
        return default
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc
    if number < 0:
        raise ValueError(f"{name} must be non-negative")
    return number


def _to_job_time(name: str, value: Optional[str], *, default: JobTime) -> JobTime:
    if value is None or value.strip() == "":
        return default
    hour_text, _, minute_text = value.strip().partition(":")
    try:
        hour = int(hour_text)
        minute = int(minute_text or "0")
    except ValueError as exc:
        raise ValueError(f"{name} must look like HH:MM, got {value!r}") from exc
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"{name} is out of range: {value!r}")
    return JobTime(hour, minute)


def _to_milestones(name: str, value: Optional[str]) -> Tuple[int, ...]:
    if not value or not value.strip():
        return ()
    days = []
    for chunk in value.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        days.append(parse_int(name, chunk, default=0))
    return tuple(sorted(set(days)))


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Load :class:`Settings` from environment variables."""

    env_mapping = os.environ if env is None else env

    pool_max = max(1, parse_int("DB_POOL_MAX", env_mapping.get("DB_POOL_MAX"), default=20))
    pool_min = parse_int("DB_POOL_MIN", env_mapping.get("DB_POOL_MIN"), default=5)
    pool_min = min(max(0, pool_min), pool_max)

    db_params = {
        "host": env_mapping.get("DB_HOST", "127.0.0.1"),
        "port": parse_int("DB_PORT", env_mapping.get("DB_PORT"), default=5432),
        "dbname": env_mapping.get("DB_NAME", "petplan"),
        "user": env_mapping.get("DB_USER", "petplan"),
        "password": env_mapping.get("DB_PASSWORD", "petplan"),
    }

    return Settings(
        database_url=(env_mapping.get("DATABASE_URL") or "").strip() or None,
        db_params=db_params,
        pool_max=pool_max,
        pool_min=pool_min,
        connect_timeout=parse_float("DB_CONNECT_TIMEOUT", env_mapping.get("DB_CONNECT_TIMEOUT"), default=10.0),
        health_check_interval=max(
            1.0,
            parse_float("DB_HEALTH_CHECK_INTERVAL", env_mapping.get("DB_HEALTH_CHECK_INTERVAL"), default=30.0),
        ),
        recovery_attempts=max(0, parse_int("DB_RECOVERY_ATTEMPTS", env_mapping.get("DB_RECOVERY_ATTEMPTS"), default=5)),
        recovery_delay=parse_float("DB_RECOVERY_DELAY", env_mapping.get("DB_RECOVERY_DELAY"), default=2.0),
        query_max_retries=max(1, parse_int("DB_QUERY_MAX_RETRIES", env_mapping.get("DB_QUERY_MAX_RETRIES"), default=3)),
        query_retry_delay=parse_float("DB_QUERY_RETRY_DELAY", env_mapping.get("DB_QUERY_RETRY_DELAY"), default=1.0),
        cron_enabled=parse_bool(env_mapping.get("ENABLE_CRON_JOBS"), default=True),
        cron_timezone=(env_mapping.get("CRON_TIMEZONE") or DEFAULT_TIMEZONE).strip(),
        upcoming_due_time=_to_job_time("UPCOMING_DUE_JOB_TIME", env_mapping.get("UPCOMING_DUE_JOB_TIME"), default=JobTime(8)),
        renewal_time=_to_job_time("RENEWAL_JOB_TIME", env_mapping.get("RENEWAL_JOB_TIME"), default=JobTime(3)),
        status_time=_to_job_time("STATUS_JOB_TIME", env_mapping.get("STATUS_JOB_TIME"), default=JobTime(4)),
        overdue_time=_to_job_time("OVERDUE_JOB_TIME", env_mapping.get("OVERDUE_JOB_TIME"), default=JobTime(10)),
        upcoming_days_ahead=max(0, parse_int("UPCOMING_DUE_DAYS_AHEAD", env_mapping.get("UPCOMING_DUE_DAYS_AHEAD"), default=3)),
        grace_period_days=parse_int("GRACE_PERIOD_DAYS", env_mapping.get("GRACE_PERIOD_DAYS"), default=15),
        cancellation_days=parse_int("CANCELLATION_DAYS", env_mapping.get("CANCELLATION_DAYS"), default=60),
        renewal_min_days_overdue=max(
            0,
            parse_int("RENEWAL_MIN_DAYS_OVERDUE", env_mapping.get("RENEWAL_MIN_DAYS_OVERDUE"), default=1),
        ),
        overdue_milestones=_to_milestones("OVERDUE_NOTIFY_MILESTONES", env_mapping.get("OVERDUE_NOTIFY_MILESTONES")),
        admin_api_token=(env_mapping.get("ADMIN_API_TOKEN") or "").strip() or None,
    )


__all__ = ["DEFAULT_TIMEZONE", "JobTime", "Settings", "load_settings", "parse_bool", "parse_float", "parse_int"]
