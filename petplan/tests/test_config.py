from __future__ import annotations

import pytest

from petplan.config import JobTime, load_settings


def test_defaults_match_documented_values():
    settings = load_settings({})

    assert settings.pool_max == 20
    assert settings.pool_min == 5
    assert settings.connect_timeout == 10.0
    assert settings.health_check_interval == 30.0
    assert settings.query_max_retries == 3
    assert settings.query_retry_delay == 1.0
    assert settings.cron_enabled is True
    assert settings.cron_timezone == "America/Sao_Paulo"
    assert str(settings.upcoming_due_time) == "08:00"
    assert str(settings.renewal_time) == "03:00"
    assert str(settings.status_time) == "04:00"
    assert str(settings.overdue_time) == "10:00"
    assert settings.upcoming_days_ahead == 3
    assert settings.overdue_milestones == ()
    assert settings.admin_api_token is None


@pytest.mark.parametrize("raw", ["false", "0", "no", "OFF"])
def test_cron_can_be_disabled(raw):
    assert load_settings({"ENABLE_CRON_JOBS": raw}).cron_enabled is False


def test_unrecognised_cron_flag_keeps_scheduler_enabled():
    assert load_settings({"ENABLE_CRON_JOBS": "maybe"}).cron_enabled is True


def test_job_times_and_milestones_are_parsed():
    settings = load_settings(
        {
            "RENEWAL_JOB_TIME": "02:30",
            "STATUS_JOB_TIME": "5",
            "OVERDUE_NOTIFY_MILESTONES": "7, 1,3,7",
        }
    )

    assert settings.renewal_time == JobTime(2, 30)
    assert settings.status_time == JobTime(5, 0)
    assert settings.overdue_milestones == (1, 3, 7)


def test_pool_min_is_clamped_to_pool_max():
    settings = load_settings({"DB_POOL_MAX": "4", "DB_POOL_MIN": "9"})

    assert settings.pool_max == 4
    assert settings.pool_min == 4


@pytest.mark.parametrize(
    "env",
    [
        {"DB_POOL_MAX": "lots"},
        {"DB_CONNECT_TIMEOUT": "-1"},
        {"OVERDUE_JOB_TIME": "25:00"},
        {"UPCOMING_DUE_JOB_TIME": "eight"},
    ],
)
def test_malformed_values_name_the_variable(env):
    with pytest.raises(ValueError) as excinfo:
        load_settings(env)

    assert next(iter(env)) in str(excinfo.value)


def test_connection_kwargs_prefer_database_url():
    with_url = load_settings({"DATABASE_URL": "postgresql://u:p@db:5432/plans", "DB_HOST": "ignored"})
    discrete = load_settings({"DB_HOST": "db.internal", "DB_PORT": "6543", "DB_CONNECT_TIMEOUT": "3"})

    assert with_url.connection_kwargs() == {"dsn": "postgresql://u:p@db:5432/plans", "connect_timeout": 10}
    assert discrete.connection_kwargs()["host"] == "db.internal"
    assert discrete.connection_kwargs()["port"] == 6543
    assert discrete.connection_kwargs()["connect_timeout"] == 3
