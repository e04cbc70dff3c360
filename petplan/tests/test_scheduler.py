from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from petplan.app.lifecycle import (
    ReconciliationSummary,
    RenewalRunSummary,
    RetriesExhaustedError,
    UnknownJobError,
)
from petplan.config import JobTime, load_settings
from petplan.jobs import JobName, LifecycleScheduler, next_run_at, resolve_job_name, seconds_until

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
SAO_PAULO = ZoneInfo("America/Sao_Paulo")


class FakeRenewalService:
    def __init__(self) -> None:
        self.calls = []
        self.error = None

    def send_upcoming_due_notifications(self, days_ahead=3, *, now=None):
        self.calls.append(("upcoming", days_ahead))
        return 2

    def process_automatic_renewals(self, *, now=None):
        self.calls.append(("renewal",))
        if self.error is not None:
            raise self.error
        return RenewalRunSummary(processed=1, successful=1)

    def send_overdue_notifications(self, *, now=None):
        self.calls.append(("overdue",))
        return 5


class FakeReconciler:
    def __init__(self) -> None:
        self.runs = 0

    def reconcile(self, *, now=None):
        self.runs += 1
        return ReconciliationSummary(evaluated=3, updated=1)


def _scheduler(**kwargs) -> LifecycleScheduler:
    kwargs.setdefault("clock", lambda: NOW)
    return LifecycleScheduler(FakeRenewalService(), FakeReconciler(), **kwargs)


def test_run_job_returns_underlying_results():
    scheduler = _scheduler(upcoming_days_ahead=5)

    assert scheduler.run_job("upcoming") == 2
    assert scheduler.run_job(JobName.RENEWAL).successful == 1
    assert scheduler.run_job("status").updated == 1
    assert scheduler.run_job("overdue") == 5
    assert scheduler.renewal_service.calls[0] == ("upcoming", 5)
    assert scheduler.reconciler.runs == 1


def test_unknown_job_is_rejected():
    with pytest.raises(UnknownJobError) as excinfo:
        _scheduler().run_job("backup")

    assert excinfo.value.known == ("upcoming", "renewal", "status", "overdue")


def test_job_name_aliases_resolve():
    assert resolve_job_name("status-reconciliation") is JobName.STATUS
    assert resolve_job_name(" Upcoming-Due ") is JobName.UPCOMING_DUE


def test_disabled_scheduler_registers_nothing():
    scheduler = _scheduler(enabled=False)

    scheduler.start()

    assert scheduler.get_status()["enabled"] is False
    assert scheduler.get_status()["job_count"] == 0


def test_start_is_idempotent_and_stop_clears_triggers():
    scheduler = _scheduler()

    scheduler.start()
    scheduler.start()
    assert scheduler.get_status()["job_count"] == 4

    scheduler.stop()
    assert scheduler.get_status()["job_count"] == 0
    scheduler.stop()


def test_stop_without_start_is_safe():
    _scheduler().stop()


def test_scheduled_failure_is_contained_and_recorded():
    scheduler = _scheduler()
    scheduler.renewal_service.error = RetriesExhaustedError("list_all_contracts", 3, RuntimeError("db down"))

    scheduler.run_scheduled(JobName.RENEWAL)

    metrics = scheduler.get_status()["jobs"]["renewal"]
    assert metrics["runs"] == 1
    assert metrics["failures"] == 1
    assert metrics["running"] is False
    assert metrics["last_error"].startswith("RetriesExhaustedError")

    scheduler.renewal_service.error = None
    scheduler.run_scheduled(JobName.RENEWAL)
    metrics = scheduler.get_status()["jobs"]["renewal"]
    assert metrics["last_error"] is None
    assert metrics["last_result"]["successful"] == 1
    assert "attempts" not in metrics["last_result"]


def test_manual_run_propagates_errors():
    scheduler = _scheduler()
    scheduler.renewal_service.error = RetriesExhaustedError("list_all_contracts", 3, RuntimeError("db down"))

    with pytest.raises(RetriesExhaustedError):
        scheduler.run_job("renewal")


def test_metrics_record_timestamps_and_summaries():
    scheduler = _scheduler()

    scheduler.run_job("overdue")

    metrics = scheduler.get_status()["jobs"]["overdue"]
    assert metrics["schedule"] == "10:00"
    assert metrics["last_run_at"] == NOW.isoformat()
    assert metrics["last_success_at"] == NOW.isoformat()
    assert metrics["last_result"] == {"notifications_sent": 5}


def test_overlapping_scheduled_run_is_skipped():
    scheduler = _scheduler()
    lock = scheduler._job_locks[JobName.STATUS]
    lock.acquire()
    try:
        scheduler.run_scheduled(JobName.STATUS)
    finally:
        lock.release()

    assert scheduler.reconciler.runs == 0


def test_next_run_is_computed_in_the_configured_timezone():
    # NOW is 09:00 in Sao Paulo.
    assert next_run_at(JobTime(10), SAO_PAULO, NOW) == datetime(2025, 3, 10, 10, 0, tzinfo=SAO_PAULO)
    assert next_run_at(JobTime(8), SAO_PAULO, NOW) == datetime(2025, 3, 11, 8, 0, tzinfo=SAO_PAULO)
    assert next_run_at(JobTime(9), SAO_PAULO, NOW) == datetime(2025, 3, 11, 9, 0, tzinfo=SAO_PAULO)
    assert seconds_until(JobTime(10), SAO_PAULO, NOW) == 3600.0


def test_from_settings_uses_configured_schedule():
    settings = load_settings({"RENEWAL_JOB_TIME": "02:15", "ENABLE_CRON_JOBS": "false"})

    scheduler = LifecycleScheduler.from_settings(settings, FakeRenewalService(), FakeReconciler())

    assert scheduler.enabled is False
    assert scheduler.schedule[JobName.RENEWAL] == JobTime(2, 15)
    assert scheduler.get_status()["jobs"]["status"]["schedule"] == "04:00"
    assert scheduler.get_status()["timezone"] == "America/Sao_Paulo"


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_trigger_fires_at_configured_time_and_survives_failure():
    fire_at = datetime(2025, 3, 10, 13, 0, tzinfo=SAO_PAULO)
    scheduler = _scheduler(
        schedule={JobName.RENEWAL: JobTime(13)},
        clock=lambda: fire_at - timedelta(seconds=0.5),
    )
    scheduler.renewal_service.error = RetriesExhaustedError("list_all_contracts", 3, RuntimeError("db down"))

    scheduler.start()
    worker = scheduler._workers[JobName.RENEWAL]
    try:
        assert _wait_for(lambda: scheduler.get_status()["jobs"]["renewal"]["failures"] == 1)
        time.sleep(0.2)

        metrics = scheduler.get_status()["jobs"]["renewal"]
        assert metrics["runs"] == 1
        assert metrics["running"] is False
        assert metrics["last_error"].startswith("RetriesExhaustedError")
        assert worker.is_alive()
        assert scheduler.get_status()["job_count"] == 4
    finally:
        scheduler.stop()

    assert not worker.is_alive()
    assert scheduler.renewal_service.calls == [("renewal",)]
