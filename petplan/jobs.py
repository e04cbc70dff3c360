"""Daily scheduler for the contract lifecycle jobs."""
from __future__ import annotations

import logging
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from threading import Event, Lock, Thread
from typing import Any, Callable, Dict, Mapping, Optional, Union
from zoneinfo import ZoneInfo

from pydantic import BaseModel

from .app.lifecycle import ContractStatusReconciler, RenewalService, UnknownJobError
from .config import DEFAULT_TIMEZONE, JobTime, Settings

logger = logging.getLogger(__name__)


class JobName(str, Enum):
    UPCOMING_DUE = "upcoming"
    RENEWAL = "renewal"
    STATUS = "status"
    OVERDUE = "overdue"


DEFAULT_SCHEDULE: Dict[JobName, JobTime] = {
    JobName.UPCOMING_DUE: JobTime(8),
    JobName.RENEWAL: JobTime(3),
    JobName.STATUS: JobTime(4),
    JobName.OVERDUE: JobTime(10),
}

_ALIASES = {
    "upcoming-due": JobName.UPCOMING_DUE,
    "upcoming_due": JobName.UPCOMING_DUE,
    "renewals": JobName.RENEWAL,
    "status-reconciliation": JobName.STATUS,
    "reconciliation": JobName.STATUS,
    "overdue-notifications": JobName.OVERDUE,
}


def resolve_job_name(name: Union[str, JobName]) -> JobName:
    if isinstance(name, JobName):
        return name
    key = (name or "").strip().lower()
    try:
        return JobName(key)
    except ValueError:
        if key in _ALIASES:
            return _ALIASES[key]
        raise UnknownJobError(name, [job.value for job in JobName]) from None


def next_run_at(at: JobTime, tz: ZoneInfo, now: datetime) -> datetime:
    """First local wall-clock occurrence of ``at`` strictly after ``now``."""

    local_now = now.astimezone(tz)
    target = datetime.combine(local_now.date(), time(at.hour, at.minute), tzinfo=tz)
    if target <= local_now:
        target = datetime.combine(local_now.date() + timedelta(days=1), time(at.hour, at.minute), tzinfo=tz)
    return target


def seconds_until(at: JobTime, tz: ZoneInfo, now: datetime) -> float:
    # Aware datetimes sharing a tzinfo subtract by wall clock; compare in UTC.
    target = next_run_at(at, tz, now).astimezone(timezone.utc)
    return max((target - now.astimezone(timezone.utc)).total_seconds(), 0.0)


def _summarize(result: Any) -> Dict[str, Any]:
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json", exclude={"changes", "attempts"})
    if isinstance(result, int):
        return {"notifications_sent": result}
    return {"result": result}


def _new_metrics(at: JobTime) -> Dict[str, Any]:
    return {
        "schedule": str(at),
        "runs": 0,
        "failures": 0,
        "running": False,
        "last_run_at": None,
        "last_success_at": None,
        "last_error": None,
        "last_result": None,
    }


class _JobWorker(Thread):
    def __init__(self, scheduler: "LifecycleScheduler", job: JobName, at: JobTime) -> None:
        super().__init__(daemon=True, name=f"lifecycle-{job.value}")
        self.job = job
        self.at = at
        self._scheduler = scheduler
        self._stop_event = Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        last_fire: Optional[datetime] = None
        while True:
            now = self._scheduler.now()
            # Never fire twice for the same slot if the wait returns early.
            reference = max(now, last_fire) if last_fire else now
            target = next_run_at(self.at, self._scheduler.tz, reference)
            delay = max((target - now).total_seconds(), 0.0)
            if self._stop_event.wait(delay):
                return
            last_fire = target
            self._scheduler.run_scheduled(self.job)


class LifecycleScheduler:
    """Owns the four daily lifecycle triggers and their run metrics."""

    def __init__(
        self,
        renewal_service: RenewalService,
        reconciler: ContractStatusReconciler,
        *,
        enabled: bool = True,
        timezone_name: str = DEFAULT_TIMEZONE,
        schedule: Optional[Mapping[JobName, JobTime]] = None,
        upcoming_days_ahead: int = 3,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.renewal_service = renewal_service
        self.reconciler = reconciler
        self.enabled = enabled
        self.tz = ZoneInfo(timezone_name)
        self.schedule: Dict[JobName, JobTime] = {**DEFAULT_SCHEDULE, **(schedule or {})}
        self.upcoming_days_ahead = upcoming_days_ahead
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = Lock()
        self._workers: Dict[JobName, _JobWorker] = {}
        self._job_locks: Dict[JobName, Lock] = {job: Lock() for job in JobName}
        self._metrics_lock = Lock()
        self._metrics: Dict[JobName, Dict[str, Any]] = {job: _new_metrics(at) for job, at in self.schedule.items()}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        renewal_service: RenewalService,
        reconciler: ContractStatusReconciler,
    ) -> "LifecycleScheduler":
        return cls(
            renewal_service,
            reconciler,
            enabled=settings.cron_enabled,
            timezone_name=settings.cron_timezone,
            schedule={
                JobName.UPCOMING_DUE: settings.upcoming_due_time,
                JobName.RENEWAL: settings.renewal_time,
                JobName.STATUS: settings.status_time,
                JobName.OVERDUE: settings.overdue_time,
            },
            upcoming_days_ahead=settings.upcoming_days_ahead,
        )

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------ lifecycle
    def start(self) -> None:
        if not self.enabled:
            logger.info("Lifecycle scheduler disabled; no jobs registered")
            return
        with self._lock:
            if self._workers:
                return
            for job, at in self.schedule.items():
                worker = _JobWorker(self, job, at)
                self._workers[job] = worker
                worker.start()
                logger.info(
                    "Registered lifecycle job %s at %s %s",
                    job.value,
                    at,
                    self.tz.key,
                    extra={"job": job.value, "seconds_until_first_run": round(seconds_until(at, self.tz, self.now()), 2)},
                )
            logger.info("Lifecycle scheduler started", extra={"job_count": len(self._workers)})

    def stop(self) -> None:
        with self._lock:
            workers = list(self._workers.values())
            for worker in workers:
                worker.stop()
            for worker in workers:
                worker.join(timeout=1.0)
            self._workers.clear()
        if workers:
            logger.info("Lifecycle scheduler stopped")

    # ------------------------------------------------------------------ execution
    def _invoke(self, job: JobName) -> Any:
        if job is JobName.UPCOMING_DUE:
            return self.renewal_service.send_upcoming_due_notifications(self.upcoming_days_ahead)
        if job is JobName.RENEWAL:
            return self.renewal_service.process_automatic_renewals()
        if job is JobName.STATUS:
            return self.reconciler.reconcile()
        return self.renewal_service.send_overdue_notifications()

    def _execute(self, job: JobName) -> Any:
        started_at = self.now()
        with self._metrics_lock:
            metrics = self._metrics[job]
            metrics["runs"] += 1
            metrics["running"] = True
            metrics["last_run_at"] = started_at
        logger.info("Lifecycle job %s started", job.value, extra={"job": job.value})
        try:
            result = self._invoke(job)
        except Exception as exc:
            with self._metrics_lock:
                metrics["failures"] += 1
                metrics["running"] = False
                metrics["last_error"] = f"{type(exc).__name__}: {exc}"
            raise
        summary = _summarize(result)
        with self._metrics_lock:
            metrics["running"] = False
            metrics["last_success_at"] = self.now()
            metrics["last_error"] = None
            metrics["last_result"] = summary
        logger.info("Lifecycle job %s completed", job.value, extra={"job": job.value, **summary})
        return result

    def run_scheduled(self, job: JobName) -> None:
        """Entry point for timer fires. Never raises."""

        lock = self._job_locks[job]
        if not lock.acquire(blocking=False):
            logger.warning("Lifecycle job %s still running; skipping this trigger", job.value, extra={"job": job.value})
            return
        try:
            self._execute(job)
        except Exception:
            logger.exception("Lifecycle job %s failed", job.value, extra={"job": job.value})
        finally:
            lock.release()

    def run_job(self, name: Union[str, JobName]) -> Any:
        """Run one job now and return its result. Waits for a scheduled run of the same job to finish."""

        job = resolve_job_name(name)
        with self._job_locks[job]:
            try:
                return self._execute(job)
            except Exception:
                logger.exception("Manual lifecycle job %s failed", job.value, extra={"job": job.value})
                raise

    # ------------------------------------------------------------------ inspection
    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            job_count = len(self._workers)
        with self._metrics_lock:
            jobs = {}
            for job, metrics in self._metrics.items():
                jobs[job.value] = {
                    **metrics,
                    "last_run_at": metrics["last_run_at"].isoformat() if metrics["last_run_at"] else None,
                    "last_success_at": metrics["last_success_at"].isoformat() if metrics["last_success_at"] else None,
                }
        return {"enabled": self.enabled, "job_count": job_count, "timezone": self.tz.key, "jobs": jobs}


__all__ = [
    "DEFAULT_SCHEDULE",
    "JobName",
    "LifecycleScheduler",
    "next_run_at",
    "resolve_job_name",
    "seconds_until",
]
