"""Operational routes for the lifecycle scheduler and database health."""
from __future__ import annotations

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from ...database import Database
from ...jobs import LifecycleScheduler, resolve_job_name
from ..lifecycle import DatabaseError, UnknownJobError
from ..schemas.jobs import DatabaseHealthResponse, JobRunResponse, SchedulerStatusResponse


def get_scheduler(request: Request) -> LifecycleScheduler:
    scheduler = getattr(request.app.state, "lifecycle_scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Scheduler not initialised")
    return scheduler


def get_database(request: Request) -> Database:
    database = getattr(request.app.state, "database", None)
    if database is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database not initialised")
    return database


def require_admin_token(
    request: Request,
    x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token"),
) -> None:
    settings = getattr(request.app.state, "settings", None)
    expected = getattr(settings, "admin_api_token", None)
    if not expected:
        return
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")


router = APIRouter(
    prefix="/api/admin/lifecycle",
    tags=["lifecycle"],
    dependencies=[Depends(require_admin_token)],
)


@router.get("/jobs", response_model=SchedulerStatusResponse)
def get_jobs_status(scheduler: LifecycleScheduler = Depends(get_scheduler)) -> SchedulerStatusResponse:
    return SchedulerStatusResponse.from_status(scheduler.get_status())


@router.post("/jobs/{job_name}/run", response_model=JobRunResponse)
def run_job(job_name: str, scheduler: LifecycleScheduler = Depends(get_scheduler)) -> JobRunResponse:
    try:
        job = resolve_job_name(job_name)
        result = scheduler.run_job(job)
    except UnknownJobError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except DatabaseError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return JobRunResponse.from_result(job.value, result)


@router.get("/database/health", response_model=DatabaseHealthResponse)
def get_database_health(database: Database = Depends(get_database)) -> DatabaseHealthResponse:
    database.check_health()
    return DatabaseHealthResponse.from_snapshot(database.health_snapshot())


__all__ = ["router", "get_database", "get_scheduler", "require_admin_token"]
