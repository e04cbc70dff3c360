"""API schemas for the lifecycle operations endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class JobMetrics(BaseModel):
    schedule: str
    runs: int = 0
    failures: int = 0
    running: bool = False
    last_run_at: Optional[datetime] = Field(alias="lastRunAt", default=None)
    last_success_at: Optional[datetime] = Field(alias="lastSuccessAt", default=None)
    last_error: Optional[str] = Field(alias="lastError", default=None)
    last_result: Optional[Dict[str, Any]] = Field(alias="lastResult", default=None)

    model_config = ConfigDict(populate_by_name=True)


class SchedulerStatusResponse(BaseModel):
    enabled: bool
    job_count: int = Field(alias="jobCount")
    timezone: str
    jobs: Dict[str, JobMetrics] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_status(cls, status: Dict[str, Any]) -> "SchedulerStatusResponse":
        return cls(
            enabled=status["enabled"],
            job_count=status["job_count"],
            timezone=status["timezone"],
            jobs={name: JobMetrics(**metrics) for name, metrics in status["jobs"].items()},
        )


class JobRunResponse(BaseModel):
    job: str
    result: Dict[str, Any]

    @classmethod
    def from_result(cls, job: str, result: Any) -> "JobRunResponse":
        if isinstance(result, BaseModel):
            payload = result.model_dump(mode="json")
        elif isinstance(result, int):
            payload = {"notifications_sent": result}
        else:
            payload = {"result": result}
        return cls(job=job, result=payload)


class DatabaseHealthResponse(BaseModel):
    healthy: bool
    last_checked_at: Optional[datetime] = Field(alias="lastCheckedAt", default=None)
    last_error: Optional[str] = Field(alias="lastError", default=None)
    pool_max: int = Field(alias="poolMax")
    pool_min: int = Field(alias="poolMin")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_snapshot(cls, snapshot: Dict[str, Any]) -> "DatabaseHealthResponse":
        return cls(**snapshot)


__all__ = ["DatabaseHealthResponse", "JobMetrics", "JobRunResponse", "SchedulerStatusResponse"]
