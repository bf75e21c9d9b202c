from __future__ import annotations

import json
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str = "ok"
    app: str
    env: str


# --- Scheduler ---
class ScheduleInfo(BaseModel):
    configId: str
    name: Optional[str] = None
    running: bool = False
    nextRunAt: Optional[str] = None


class SchedulerStatusOut(BaseModel):
    schedulerRunning: bool
    totalScheduled: int
    runningJobs: int
    runningConfigIds: List[str] = []
    schedules: List[ScheduleInfo] = []

    @classmethod
    def from_status(cls, s: dict) -> "SchedulerStatusOut":
        return cls(
            schedulerRunning=s["scheduler_running"],
            totalScheduled=s["total_scheduled"],
            runningJobs=s["running_jobs"],
            runningConfigIds=s["running_config_ids"],
            schedules=[
                ScheduleInfo(configId=x["config_id"], name=x.get("name"), running=x["running"], nextRunAt=x["next_run_at"])
                for x in s["schedules"]
            ],
        )


class ReloadOut(BaseModel):
    scheduled: int
    skipped: int


class ScheduleOut(BaseModel):
    configId: str
    scheduled: bool


# --- Jobs ---
class RunRequest(BaseModel):
    actorId: Optional[str] = Field(default=None, description="User id recorded on the audit event")


class RunResponse(BaseModel):
    jobId: str
    configId: str
    status: str = "pending"


class CancelOut(BaseModel):
    jobId: str
    cancelRequested: bool


class SyncJobOut(BaseModel):
    id: str
    syncConfigId: str
    status: str
    triggeredBy: str
    startedAt: Optional[datetime] = None
    completedAt: Optional[datetime] = None
    rowsProcessed: int = 0
    tablesProcessed: int = 0
    outputFilePath: Optional[str] = None
    outputFileSize: Optional[int] = None
    errorMessage: Optional[str] = None
    errorDetails: Optional[Any] = None
    warnings: List[str] = []
    cancelRequested: bool = False
    createdAt: Optional[datetime] = None

    @classmethod
    def from_model(cls, job) -> "SyncJobOut":
        details: Any = job.error_details
        if details:
            try:
                details = json.loads(details)
            except ValueError:
                pass
        return cls(
            id=job.id,
            syncConfigId=job.sync_config_id,
            status=job.status,
            triggeredBy=job.triggered_by,
            startedAt=job.started_at,
            completedAt=job.completed_at,
            rowsProcessed=job.rows_processed or 0,
            tablesProcessed=job.tables_processed or 0,
            outputFilePath=job.output_file_path,
            outputFileSize=job.output_file_size,
            errorMessage=job.error_message,
            errorDetails=details,
            warnings=job.warnings,
            cancelRequested=bool(job.cancel_requested),
            createdAt=job.created_at,
        )


# --- Data sources ---
class TestConnectionResponse(BaseModel):
    ok: bool
    status: str
    error: Optional[str] = None


class ColumnInfo(BaseModel):
    name: str
    type: Optional[str] = None


class TableInfo(BaseModel):
    name: str
    columns: List[ColumnInfo]


class SchemaInfo(BaseModel):
    name: str
    tables: List[TableInfo]


class IntrospectResponse(BaseModel):
    dataSourceId: str
    schemas: List[SchemaInfo]
