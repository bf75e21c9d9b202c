from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from ..errors import ConfigurationError, JobAlreadyRunningError, JobNotFoundError, SourceConnectionError
from ..metrics import render_prometheus
from ..scheduler import SyncScheduler
from ..schemas import (
    CancelOut,
    IntrospectResponse,
    ReloadOut,
    RunRequest,
    RunResponse,
    ScheduleOut,
    SchedulerStatusOut,
    SyncJobOut,
    TestConnectionResponse,
)

router = APIRouter(tags=["sync"])


def get_scheduler(request: Request) -> SyncScheduler:
    sched = getattr(request.app.state, "scheduler", None)
    if sched is None:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    return sched


def _http_for_config_error(e: ConfigurationError) -> HTTPException:
    if e.error_code == "NOT_FOUND":
        return HTTPException(status_code=404, detail=e.message)
    return HTTPException(status_code=400, detail=e.message)


# --- Scheduler ---
@router.get("/scheduler/status", response_model=SchedulerStatusOut)
def scheduler_status(sched: SyncScheduler = Depends(get_scheduler)):
    return SchedulerStatusOut.from_status(sched.status())


@router.post("/scheduler/reload", response_model=ReloadOut)
def scheduler_reload(sched: SyncScheduler = Depends(get_scheduler)):
    return ReloadOut(**sched.initialize())


@router.post("/sync-configs/{config_id}/schedule", response_model=ScheduleOut)
def schedule_config(config_id: str, sched: SyncScheduler = Depends(get_scheduler)):
    try:
        ok = sched.schedule(config_id)
    except ConfigurationError as e:
        raise _http_for_config_error(e)
    return ScheduleOut(configId=config_id, scheduled=ok)


@router.delete("/sync-configs/{config_id}/schedule", response_model=ScheduleOut)
def unschedule_config(config_id: str, sched: SyncScheduler = Depends(get_scheduler)):
    sched.unschedule(config_id)
    return ScheduleOut(configId=config_id, scheduled=False)


# --- Runs ---
@router.post("/sync-configs/{config_id}/run", response_model=RunResponse, status_code=202)
def run_config(config_id: str, payload: Optional[RunRequest] = None, sched: SyncScheduler = Depends(get_scheduler)):
    actor = payload.actorId if payload else None
    try:
        job_id = sched.trigger_immediate(config_id, actor_id=actor)
    except JobAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except ConfigurationError as e:
        raise _http_for_config_error(e)
    return RunResponse(jobId=job_id, configId=config_id)


@router.post("/sync-jobs/{job_id}/cancel", response_model=CancelOut)
def cancel_job(job_id: str, sched: SyncScheduler = Depends(get_scheduler)):
    try:
        ok = sched.request_cancel(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    return CancelOut(jobId=job_id, cancelRequested=ok)


@router.get("/sync-jobs/{job_id}", response_model=SyncJobOut)
def get_job(job_id: str, sched: SyncScheduler = Depends(get_scheduler)):
    job = sched.store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Sync job not found")
    return SyncJobOut.from_model(job)


@router.get("/sync-jobs", response_model=list[SyncJobOut])
def list_jobs(
    configId: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    sched: SyncScheduler = Depends(get_scheduler),
):
    return [SyncJobOut.from_model(j) for j in sched.store.list_jobs(configId, limit)]


# --- Data sources ---
@router.post("/data-sources/{ds_id}/test", response_model=TestConnectionResponse)
def test_data_source(ds_id: str, actorId: Optional[str] = Query(default=None),
                     sched: SyncScheduler = Depends(get_scheduler)):
    try:
        res = sched.test_data_source(ds_id, actor_id=actorId)
    except ConfigurationError as e:
        raise _http_for_config_error(e)
    return TestConnectionResponse(**res)


@router.get("/data-sources/{ds_id}/tables", response_model=IntrospectResponse)
def describe_data_source(ds_id: str, schema: Optional[str] = Query(default=None),
                         sched: SyncScheduler = Depends(get_scheduler)):
    try:
        res = sched.describe_source(ds_id, schema=schema)
    except ConfigurationError as e:
        raise _http_for_config_error(e)
    except SourceConnectionError as e:
        raise HTTPException(status_code=502, detail=e.message)
    return IntrospectResponse(dataSourceId=res["data_source_id"], schemas=res["schemas"])


@router.get("/metrics")
def metrics() -> Response:
    body = render_prometheus()
    return Response(content=body, media_type="text/plain; version=0.0.4; charset=utf-8")
