from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request, Response
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .config import configure_logging, settings
from .metrics import summary_observe
from .routers import sync as sync_router
from .scheduler import SyncScheduler
from .schemas import HealthResponse
from .store import MetadataStore

_log = logging.getLogger("sentinelconnect.main")

app = FastAPI(title=settings.app_name)
# Respect X-Forwarded-* headers when running behind a reverse proxy
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")


@app.middleware("http")
async def _metrics_mw(request: Request, call_next):
    path = request.url.path or ""
    is_api = path.startswith("/api/")
    _s = time.perf_counter()
    try:
        resp: Response = await call_next(request)
        return resp
    finally:
        if is_api:
            summary_observe("app_request_duration_ms", (time.perf_counter() - _s) * 1000,
                            {"method": request.method or "GET"})


@app.on_event("startup")
async def _startup():
    configure_logging()
    store = MetadataStore.from_url(settings.metadata_db_url, settings)
    sched = SyncScheduler(store, settings)
    app.state.scheduler = sched
    if settings.run_scheduler:
        try:
            sched.initialize()
        except Exception:
            # Timers can be installed later through /api/scheduler/reload
            _log.exception("scheduler initialization failed")


@app.on_event("shutdown")
async def _shutdown():
    sched = getattr(app.state, "scheduler", None)
    if sched is not None:
        sched.stop(wait=True)


app.include_router(sync_router.router, prefix="/api")


@app.get("/api/healthz", response_model=HealthResponse)
async def healthz() -> HealthResponse:
    return HealthResponse(app=settings.app_name, env=settings.environment)
