from __future__ import annotations

import logging
import re
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from datetime import datetime
from typing import Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from .config import Settings, settings as default_settings
from .entities import ConnectionStatus, JobStatus, ScheduleEntry, ScheduleType, TriggerSource
from .errors import ConfigurationError, JobAlreadyRunningError, SyncEngineError
from .executor import RunContext, SyncExecutor
from .guard import ConcurrencyGuard
from .metrics import counter_inc
from .store import MetadataStore

_log = logging.getLogger("sentinelconnect.scheduler")

CRON_PRESETS: dict[str, str] = {
    ScheduleType.HOURLY.value: "0 * * * *",
    ScheduleType.DAILY.value: "0 0 * * *",
    ScheduleType.WEEKLY.value: "0 0 * * 0",
}

# crontab numbering: 0 and 7 are Sunday
_DOW_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun")


def cron_expression_for(schedule_type: Optional[str], cron_expression: Optional[str] = None) -> Optional[str]:
    """Cron string for a schedule type; None for manual or unknown types."""
    st = (schedule_type or "").strip().lower()
    if st == ScheduleType.CRON.value:
        return (cron_expression or "").strip() or None
    return CRON_PRESETS.get(st)


def _translate_day_of_week(field: str) -> str:
    # APScheduler counts weekdays from Monday; convert numeric crontab values to names
    out: list[str] = []
    for part in field.split(","):
        body, _, step = part.partition("/")
        if step or not re.fullmatch(r"\d+(-\d+)?", body):
            out.append(part)
            continue
        lo, _, hi = body.partition("-")
        start, end = int(lo), int(hi or lo)
        if end > 7 or start > end:
            raise ValueError(f"invalid day of week: {part}")
        out.extend(_DOW_NAMES[d] for d in range(start, end + 1))
    return ",".join(dict.fromkeys(out))


def validate_cron(expr: Optional[str], timezone: str = "UTC") -> CronTrigger:
    """Build a trigger from a five-field crontab expression or raise ConfigurationError."""
    values = (expr or "").split()
    if len(values) != 5:
        raise ConfigurationError(f"Invalid cron expression '{expr}': expected 5 fields, got {len(values)}")
    minute, hour, day, month, dow = values
    try:
        return CronTrigger(minute=minute, hour=hour, day=day, month=month,
                           day_of_week=_translate_day_of_week(dow), timezone=timezone)
    except ValueError as e:
        raise ConfigurationError(f"Invalid cron expression '{expr}': {e}") from e


def _job_id(config_id: str) -> str:
    return f"sync:{config_id}"


class SyncScheduler:
    """Cron timers plus manual triggers for sync configurations.

    Both paths go through the same ConcurrencyGuard. A scheduled run that finds
    the configuration busy is skipped; a manual one raises JobAlreadyRunningError.
    """

    def __init__(self, store: MetadataStore, cfg: Settings | None = None,
                 executor: SyncExecutor | None = None, guard: ConcurrencyGuard | None = None):
        self.store = store
        self.cfg = cfg or default_settings
        self.executor = executor or SyncExecutor(store, self.cfg)
        self.guard = guard or ConcurrencyGuard()
        self.timezone = (self.cfg.scheduler_timezone or "UTC").strip() or "UTC"
        self._scheduler: Optional[BackgroundScheduler] = None
        self._pool: Optional[ThreadPoolExecutor] = None
        self._futures: dict[str, Future] = {}
        self._lock = threading.Lock()

    # --- lifecycle ---
    def _ensure_started(self) -> BackgroundScheduler:
        with self._lock:
            if self._scheduler is None:
                self._scheduler = BackgroundScheduler(timezone=self.timezone)
                self._scheduler.start()
            return self._scheduler

    def _ensure_pool(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(max_workers=max(1, int(self.cfg.worker_pool_size)),
                                                thread_name_prefix="sync-worker")
            return self._pool

    def initialize(self) -> dict:
        """Install one timer per active, non-manual configuration, replacing any existing ones."""
        sched = self._ensure_started()
        for job in sched.get_jobs():
            if job.id.startswith("sync:"):
                sched.remove_job(job.id)
        scheduled = 0
        skipped = 0
        try:
            entries = self.store.list_schedulable_configs()
        except Exception:
            _log.exception("could not load sync configurations; scheduler started without timers")
            return {"scheduled": 0, "skipped": 0}
        for entry in entries:
            try:
                ok = self.schedule(entry)
            except Exception:
                _log.exception("failed to schedule config %s", entry.id)
                ok = False
            if ok:
                scheduled += 1
            else:
                skipped += 1
        _log.info("scheduler initialized: %d timers installed, %d skipped", scheduled, skipped)
        return {"scheduled": scheduled, "skipped": skipped}

    def stop(self, wait: bool = True) -> None:
        with self._lock:
            sched, self._scheduler = self._scheduler, None
            pool, self._pool = self._pool, None
        if sched is not None:
            sched.shutdown(wait=wait)
        if pool is not None:
            pool.shutdown(wait=wait)
        _log.info("scheduler stopped")

    # --- timers ---
    def schedule(self, entry: ScheduleEntry | str) -> bool:
        """Install (or replace) the timer for a configuration. False when nothing was installed."""
        if isinstance(entry, str):
            found = self.store.get_schedule_entry(entry)
            if found is None:
                raise ConfigurationError(f"Sync configuration {entry} not found")
            entry = found
        self.unschedule(entry.id)
        if not entry.is_active:
            return False
        expr = cron_expression_for(entry.schedule_type, entry.cron_expression)
        if expr is None:
            return False
        try:
            trigger = validate_cron(expr, self.timezone)
        except ConfigurationError as e:
            _log.warning("not scheduling config %s (%s): %s", entry.id, entry.name, e.message)
            return False
        self._ensure_started().add_job(
            func=self._run_scheduled,
            trigger=trigger,
            id=_job_id(entry.id),
            name=entry.name,
            replace_existing=True,
            kwargs={"config_id": entry.id},
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )
        _log.info("scheduled config %s (%s) with '%s'", entry.id, entry.name, expr)
        return True

    def unschedule(self, config_id: str) -> bool:
        sched = self._scheduler
        if sched is None:
            return False
        try:
            sched.remove_job(_job_id(config_id))
        except JobLookupError:
            return False
        _log.info("unscheduled config %s", config_id)
        return True

    def is_scheduled(self, config_id: str) -> bool:
        sched = self._scheduler
        return sched is not None and sched.get_job(_job_id(config_id)) is not None

    def _run_scheduled(self, config_id: str) -> None:
        # Timer callback: nothing may escape into the APScheduler thread
        with self.guard.held(config_id) as acquired:
            if not acquired:
                counter_inc("sync_lock_busy_total", {"path": "schedule"})
                _log.info("skipping scheduled run of %s: a sync job is already running", config_id)
                return
            try:
                self.executor.execute(config_id, TriggerSource.SCHEDULE.value)
            except SyncEngineError as e:
                _log.error("scheduled run of %s not started: %s", config_id, e.message)
            except Exception:
                _log.exception("scheduled run of %s crashed", config_id)

    # --- manual runs ---
    def trigger_immediate(self, config_id: str, actor_id: Optional[str] = None) -> str:
        """Start a run in the worker pool and return its job id without waiting for it."""
        if not self.guard.try_acquire(config_id):
            counter_inc("sync_lock_busy_total", {"path": "manual"})
            raise JobAlreadyRunningError(config_id)
        try:
            ctx = self.executor.prepare(config_id, TriggerSource.MANUAL.value, actor_id=actor_id)
        except BaseException:
            self.guard.release(config_id)
            raise
        try:
            future = self._ensure_pool().submit(self._run_manual, ctx)
        except RuntimeError as e:
            self.guard.release(config_id)
            self.store.finish_job(ctx.job_id, JobStatus.FAILED, rows_processed=0, tables_processed=0,
                                  error_message=f"Worker pool unavailable: {e}")
            raise
        with self._lock:
            self._futures[ctx.job_id] = future
        future.add_done_callback(lambda _f, jid=ctx.job_id: self._forget(jid))
        _log.info("manual run of %s started as job %s", config_id, ctx.job_id)
        return ctx.job_id

    def _run_manual(self, ctx: RunContext) -> None:
        try:
            self.executor.run(ctx)
        finally:
            self.guard.release(ctx.config.id)

    def _forget(self, job_id: str) -> None:
        with self._lock:
            self._futures.pop(job_id, None)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """Block until a manually triggered job finishes. False on timeout."""
        with self._lock:
            future = self._futures.get(job_id)
        if future is None:
            return True
        done, _ = wait_futures([future], timeout=timeout)
        return bool(done)

    def request_cancel(self, job_id: str) -> bool:
        ok = self.store.request_cancel(job_id)
        if ok:
            _log.info("cancellation requested for job %s", job_id)
        return ok

    def is_running(self, config_id: str) -> bool:
        return self.guard.is_running(config_id)

    def status(self) -> dict:
        sched = self._scheduler
        jobs = [j for j in sched.get_jobs() if j.id.startswith("sync:")] if sched is not None else []
        schedules = []
        for j in jobs:
            config_id = j.id[len("sync:"):]
            nrt = getattr(j, "next_run_time", None)
            schedules.append({
                "config_id": config_id,
                "name": j.name,
                "running": self.guard.is_running(config_id),
                "next_run_at": nrt.isoformat() if isinstance(nrt, datetime) else None,
            })
        schedules.sort(key=lambda s: s["next_run_at"] or "")
        return {
            "scheduler_running": sched is not None,
            "total_scheduled": len(schedules),
            "running_jobs": len(self.guard.running()),
            "running_config_ids": self.guard.running(),
            "schedules": schedules,
        }

    # --- data source checks ---
    def test_data_source(self, data_source_id: str, actor_id: Optional[str] = None) -> dict:
        source = self.store.load_data_source(data_source_id)
        connector = self.executor.connector_factory(source, self.cfg)
        ok, error = connector.test_connection()
        status = ConnectionStatus.CONNECTED if ok else ConnectionStatus.FAILED
        self.store.record_connection_status(data_source_id, status)
        self.store.append_audit(
            "connection_tested",
            {"name": source.name, "db_type": source.db_type, "ok": ok, "error": error},
            actor_id=actor_id,
            resource_type="data_source",
            resource_id=data_source_id,
            data_source_id=data_source_id,
        )
        _log.info("connection test for %s: %s", source.name, status.value)
        return {"ok": ok, "status": status.value, "error": error}

    def describe_source(self, data_source_id: str, schema: Optional[str] = None) -> dict:
        """Schemas, tables and columns visible through the data source."""
        source = self.store.load_data_source(data_source_id)
        with self.executor.connector_factory(source, self.cfg) as conn:
            schemas = [schema] if schema else conn.list_schemas()
            out = []
            for s in schemas:
                tables = [
                    {"name": t, "columns": conn.list_columns(t, schema=s)}
                    for t in conn.list_tables(schema=s)
                ]
                out.append({"name": s, "tables": tables})
        return {"data_source_id": data_source_id, "schemas": out}
