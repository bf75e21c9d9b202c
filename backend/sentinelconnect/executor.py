from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Optional

from .config import Settings, settings as default_settings
from .connectors import Connector, ExtractPlan, connector_for
from .entities import (
    ConnectionStatus,
    DataSourceSnapshot,
    JobStatus,
    SyncConfigSnapshot,
    TableSnapshot,
    TriggerSource,
)
from .errors import ConfigurationError, SourceConnectionError, SyncEngineError
from .masking import MaskRule, mask_row, resolve_rule
from .metrics import counter_inc, summary_observe
from .output import ArtifactWriter, OutputColumn, duck_type_for, render_file_name
from .store import MetadataStore

_log = logging.getLogger("sentinelconnect.executor")

ConnectorFactory = Callable[[DataSourceSnapshot, Settings], Connector]


# --- watermark helpers ---

def format_watermark(value: Any) -> str:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _parse_iso_datetime(s: str) -> datetime:
    s = s.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    return datetime.fromisoformat(s)


def watermark_greater(observed: Any, recorded: str) -> bool:
    """Compare a freshly read value against the stored (text) watermark."""
    try:
        if isinstance(observed, bool):
            raise TypeError
        if isinstance(observed, (int, float, Decimal)):
            return Decimal(str(observed)) > Decimal(recorded.strip())
        if isinstance(observed, datetime):
            old = _parse_iso_datetime(recorded)
            if (observed.tzinfo is None) != (old.tzinfo is None):
                # Mixed naive/aware values are treated as UTC
                observed = observed if observed.tzinfo else observed.replace(tzinfo=timezone.utc)
                old = old if old.tzinfo else old.replace(tzinfo=timezone.utc)
            return observed > old
        if isinstance(observed, date):
            return observed > date.fromisoformat(recorded.strip()[:10])
    except (TypeError, ValueError, InvalidOperation):
        pass
    return format_watermark(observed) > recorded


def advance_watermark(recorded: Optional[str], observed: Any) -> Optional[str]:
    """Return the new watermark; never moves backwards."""
    if observed is None:
        return recorded
    if recorded is None or watermark_greater(observed, recorded):
        return format_watermark(observed)
    return recorded


def _max_value(current: Any, candidate: Any) -> Any:
    if candidate is None:
        return current
    if current is None:
        return candidate
    try:
        return candidate if candidate > current else current
    except TypeError:
        return candidate if str(candidate) > str(current) else current


# --- run planning ---

@dataclass
class TablePlan:
    table: TableSnapshot
    extract: ExtractPlan
    rules: list[MaskRule]
    output_columns: list[OutputColumn]
    # Incremental row cap, applied while reading so rows tied on the
    # watermark value are never split across runs
    watermark_row_limit: Optional[int] = None


@dataclass
class RunContext:
    job_id: str
    config: SyncConfigSnapshot
    connector: Connector
    tables: list[TablePlan]
    triggered_by: str
    actor_id: Optional[str] = None
    warnings: list[str] = field(default_factory=list)
    # Running totals of completed tables
    rows_processed: int = 0
    tables_processed: int = 0


class _Cancelled(Exception):
    pass


class SyncExecutor:
    """Runs one sync configuration end to end.

    ``prepare`` loads the configuration snapshot and creates the job; it is the
    only step that raises to the caller. ``run`` records every later failure on
    the job record instead of raising.
    """

    def __init__(self, store: MetadataStore, cfg: Settings | None = None,
                 connector_factory: ConnectorFactory | None = None):
        self.store = store
        self.cfg = cfg or default_settings
        self.connector_factory = connector_factory or connector_for

    def execute(self, config_id: str, triggered_by: str = TriggerSource.MANUAL.value,
                actor_id: Optional[str] = None) -> str:
        ctx = self.prepare(config_id, triggered_by, actor_id=actor_id)
        return self.run(ctx)

    # --- step 1: snapshot, plan, job row ---
    def prepare(self, config_id: str, triggered_by: str = TriggerSource.MANUAL.value,
                actor_id: Optional[str] = None) -> RunContext:
        config = self.store.load_config_snapshot(config_id)
        if config.is_incremental:
            missing = [t.qualified_name for t in config.tables if not t.incremental_column]
            if missing:
                raise ConfigurationError(
                    "Incremental sync requires a watermark column on every active table",
                    details={"config_id": config_id, "tables": missing},
                )
        connector = self.connector_factory(config.data_source, self.cfg)
        warnings: list[str] = []
        plans = [self._plan_table(config, t, warnings) for t in config.tables]
        job_id = self.store.create_job(config_id, triggered_by)
        _log.info("prepared job %s for config %s (%d tables, trigger=%s)",
                  job_id, config.name, len(plans), triggered_by)
        return RunContext(job_id=job_id, config=config, connector=connector, tables=plans,
                          triggered_by=triggered_by, actor_id=actor_id, warnings=warnings)

    def _plan_table(self, config: SyncConfigSnapshot, table: TableSnapshot, warnings: list[str]) -> TablePlan:
        rules: list[MaskRule] = []
        out_cols: list[OutputColumn] = []
        for col in table.included_columns:
            resolved = resolve_rule(
                col,
                self.cfg.effective_masking_secret,
                allow_nondeterministic_pk=self.cfg.allow_nondeterministic_pk_masking,
            )
            warnings.extend(f"{table.qualified_name}: {w}" for w in resolved.warnings)
            rules.append(resolved.rule)
            duck_type = duck_type_for(col.data_type) if resolved.rule.preserves_type else "TEXT"
            out_cols.append(OutputColumn(col.output_name, duck_type))
        row_limit = table.row_limit
        if not row_limit and self.cfg.default_row_limit:
            row_limit = self.cfg.default_row_limit
        row_limit = row_limit or None
        watermark_row_limit = None
        if config.is_incremental and table.incremental_column and row_limit:
            watermark_row_limit, row_limit = row_limit, None
        extract = ExtractPlan(
            schema=table.source_schema,
            table=table.source_table,
            columns=tuple(c.source_column for c in table.included_columns),
            where_clause=table.where_clause,
            row_limit=row_limit,
            watermark_column=table.incremental_column,
            watermark_value=(table.last_sync_value if config.is_incremental else None),
        )
        return TablePlan(table=table, extract=extract, rules=rules, output_columns=out_cols,
                         watermark_row_limit=watermark_row_limit)

    # --- steps 2-7 ---
    def run(self, ctx: RunContext) -> str:
        try:
            self._run(ctx)
        except Exception as e:
            _log.exception("sync job %s aborted unexpectedly", ctx.job_id)
            try:
                self._finish(ctx, JobStatus.FAILED, ctx.rows_processed, ctx.tables_processed,
                             error=f"Unexpected error: {e}",
                             details={"type": type(e).__name__}, started=None)
            except Exception:
                _log.exception("could not record failure of job %s", ctx.job_id)
        finally:
            ctx.connector.close()
        return ctx.job_id

    def _run(self, ctx: RunContext) -> None:
        started = time.perf_counter()
        cfg = ctx.config
        self.store.mark_job_running(ctx.job_id)
        _log.info("job %s running: config=%s source=%s", ctx.job_id, cfg.name, cfg.data_source.name)

        try:
            ctx.connector.open()
        except SourceConnectionError as e:
            self.store.record_connection_status(cfg.data_source.id, ConnectionStatus.FAILED)
            _log.error("job %s: %s", ctx.job_id, e.message)
            self._finish(ctx, JobStatus.FAILED, 0, 0, error=e.message,
                         details={"code": e.error_code, **e.details}, started=started)
            return
        self.store.record_connection_status(cfg.data_source.id, ConnectionStatus.CONNECTED)

        directory = Path(cfg.output_path or self.cfg.default_output_path)
        file_name = render_file_name(cfg.output_file_name, job_id=ctx.job_id, config_id=cfg.id)
        try:
            artifact = ArtifactWriter(directory, file_name, compress=cfg.compress_output,
                                      encrypt=cfg.encrypt_output, secret=self.cfg.secret_key)
        except Exception as e:
            self._finish(ctx, JobStatus.FAILED, 0, 0, error=f"Cannot create output artifact in {directory}: {e}",
                         details={"code": "OUTPUT_ERROR"}, started=started)
            return

        try:
            errors, pending_watermarks, cancelled = self._run_tables(ctx, artifact)
        except Exception:
            artifact.abort()
            raise

        try:
            out_path, out_size = artifact.finalize()
        except Exception as e:
            artifact.abort()
            _log.error("job %s: output finalization failed: %s", ctx.job_id, e)
            errors.append({"table": None, "code": "OUTPUT_ERROR", "error": str(e)})
            self._finish(ctx, JobStatus.FAILED, ctx.rows_processed, ctx.tables_processed,
                         error=f"Output finalization failed: {e}",
                         details=errors, started=started)
            return

        # Watermarks move only once the rows they cover are published
        for table_id, value in pending_watermarks:
            self.store.save_watermark(table_id, value)

        if cancelled:
            status, error = JobStatus.CANCELLED, "Cancelled by request"
        elif errors:
            status = JobStatus.FAILED
            if len(errors) == 1:
                error = f"Table {errors[0]['table']} failed: {errors[0]['error']}"
            else:
                error = f"{len(errors)} of {len(ctx.tables)} tables failed: " + ", ".join(str(e["table"]) for e in errors)
        else:
            status, error = JobStatus.COMPLETED, None
        self._finish(ctx, status, ctx.rows_processed, ctx.tables_processed, error=error, details=(errors or None),
                     started=started, output_path=str(out_path), output_size=out_size)

    def _run_tables(self, ctx: RunContext, artifact: ArtifactWriter):
        """Process tables in order; a failed table is recorded and the rest continue."""
        errors: list[dict] = []
        pending_watermarks: list[tuple[str, str]] = []
        cancelled = False
        for plan in ctx.tables:
            if self.store.is_cancel_requested(ctx.job_id):
                cancelled = True
                break
            name = plan.table.qualified_name
            try:
                rows, new_wm = self._run_table(ctx, plan, artifact)
            except _Cancelled:
                _log.info("job %s: cancelled during %s", ctx.job_id, name)
                cancelled = True
                break
            except Exception as e:
                code = e.error_code if isinstance(e, SyncEngineError) else "EXTRACTION_ERROR"
                msg = e.message if isinstance(e, SyncEngineError) else str(e)
                _log.error("job %s: table %s failed: %s", ctx.job_id, name, msg)
                errors.append({"table": name, "code": code, "error": msg})
                continue
            finally:
                self._collect_masking_warnings(ctx, plan)
            ctx.rows_processed += rows
            ctx.tables_processed += 1
            if new_wm is not None and new_wm != plan.table.last_sync_value:
                pending_watermarks.append((plan.table.id, new_wm))
            self.store.update_job_progress(ctx.job_id, ctx.rows_processed, ctx.tables_processed,
                                           warnings=list(ctx.warnings))
            _log.info("job %s: table %s done (%d rows)", ctx.job_id, name, rows)
        return errors, pending_watermarks, cancelled

    @staticmethod
    def _collect_masking_warnings(ctx: RunContext, plan: TablePlan) -> None:
        for col, rule in zip(plan.table.included_columns, plan.rules):
            count = getattr(rule, "unparsable", 0)
            if count:
                msg = (f"{plan.table.qualified_name}: column '{col.source_column}': {count} value(s) "
                       f"not readable as {col.data_type}; written as NULL")
                _log.warning("job %s: %s", ctx.job_id, msg)
                ctx.warnings.append(msg)

    def _run_table(self, ctx: RunContext, plan: TablePlan, artifact: ArtifactWriter) -> tuple[int, Optional[str]]:
        writer = artifact.table(plan.table.output_name, plan.output_columns)
        wm_idx = plan.extract.watermark_index
        limit = plan.watermark_row_limit
        width = len(plan.rules)
        max_seen: Any = None
        last_wm: Any = None
        rows = 0
        done = False
        batches = ctx.connector.stream_rows(plan.extract, self.cfg.fetch_batch_size)
        try:
            for batch in batches:
                if limit is not None:
                    # Past the cap, keep reading only rows that tie with the last watermark
                    kept = []
                    for row in batch:
                        if rows + len(kept) >= limit and row[wm_idx] != last_wm:
                            done = True
                            break
                        kept.append(row)
                        last_wm = row[wm_idx]
                    batch = kept
                masked = []
                for row in batch:
                    if wm_idx is not None:
                        max_seen = _max_value(max_seen, row[wm_idx])
                    masked.append(mask_row(plan.rules, row[:width]))
                writer.insert(masked)
                rows += len(batch)
                # Cancellation is honoured between batches only
                if self.store.is_cancel_requested(ctx.job_id):
                    raise _Cancelled()
                if done:
                    break
            writer.commit()
        except BaseException:
            writer.discard()
            raise
        finally:
            batches.close()
        artifact.mark_committed(plan.table.output_name)
        new_wm = None
        if plan.extract.watermark_column:
            new_wm = advance_watermark(plan.table.last_sync_value, max_seen)
        return rows, new_wm

    def _finish(self, ctx: RunContext, status: JobStatus, rows: int, tables: int, *, error: Optional[str],
                details: Any, started: Optional[float], output_path: Optional[str] = None,
                output_size: Optional[int] = None) -> None:
        self.store.finish_job(
            ctx.job_id, status, rows_processed=rows, tables_processed=tables,
            output_file_path=output_path, output_file_size=output_size,
            error_message=error, error_details=details, warnings=list(ctx.warnings),
        )
        self.store.append_audit(
            f"sync_{status.value}",
            {
                "job_id": ctx.job_id,
                "config_id": ctx.config.id,
                "config_name": ctx.config.name,
                "status": status.value,
                "rows_processed": rows,
                "tables_processed": tables,
                "triggered_by": ctx.triggered_by,
                "output_file_path": output_path,
                "error": error,
            },
            actor_id=ctx.actor_id,
            resource_type="sync_job",
            resource_id=ctx.job_id,
            data_source_id=ctx.config.data_source.id,
        )
        counter_inc("sync_jobs_total", {"status": status.value})
        counter_inc("sync_rows_total", amount=rows)
        if started is not None:
            summary_observe("sync_job_duration_seconds", time.perf_counter() - started)
        _log.info("job %s finished: status=%s rows=%d tables=%d", ctx.job_id, status.value, rows, tables)
