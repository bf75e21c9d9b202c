from __future__ import annotations

import json
from contextlib import contextmanager
from typing import Any, Iterator, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload, sessionmaker

from .config import Settings, settings as default_settings
from .entities import (
    ColumnSnapshot,
    ConnectionStatus,
    DataSourceSnapshot,
    JobStatus,
    ScheduleEntry,
    ScheduleType,
    SyncConfigSnapshot,
    TableSnapshot,
)
from .errors import ConfigurationError, JobNotFoundError
from .models import (
    AuditLog,
    ColumnConfig,
    DataSource,
    SyncConfig,
    SyncJob,
    TableConfig,
    create_meta_engine,
    init_db,
    make_session_factory,
    utcnow,
)
from .security import decrypt_text, encrypt_text

_TERMINAL = tuple(s.value for s in JobStatus if s.is_terminal)


class MetadataStore:
    """Typed reads and writes over the configuration/job database.

    Each call runs in its own short session, so concurrent runs of different
    configurations never share a transaction.
    """

    def __init__(self, session_factory: sessionmaker, cfg: Settings | None = None):
        self._sessions = session_factory
        self._cfg = cfg or default_settings

    @classmethod
    def from_url(cls, url: str, cfg: Settings | None = None, create: bool = True) -> "MetadataStore":
        engine = create_meta_engine(url)
        if create:
            init_db(engine)
        return cls(make_session_factory(engine), cfg)

    @contextmanager
    def session(self) -> Iterator[Session]:
        db = self._sessions()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # --- configuration reads ---
    def _data_source_snapshot(self, ds: DataSource) -> DataSourceSnapshot:
        password = ""
        if ds.password_encrypted:
            password = decrypt_text(ds.password_encrypted, self._cfg.secret_key)
            if password is None:
                raise ConfigurationError(
                    f"Stored credentials for data source '{ds.name}' cannot be decrypted",
                    details={"data_source_id": ds.id},
                )
        return DataSourceSnapshot(
            id=ds.id,
            name=ds.name,
            db_type=ds.db_type,
            host=ds.host or "",
            port=ds.port,
            database=ds.database,
            username=ds.username or "",
            password=password,
            ssl_enabled=bool(ds.ssl_enabled),
            is_active=bool(ds.is_active),
        )

    @staticmethod
    def _table_snapshot(t: TableConfig) -> TableSnapshot:
        return TableSnapshot(
            id=t.id,
            source_schema=t.source_schema,
            source_table=t.source_table,
            target_table=t.target_table,
            where_clause=t.where_clause,
            row_limit=t.row_limit,
            incremental_column=t.incremental_column,
            last_sync_value=t.last_sync_value,
            columns=tuple(
                ColumnSnapshot(
                    id=c.id,
                    source_column=c.source_column,
                    target_column=c.target_column,
                    data_type=c.data_type,
                    masking_type=c.masking_type,
                    masking_config=c.masking_config,
                    is_included=bool(c.is_included),
                    is_primary_key=bool(c.is_primary_key),
                )
                for c in t.column_configs
            ),
        )

    def load_config_snapshot(self, config_id: str) -> SyncConfigSnapshot:
        with self.session() as db:
            cfg = db.execute(
                select(SyncConfig)
                .where(SyncConfig.id == config_id)
                .options(selectinload(SyncConfig.table_configs).selectinload(TableConfig.column_configs))
            ).scalar_one_or_none()
            if cfg is None:
                raise ConfigurationError(f"Sync configuration {config_id} not found", error_code="NOT_FOUND", details={"config_id": config_id})
            if cfg.data_source is None:
                raise ConfigurationError(f"Sync configuration {config_id} has no data source")
            tables = sorted(
                (t for t in cfg.table_configs if t.is_active),
                key=lambda t: (t.source_schema or "", t.source_table, t.id),
            )
            return SyncConfigSnapshot(
                id=cfg.id,
                name=cfg.name,
                data_source=self._data_source_snapshot(cfg.data_source),
                is_active=bool(cfg.is_active),
                sync_mode=cfg.sync_mode,
                schedule_type=cfg.schedule_type,
                cron_expression=cfg.cron_expression,
                output_path=cfg.output_path,
                output_file_name=cfg.output_file_name,
                compress_output=bool(cfg.compress_output),
                encrypt_output=bool(cfg.encrypt_output),
                tables=tuple(self._table_snapshot(t) for t in tables),
            )

    def get_schedule_entry(self, config_id: str) -> Optional[ScheduleEntry]:
        with self.session() as db:
            c = db.get(SyncConfig, config_id)
            if c is None:
                return None
            return ScheduleEntry(c.id, c.name, c.schedule_type, c.cron_expression, bool(c.is_active))

    def list_schedulable_configs(self) -> list[ScheduleEntry]:
        with self.session() as db:
            rows = db.execute(
                select(SyncConfig).where(
                    SyncConfig.is_active == True,  # noqa: E712
                    SyncConfig.schedule_type != ScheduleType.MANUAL.value,
                )
            ).scalars().all()
            return [ScheduleEntry(c.id, c.name, c.schedule_type, c.cron_expression, bool(c.is_active)) for c in rows]

    def load_data_source(self, data_source_id: str) -> DataSourceSnapshot:
        with self.session() as db:
            ds = db.get(DataSource, data_source_id)
            if ds is None:
                raise ConfigurationError(f"Data source {data_source_id} not found", error_code="NOT_FOUND")
            return self._data_source_snapshot(ds)

    # --- jobs ---
    def create_job(self, config_id: str, triggered_by: str) -> str:
        with self.session() as db:
            job = SyncJob(id=str(uuid4()), sync_config_id=config_id, status=JobStatus.PENDING.value,
                          triggered_by=triggered_by, rows_processed=0, tables_processed=0)
            db.add(job)
            return job.id

    def mark_job_running(self, job_id: str) -> None:
        with self.session() as db:
            job = self._live_job(db, job_id)
            job.status = JobStatus.RUNNING.value
            job.started_at = utcnow()

    def update_job_progress(self, job_id: str, rows_processed: int, tables_processed: int,
                            warnings: Optional[list[str]] = None) -> None:
        with self.session() as db:
            job = self._live_job(db, job_id)
            job.rows_processed = int(rows_processed)
            job.tables_processed = int(tables_processed)
            if warnings is not None:
                job.warnings = warnings

    def finish_job(self, job_id: str, status: JobStatus, *, rows_processed: int, tables_processed: int,
                   output_file_path: Optional[str] = None, output_file_size: Optional[int] = None,
                   error_message: Optional[str] = None, error_details: Optional[Any] = None,
                   warnings: Optional[list[str]] = None) -> None:
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal job status")
        with self.session() as db:
            job = self._live_job(db, job_id)
            job.status = status.value
            job.completed_at = utcnow()
            job.rows_processed = int(rows_processed)
            job.tables_processed = int(tables_processed)
            job.output_file_path = output_file_path
            job.output_file_size = output_file_size
            job.error_message = error_message
            if error_details is not None:
                job.error_details = error_details if isinstance(error_details, str) else json.dumps(error_details, default=str)
            if warnings is not None:
                job.warnings = warnings

    @staticmethod
    def _live_job(db: Session, job_id: str) -> SyncJob:
        job = db.get(SyncJob, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status in _TERMINAL:
            raise ValueError(f"Sync job {job_id} is already {job.status}")
        return job

    def get_job(self, job_id: str) -> Optional[SyncJob]:
        with self.session() as db:
            return db.get(SyncJob, job_id)

    def list_jobs(self, config_id: Optional[str] = None, limit: int = 50) -> list[SyncJob]:
        with self.session() as db:
            q = select(SyncJob).order_by(SyncJob.created_at.desc()).limit(int(limit))
            if config_id:
                q = q.where(SyncJob.sync_config_id == config_id)
            return list(db.execute(q).scalars().all())

    def request_cancel(self, job_id: str) -> bool:
        """Flag a pending/running job for cancellation. False if it already ended."""
        with self.session() as db:
            job = db.get(SyncJob, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status in _TERMINAL:
                return False
            job.cancel_requested = True
            return True

    def is_cancel_requested(self, job_id: str) -> bool:
        with self.session() as db:
            flag = db.execute(select(SyncJob.cancel_requested).where(SyncJob.id == job_id)).scalar_one_or_none()
            return bool(flag)

    # --- write-backs ---
    def save_watermark(self, table_config_id: str, value: Optional[str]) -> None:
        with self.session() as db:
            t = db.get(TableConfig, table_config_id)
            if t is None:
                raise ConfigurationError(f"Table configuration {table_config_id} not found")
            t.last_sync_value = value

    def get_watermark(self, table_config_id: str) -> Optional[str]:
        with self.session() as db:
            t = db.get(TableConfig, table_config_id)
            return t.last_sync_value if t else None

    def record_connection_status(self, data_source_id: str, status: ConnectionStatus) -> None:
        with self.session() as db:
            ds = db.get(DataSource, data_source_id)
            if ds is None:
                return
            ds.connection_status = status.value
            ds.last_tested_at = utcnow()

    def get_data_source(self, data_source_id: str) -> Optional[DataSource]:
        with self.session() as db:
            return db.get(DataSource, data_source_id)

    # --- audit (append-only) ---
    def append_audit(self, event_type: str, details: Optional[dict] = None, *, actor_id: Optional[str] = None,
                     resource_type: Optional[str] = None, resource_id: Optional[str] = None,
                     data_source_id: Optional[str] = None) -> str:
        with self.session() as db:
            row = AuditLog(
                id=str(uuid4()),
                event_type=event_type,
                event_details=json.dumps(details or {}, default=str),
                user_id=actor_id,
                resource_type=resource_type,
                resource_id=resource_id,
                data_source_id=data_source_id,
            )
            db.add(row)
            return row.id

    def list_audit(self, resource_id: Optional[str] = None, limit: int = 100) -> list[AuditLog]:
        with self.session() as db:
            q = select(AuditLog).order_by(AuditLog.created_at.desc()).limit(int(limit))
            if resource_id:
                q = q.where(AuditLog.resource_id == resource_id)
            return list(db.execute(q).scalars().all())

    # --- authoring helpers (seeding / tests; the CRUD layer owns these in production) ---
    def add_data_source(self, *, name: str, db_type: str, database: str, host: str = "", port: Optional[int] = None,
                        username: str = "", password: str = "", ssl_enabled: bool = False,
                        is_active: bool = True, id: Optional[str] = None) -> str:
        with self.session() as db:
            ds = DataSource(
                id=id or str(uuid4()), name=name, db_type=db_type, host=host, port=port, database=database,
                username=username,
                password_encrypted=(encrypt_text(password, self._cfg.secret_key) if password else None),
                ssl_enabled=ssl_enabled, is_active=is_active,
                connection_status=ConnectionStatus.UNTESTED.value,
            )
            db.add(ds)
            return ds.id

    def add_sync_config(self, *, name: str, data_source_id: str, sync_mode: str = "full",
                        schedule_type: str = "manual", cron_expression: Optional[str] = None,
                        output_path: Optional[str] = None, output_file_name: Optional[str] = None,
                        compress_output: bool = False, encrypt_output: bool = False,
                        is_active: bool = True, id: Optional[str] = None) -> str:
        with self.session() as db:
            c = SyncConfig(
                id=id or str(uuid4()), name=name, data_source_id=data_source_id, sync_mode=sync_mode,
                schedule_type=schedule_type, cron_expression=cron_expression, output_path=output_path,
                output_file_name=output_file_name, compress_output=compress_output,
                encrypt_output=encrypt_output, is_active=is_active,
            )
            db.add(c)
            return c.id

    def update_sync_config(self, config_id: str, **fields: Any) -> None:
        with self.session() as db:
            c = db.get(SyncConfig, config_id)
            if c is None:
                raise ConfigurationError(f"Sync configuration {config_id} not found", error_code="NOT_FOUND")
            for k, v in fields.items():
                setattr(c, k, v)

    def add_table_config(self, *, sync_config_id: str, source_table: str, source_schema: Optional[str] = None,
                         target_table: Optional[str] = None, where_clause: Optional[str] = None,
                         row_limit: Optional[int] = None, incremental_column: Optional[str] = None,
                         last_sync_value: Optional[str] = None, is_active: bool = True,
                         id: Optional[str] = None) -> str:
        with self.session() as db:
            t = TableConfig(
                id=id or str(uuid4()), sync_config_id=sync_config_id, source_schema=source_schema,
                source_table=source_table, target_table=target_table, where_clause=where_clause,
                row_limit=row_limit, incremental_column=incremental_column, last_sync_value=last_sync_value,
                is_active=is_active,
            )
            db.add(t)
            return t.id

    def add_column_config(self, *, table_config_id: str, source_column: str, position: Optional[int] = None,
                          target_column: Optional[str] = None, data_type: Optional[str] = None,
                          masking_type: str = "none", masking_config: Optional[str | dict] = None,
                          is_included: bool = True, is_primary_key: bool = False,
                          id: Optional[str] = None) -> str:
        if isinstance(masking_config, dict):
            masking_config = json.dumps(masking_config)
        with self.session() as db:
            if position is None:
                position = len(db.execute(
                    select(ColumnConfig.id).where(ColumnConfig.table_config_id == table_config_id)
                ).all())
            c = ColumnConfig(
                id=id or str(uuid4()), table_config_id=table_config_id, position=position,
                source_column=source_column, target_column=target_column, data_type=data_type,
                masking_type=masking_type, masking_config=masking_config, is_included=is_included,
                is_primary_key=is_primary_key,
            )
            db.add(c)
            return c.id
