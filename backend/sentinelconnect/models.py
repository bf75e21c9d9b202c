from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, create_engine, func
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker
from sqlalchemy.pool import NullPool

from .entities import ConnectionStatus, JobStatus, MaskingType, ScheduleType, SyncMode, TriggerSource


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class DataSource(Base):
    __tablename__ = "data_sources"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    db_type: Mapped[str] = mapped_column(String, nullable=False)  # postgresql | mysql | mssql | oracle | sqlite
    host: Mapped[str] = mapped_column(String, nullable=False, default="")
    port: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    database: Mapped[str] = mapped_column(String, nullable=False)
    username: Mapped[str] = mapped_column(String, nullable=False, default="")
    # Fernet token, see security.encrypt_text
    password_encrypted: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ssl_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_tested_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    connection_status: Mapped[str] = mapped_column(String, nullable=False, default=ConnectionStatus.UNTESTED.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, onupdate=func.now(), nullable=True)


class SyncConfig(Base):
    __tablename__ = "sync_configs"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    data_source_id: Mapped[str] = mapped_column(String, ForeignKey("data_sources.id"), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sync_mode: Mapped[str] = mapped_column(String, nullable=False, default=SyncMode.FULL.value)
    schedule_type: Mapped[str] = mapped_column(String, nullable=False, default=ScheduleType.MANUAL.value)
    cron_expression: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    output_path: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    output_file_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    compress_output: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    encrypt_output: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, onupdate=func.now(), nullable=True)

    data_source: Mapped[DataSource] = relationship(lazy="joined")
    table_configs: Mapped[list["TableConfig"]] = relationship(back_populates="sync_config", cascade="all, delete-orphan")


class TableConfig(Base):
    __tablename__ = "table_configs"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    sync_config_id: Mapped[str] = mapped_column(String, ForeignKey("sync_configs.id"), nullable=False)
    source_schema: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    source_table: Mapped[str] = mapped_column(String, nullable=False)
    target_table: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    where_clause: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    row_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    incremental_column: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    last_sync_value: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, onupdate=func.now(), nullable=True)

    sync_config: Mapped[SyncConfig] = relationship(back_populates="table_configs")
    column_configs: Mapped[list["ColumnConfig"]] = relationship(
        back_populates="table_config", cascade="all, delete-orphan", order_by="ColumnConfig.position"
    )


class ColumnConfig(Base):
    __tablename__ = "column_configs"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    table_config_id: Mapped[str] = mapped_column(String, ForeignKey("table_configs.id"), nullable=False)
    # Output projection order
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    source_column: Mapped[str] = mapped_column(String, nullable=False)
    target_column: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    data_type: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    masking_type: Mapped[str] = mapped_column(String, nullable=False, default=MaskingType.NONE.value)
    # JSON-encoded rule parameters, e.g. {"prefix": 0, "suffix": 4}
    masking_config: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_included: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_primary_key: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, onupdate=func.now(), nullable=True)

    table_config: Mapped[TableConfig] = relationship(back_populates="column_configs")


class SyncJob(Base):
    __tablename__ = "sync_jobs"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    sync_config_id: Mapped[str] = mapped_column(String, ForeignKey("sync_configs.id"), nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default=JobStatus.PENDING.value)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    rows_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tables_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_file_size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    output_file_path: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # JSON-encoded list of masking/policy warnings raised during the run
    warnings_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    triggered_by: Mapped[str] = mapped_column(String, nullable=False, default=TriggerSource.MANUAL.value)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, onupdate=func.now(), nullable=True)

    @property
    def warnings(self) -> list[str]:
        try:
            return json.loads(self.warnings_json or "[]")
        except Exception:
            return []

    @warnings.setter
    def warnings(self, value: list[str] | None) -> None:
        self.warnings_json = json.dumps(value or [])


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    event_details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    resource_type: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    resource_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    data_source_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


# --- Engine & Session ---
def create_meta_engine(url: str) -> Engine:
    """Engine for the metadata store. SQLite files get their parent directory created."""
    u = make_url(url)
    kwargs: dict = {"future": True, "pool_pre_ping": True}
    if u.get_backend_name() == "sqlite":
        db = u.database or ""
        if db and db != ":memory:":
            Path(db).resolve().parent.mkdir(parents=True, exist_ok=True)
        kwargs["connect_args"] = {"check_same_thread": False}
        kwargs["poolclass"] = NullPool
    return create_engine(url, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)
