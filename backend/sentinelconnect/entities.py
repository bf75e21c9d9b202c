from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Optional


class DbType(str, enum.Enum):
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    MSSQL = "mssql"
    ORACLE = "oracle"
    SQLITE = "sqlite"


class ConnectionStatus(str, enum.Enum):
    CONNECTED = "connected"
    FAILED = "failed"
    UNTESTED = "untested"


class SyncMode(str, enum.Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class ScheduleType(str, enum.Enum):
    MANUAL = "manual"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    CRON = "cron"


class MaskingType(str, enum.Enum):
    NONE = "none"
    REDACT = "redact"
    HASH = "hash"
    RANDOMIZE = "randomize"
    PARTIAL = "partial"


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class TriggerSource(str, enum.Enum):
    MANUAL = "manual"
    SCHEDULE = "schedule"


# --- Point-in-time snapshots handed to the executor ---
# Built from ORM rows when a run starts; edits made while the run is in flight
# do not reach it.

@dataclass(frozen=True)
class DataSourceSnapshot:
    id: str
    name: str
    db_type: str
    host: str
    port: Optional[int]
    database: str
    username: str
    password: str
    ssl_enabled: bool = False
    is_active: bool = True


@dataclass(frozen=True)
class ColumnSnapshot:
    id: str
    source_column: str
    target_column: Optional[str] = None
    data_type: Optional[str] = None
    masking_type: str = MaskingType.NONE.value
    masking_config: Optional[str] = None
    is_included: bool = True
    is_primary_key: bool = False

    @property
    def output_name(self) -> str:
        return self.target_column or self.source_column


@dataclass(frozen=True)
class TableSnapshot:
    id: str
    source_schema: Optional[str]
    source_table: str
    target_table: Optional[str] = None
    where_clause: Optional[str] = None
    row_limit: Optional[int] = None
    incremental_column: Optional[str] = None
    last_sync_value: Optional[str] = None
    columns: tuple[ColumnSnapshot, ...] = field(default_factory=tuple)

    @property
    def output_name(self) -> str:
        return self.target_table or self.source_table

    @property
    def qualified_name(self) -> str:
        return f"{self.source_schema}.{self.source_table}" if self.source_schema else self.source_table

    @property
    def included_columns(self) -> list[ColumnSnapshot]:
        return [c for c in self.columns if c.is_included]


@dataclass(frozen=True)
class SyncConfigSnapshot:
    id: str
    name: str
    data_source: DataSourceSnapshot
    is_active: bool
    sync_mode: str
    schedule_type: str
    cron_expression: Optional[str]
    output_path: Optional[str]
    output_file_name: Optional[str]
    compress_output: bool = False
    encrypt_output: bool = False
    tables: tuple[TableSnapshot, ...] = field(default_factory=tuple)

    @property
    def is_incremental(self) -> bool:
        return self.sync_mode == SyncMode.INCREMENTAL.value


@dataclass(frozen=True)
class ScheduleEntry:
    """The subset of a SyncConfig the scheduler needs to install a timer."""

    id: str
    name: str
    schedule_type: str
    cron_expression: Optional[str]
    is_active: bool
