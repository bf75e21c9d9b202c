"""
Source database connectors.

One ``Connector`` subclass per dialect. The dialect is resolved once in
``connector_for``; extraction code only talks to the capability methods
(``open``, ``test_connection``, ``list_*``, ``build_extract_query``,
``stream_rows``).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, ClassVar, Iterator, Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.dialects import mssql, mysql, oracle, postgresql, sqlite
from sqlalchemy.engine import URL, Engine
from sqlalchemy.engine.interfaces import Dialect
from sqlalchemy.exc import SQLAlchemyError

from .config import Settings, settings as default_settings
from .entities import DataSourceSnapshot, DbType
from .errors import ConfigurationError, ExtractionError, SourceConnectionError

_log = logging.getLogger("sentinelconnect.connectors")


@dataclass(frozen=True)
class ExtractPlan:
    """What to read from one source table."""

    schema: Optional[str]
    table: str
    columns: tuple[str, ...]
    where_clause: Optional[str] = None
    row_limit: Optional[int] = None
    watermark_column: Optional[str] = None
    # Exclusive lower bound on the watermark column; None means no bound
    watermark_value: Optional[str] = None

    @property
    def select_columns(self) -> tuple[str, ...]:
        if self.watermark_column and self.watermark_column not in self.columns:
            return self.columns + (self.watermark_column,)
        return self.columns

    @property
    def watermark_index(self) -> Optional[int]:
        if not self.watermark_column:
            return None
        return self.select_columns.index(self.watermark_column)


class Connector:
    db_type: ClassVar[str]
    drivername: ClassVar[str]
    default_port: ClassVar[Optional[int]] = None
    ping_sql: ClassVar[str] = "SELECT 1"

    def __init__(self, source: DataSourceSnapshot, *, connect_timeout: int = 30):
        self.source = source
        self.connect_timeout = int(connect_timeout)
        self._engine: Engine | None = None

    # --- dialect hooks ---
    def sa_dialect(self) -> Dialect:
        raise NotImplementedError

    def url(self) -> URL:
        s = self.source
        return URL.create(
            self.drivername,
            username=s.username or None,
            password=s.password or None,
            host=s.host or None,
            port=s.port or self.default_port,
            database=s.database or None,
        )

    def engine_kwargs(self) -> dict:
        return {"pool_pre_ping": True, "pool_size": 2, "max_overflow": 0, "pool_recycle": 1800}

    def limit_query(self, select_list: str, rest: str, limit: Optional[int]) -> str:
        sql = f"SELECT {select_list} FROM {rest}"
        if limit:
            sql += f" LIMIT {int(limit)}"
        return sql

    # --- lifecycle ---
    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = create_engine(self.url(), **self.engine_kwargs())
        return self._engine

    def open(self) -> "Connector":
        """Create the engine and verify it can reach the source."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text(self.ping_sql))
        except Exception as e:
            self.close()
            raise SourceConnectionError(
                f"Could not connect to {self.source.db_type} source '{self.source.name}': {e}",
                details={"data_source_id": self.source.id, "host": self.source.host},
            ) from e
        _log.info("connected to %s source %s", self.db_type, self.source.name)
        return self

    def close(self) -> None:
        if self._engine is not None:
            try:
                self._engine.dispose()
            finally:
                self._engine = None

    def __enter__(self) -> "Connector":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def test_connection(self) -> tuple[bool, Optional[str]]:
        try:
            self.open()
            return True, None
        except SourceConnectionError as e:
            return False, e.message
        finally:
            self.close()

    # --- introspection ---
    def list_schemas(self) -> list[str]:
        return list(inspect(self.engine).get_schema_names())

    def list_tables(self, schema: Optional[str] = None) -> list[str]:
        return list(inspect(self.engine).get_table_names(schema=schema))

    def list_columns(self, table: str, schema: Optional[str] = None) -> list[dict]:
        cols = inspect(self.engine).get_columns(table, schema=schema)
        return [{"name": c["name"], "type": str(c["type"])} for c in cols]

    # --- extraction ---
    def quote(self, name: str) -> str:
        return self.sa_dialect().identifier_preparer.quote(name)

    def table_ref(self, schema: Optional[str], table: str) -> str:
        if schema:
            return f"{self.quote(schema)}.{self.quote(table)}"
        return self.quote(table)

    def build_extract_query(self, plan: ExtractPlan) -> tuple[str, dict[str, Any]]:
        if not plan.columns:
            raise ConfigurationError(f"No included columns for table {plan.table}")
        select_list = ", ".join(self.quote(c) for c in plan.select_columns)
        rest = self.table_ref(plan.schema, plan.table)
        params: dict[str, Any] = {}
        conds: list[str] = []
        if plan.where_clause and plan.where_clause.strip():
            conds.append(f"({plan.where_clause.strip()})")
        if plan.watermark_column and plan.watermark_value is not None:
            conds.append(f"{self.quote(plan.watermark_column)} > :watermark")
            params["watermark"] = plan.watermark_value
        if conds:
            rest += " WHERE " + " AND ".join(conds)
        if plan.watermark_column:
            # Oldest rows first so the executor can cap incremental reads without skipping rows
            rest += f" ORDER BY {self.quote(plan.watermark_column)}"
        return self.limit_query(select_list, rest, plan.row_limit), params

    def stream_rows(self, plan: ExtractPlan, batch_size: int) -> Iterator[list[tuple]]:
        """Yield batches of rows in ``plan.select_columns`` order."""
        sql, params = self.build_extract_query(plan)
        _log.debug("extract %s: %s", plan.table, sql)
        try:
            with self.engine.connect() as conn:
                result = conn.execution_options(stream_results=True).execute(text(sql), params)
                while True:
                    rows = result.fetchmany(int(batch_size))
                    if not rows:
                        break
                    yield [tuple(r) for r in rows]
        except SQLAlchemyError as e:
            raise ExtractionError(
                f"Extraction failed for {plan.table}: {e}",
                details={"table": plan.table, "schema": plan.schema},
            ) from e


class PostgresConnector(Connector):
    db_type = DbType.POSTGRESQL.value
    drivername = "postgresql+psycopg2"
    default_port = 5432

    def sa_dialect(self) -> Dialect:
        return postgresql.dialect()

    def url(self) -> URL:
        return super().url().update_query_dict({"sslmode": "require" if self.source.ssl_enabled else "prefer"})

    def engine_kwargs(self) -> dict:
        kw = super().engine_kwargs()
        kw["connect_args"] = {"connect_timeout": self.connect_timeout}
        return kw


class MySQLConnector(Connector):
    db_type = DbType.MYSQL.value
    drivername = "mysql+pymysql"
    default_port = 3306

    def sa_dialect(self) -> Dialect:
        return mysql.dialect()

    def engine_kwargs(self) -> dict:
        kw = super().engine_kwargs()
        ca: dict = {"connect_timeout": self.connect_timeout}
        if self.source.ssl_enabled:
            ca["ssl"] = {"check_hostname": False}
        kw["connect_args"] = ca
        return kw


class MSSQLConnector(Connector):
    db_type = DbType.MSSQL.value
    drivername = "mssql+pyodbc"
    default_port = 1433
    odbc_driver = "ODBC Driver 18 for SQL Server"

    def sa_dialect(self) -> Dialect:
        return mssql.dialect()

    def url(self) -> URL:
        return super().url().update_query_dict({
            "driver": self.odbc_driver,
            "Encrypt": "yes" if self.source.ssl_enabled else "no",
            "TrustServerCertificate": "yes",
        })

    def engine_kwargs(self) -> dict:
        kw = super().engine_kwargs()
        # pyodbc's timeout keyword is the login timeout (mitigates HYT00)
        kw["connect_args"] = {"timeout": self.connect_timeout}
        return kw

    def limit_query(self, select_list: str, rest: str, limit: Optional[int]) -> str:
        if limit:
            return f"SELECT TOP ({int(limit)}) {select_list} FROM {rest}"
        return f"SELECT {select_list} FROM {rest}"


class OracleConnector(Connector):
    db_type = DbType.ORACLE.value
    drivername = "oracle+oracledb"
    default_port = 1521
    ping_sql = "SELECT 1 FROM DUAL"

    def sa_dialect(self) -> Dialect:
        return oracle.dialect()

    def url(self) -> URL:
        s = self.source
        return URL.create(
            self.drivername,
            username=s.username or None,
            password=s.password or None,
            host=s.host or None,
            port=s.port or self.default_port,
            query={"service_name": s.database},
        )

    def engine_kwargs(self) -> dict:
        kw = super().engine_kwargs()
        ca: dict = {"tcp_connect_timeout": float(self.connect_timeout)}
        if self.source.ssl_enabled:
            ca["protocol"] = "tcps"
        kw["connect_args"] = ca
        return kw

    def limit_query(self, select_list: str, rest: str, limit: Optional[int]) -> str:
        sql = f"SELECT {select_list} FROM {rest}"
        if limit:
            sql += f" FETCH FIRST {int(limit)} ROWS ONLY"
        return sql


class SQLiteConnector(Connector):
    """File-backed source, opened read-only so a wrong path never creates a database."""

    db_type = DbType.SQLITE.value
    drivername = "sqlite+pysqlite"

    def sa_dialect(self) -> Dialect:
        return sqlite.dialect()

    def url(self) -> URL:
        return URL.create(
            self.drivername,
            database=f"file:{self.source.database}",
            query={"mode": "ro", "uri": "true"},
        )

    def engine_kwargs(self) -> dict:
        return {"connect_args": {"check_same_thread": False, "timeout": self.connect_timeout}}

    def list_schemas(self) -> list[str]:
        return ["main"]


_CONNECTORS: dict[str, type[Connector]] = {
    c.db_type: c
    for c in (PostgresConnector, MySQLConnector, MSSQLConnector, OracleConnector, SQLiteConnector)
}


def supported_db_types() -> list[str]:
    return sorted(_CONNECTORS)


def connector_for(source: DataSourceSnapshot, cfg: Settings | None = None) -> Connector:
    """Build (but do not open) the connector for a data source."""
    cfg = cfg or default_settings
    db_type = (source.db_type or "").strip().lower()
    cls = _CONNECTORS.get(db_type)
    if cls is None:
        raise ConfigurationError(
            f"Unsupported database type '{source.db_type}'",
            details={"data_source_id": source.id, "supported": supported_db_types()},
        )
    return cls(source, connect_timeout=cfg.connect_timeout)
