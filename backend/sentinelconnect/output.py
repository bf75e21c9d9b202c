"""
Output artifact writer.

A run writes a single DuckDB database file. Tables are built in a staging
table and renamed into place only once complete. The file is assembled at a
hidden temporary path next to its destination, optionally gzip-compressed and
encrypted, then published with ``os.replace``.
"""
from __future__ import annotations

import gzip
import logging
import os
import re
import shutil
import string
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional, Sequence
from uuid import uuid4

import duckdb

from .security import encrypt_file

_log = logging.getLogger("sentinelconnect.output")

ARTIFACT_EXTENSION = ".duckdb"


def _quote_duck_ident(name: str) -> str:
    return '"' + str(name).replace('"', '""') + '"'


# Declared source type (free-form, e.g. "varchar(255)", "numeric(10,2)") -> DuckDB type.
# Order matters: the first matching prefix wins.
_TYPE_MAP: tuple[tuple[str, str], ...] = (
    ("timestamptz", "TIMESTAMPTZ"),
    ("timestamp with time zone", "TIMESTAMPTZ"),
    ("datetimeoffset", "TIMESTAMPTZ"),
    ("timestamp", "TIMESTAMP"),
    ("datetime", "TIMESTAMP"),
    ("smalldatetime", "TIMESTAMP"),
    ("date", "DATE"),
    ("time", "TIME"),
    ("bool", "BOOLEAN"),
    ("bit", "BOOLEAN"),
    ("tinyint", "BIGINT"),
    ("smallint", "BIGINT"),
    ("mediumint", "BIGINT"),
    ("bigint", "BIGINT"),
    ("interval", "INTERVAL"),
    ("int", "BIGINT"),
    ("serial", "BIGINT"),
    ("bigserial", "BIGINT"),
    ("numeric", "DECIMAL"),
    ("decimal", "DECIMAL"),
    ("number", "DECIMAL"),
    ("smallmoney", "DECIMAL(10,4)"),
    ("money", "DECIMAL(19,4)"),
    ("real", "DOUBLE"),
    ("float", "DOUBLE"),
    ("double", "DOUBLE"),
    ("bytea", "BLOB"),
    ("blob", "BLOB"),
    ("binary", "BLOB"),
    ("varbinary", "BLOB"),
)


def duck_type_for(declared: Optional[str]) -> Optional[str]:
    """Map a declared column type; None when it cannot be determined."""
    d = (declared or "").strip().lower()
    if not d:
        return None
    for prefix, duck in _TYPE_MAP:
        if d.startswith(prefix):
            if duck == "DECIMAL":
                return _exact_decimal(d)
            return duck
    return "TEXT"


_MAX_DECIMAL_PRECISION = 38
_DECIMAL_ARGS = re.compile(r"\(\s*(\d+)\s*(?:,\s*(-?\d+)\s*)?\)")


def _exact_decimal(declared: str) -> str:
    """``numeric(p,s)`` -> ``DECIMAL(p,s)``; DECIMAL(38,10) when no precision is declared."""
    m = _DECIMAL_ARGS.search(declared)
    if not m:
        return f"DECIMAL({_MAX_DECIMAL_PRECISION},10)"
    precision = min(max(int(m.group(1)), 1), _MAX_DECIMAL_PRECISION)
    scale = min(max(int(m.group(2) or 0), 0), precision)
    return f"DECIMAL({precision},{scale})"


def decimal_spec(duck_type: Optional[str]) -> Optional[tuple[int, int]]:
    """``(precision, scale)`` of a DuckDB DECIMAL type, None for any other type."""
    if not duck_type or not duck_type.startswith("DECIMAL"):
        return None
    m = _DECIMAL_ARGS.search(duck_type)
    if not m:
        return _MAX_DECIMAL_PRECISION, 10
    return int(m.group(1)), int(m.group(2) or 0)


def _infer_duck_type_value(v: Any) -> str:
    if isinstance(v, bool):
        return "BOOLEAN"
    if isinstance(v, int):
        return "BIGINT"
    if isinstance(v, float):
        return "DOUBLE"
    if isinstance(v, Decimal):
        return "DECIMAL(38,10)"
    if isinstance(v, datetime):
        return "TIMESTAMPTZ" if v.tzinfo is not None else "TIMESTAMP"
    if isinstance(v, date):
        return "DATE"
    if isinstance(v, time):
        return "TIME"
    if isinstance(v, (bytes, bytearray, memoryview)):
        return "BLOB"
    return "TEXT"


@dataclass(frozen=True)
class OutputColumn:
    name: str
    # None means "infer from the first non-null value"
    duck_type: Optional[str] = None


class TableWriter:
    """Writes one table into a staging table; ``commit`` swaps it into place."""

    def __init__(self, con: "duckdb.DuckDBPyConnection", name: str, columns: Sequence[OutputColumn]):
        self._con = con
        self.name = name
        self.columns = list(columns)
        self.staging = f"stg_{uuid4().hex[:8]}_{name}"
        self._created = False
        self.rows_written = 0

    def _create(self, sample: Sequence[Sequence[Any]]) -> None:
        types: list[str] = []
        for idx, col in enumerate(self.columns):
            t = col.duck_type
            if t is None:
                t = "TEXT"
                for r in sample[:200]:
                    if r[idx] is not None:
                        t = _infer_duck_type_value(r[idx])
                        break
            types.append(t)
        cols_sql = ", ".join(f"{_quote_duck_ident(c.name)} {t}" for c, t in zip(self.columns, types))
        self._con.execute(f"DROP TABLE IF EXISTS {_quote_duck_ident(self.staging)}")
        self._con.execute(f"CREATE TABLE {_quote_duck_ident(self.staging)} ({cols_sql})")
        self._created = True

    def insert(self, rows: Sequence[Sequence[Any]]) -> int:
        if not self._created:
            self._create(rows)
        if not rows:
            return 0
        qmarks = ", ".join("?" for _ in self.columns)
        sql = f"INSERT INTO {_quote_duck_ident(self.staging)} VALUES ({qmarks})"
        self._con.executemany(sql, [tuple(r) for r in rows])
        self.rows_written += len(rows)
        return len(rows)

    def commit(self) -> None:
        if not self._created:
            self._create([])
        dest = _quote_duck_ident(self.name)
        self._con.execute(f"DROP TABLE IF EXISTS {dest}")
        self._con.execute(f"ALTER TABLE {_quote_duck_ident(self.staging)} RENAME TO {dest}")

    def discard(self) -> None:
        try:
            self._con.execute(f"DROP TABLE IF EXISTS {_quote_duck_ident(self.staging)}")
        except duckdb.Error:
            _log.warning("could not drop staging table %s", self.staging, exc_info=True)


def render_file_name(template: Optional[str], *, job_id: str, config_id: str, now: Optional[datetime] = None) -> str:
    """Expand ``{job_id}``, ``{config_id}``, ``{timestamp}`` and ``{date}`` in an output file name."""
    now = now or datetime.now(timezone.utc)
    values = {
        "job_id": job_id,
        "config_id": config_id,
        "timestamp": now.strftime("%Y%m%dT%H%M%SZ"),
        "date": now.strftime("%Y-%m-%d"),
    }
    name = (template or "").strip() or "sync_{config_id}_{timestamp}"
    fields = {f for _, f, _, _ in string.Formatter().parse(name) if f}
    if fields - set(values):
        # Unknown placeholders are kept literally rather than failing the run
        name = re.sub(r"[{}]", "_", name)
    else:
        name = name.format(**values)
    name = os.path.basename(name)
    if not Path(name).suffix:
        name += ARTIFACT_EXTENSION
    return name


class ArtifactWriter:
    def __init__(self, directory: Path | str, file_name: str, *, compress: bool = False,
                 encrypt: bool = False, secret: str | None = None):
        self.directory = Path(directory)
        self.file_name = file_name
        self.compress = compress
        self.encrypt = encrypt
        self._secret = secret
        self.directory.mkdir(parents=True, exist_ok=True)
        self._tag = uuid4().hex[:12]
        self.work_path = self.directory / f".{file_name}.{self._tag}.tmp"
        self._con: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(str(self.work_path))
        self.tables: list[str] = []

    @property
    def final_path(self) -> Path:
        name = self.file_name
        if self.compress:
            name += ".gz"
        if self.encrypt:
            name += ".enc"
        return self.directory / name

    def table(self, name: str, columns: Sequence[OutputColumn]) -> TableWriter:
        if self._con is None:
            raise RuntimeError("artifact already finalized")
        return TableWriter(self._con, name, columns)

    def mark_committed(self, name: str) -> None:
        if name not in self.tables:
            self.tables.append(name)

    def _close(self) -> None:
        if self._con is not None:
            try:
                self._con.close()
            finally:
                self._con = None

    def finalize(self) -> tuple[Path, int]:
        """Close the database, apply post-processing and publish atomically."""
        self._close()
        current = self.work_path
        stages: list[Path] = []
        try:
            if self.compress:
                gz = self.directory / f".{self.file_name}.{self._tag}.gz.tmp"
                with open(current, "rb") as fin, gzip.open(gz, "wb") as fout:
                    shutil.copyfileobj(fin, fout)
                stages.append(current)
                current = gz
            if self.encrypt:
                enc = self.directory / f".{self.file_name}.{self._tag}.enc.tmp"
                encrypt_file(current, enc, self._secret)
                stages.append(current)
                current = enc
            dest = self.final_path
            os.replace(current, dest)
        except BaseException:
            stages.append(current)
            raise
        finally:
            for p in stages:
                p.unlink(missing_ok=True)
            # DuckDB may leave a WAL next to the working file
            Path(str(self.work_path) + ".wal").unlink(missing_ok=True)
        size = dest.stat().st_size
        _log.info("published artifact %s (%d bytes, tables=%s)", dest, size, self.tables)
        return dest, size

    def abort(self) -> None:
        self._close()
        for p in (self.work_path, Path(str(self.work_path) + ".wal")):
            p.unlink(missing_ok=True)
