"""
Tests for the dialect connectors: URL construction and SQL rendering run
without a live server; the SQLite connector is exercised for real.
"""
import pytest

from sentinelconnect.connectors import (
    ExtractPlan,
    MSSQLConnector,
    MySQLConnector,
    OracleConnector,
    PostgresConnector,
    SQLiteConnector,
    connector_for,
    supported_db_types,
)
from sentinelconnect.entities import DataSourceSnapshot
from sentinelconnect.errors import ConfigurationError, ExtractionError


def _source(db_type="postgresql", **kw):
    base = dict(id="ds1", name="src", db_type=db_type, host="db.internal", port=None,
                database="crm", username="reader", password="pw", ssl_enabled=False)
    base.update(kw)
    return DataSourceSnapshot(**base)


PLAN = ExtractPlan(
    schema=None,
    table="customers",
    columns=("id", "Email"),
    where_clause="id > 0",
    row_limit=5,
    watermark_column="updated_at",
    watermark_value="2024-01-01T00:00:00Z",
)


class TestRegistry:
    """Dialect resolution"""

    def test_supported_types(self):
        assert supported_db_types() == ["mssql", "mysql", "oracle", "postgresql", "sqlite"]

    def test_resolution_is_case_insensitive(self):
        assert isinstance(connector_for(_source("PostgreSQL")), PostgresConnector)

    def test_unknown_dialect_is_configuration_error(self):
        with pytest.raises(ConfigurationError) as ei:
            connector_for(_source("db2"))
        assert "db2" in ei.value.message

    def test_connect_timeout_comes_from_settings(self, settings):
        assert connector_for(_source(), settings).connect_timeout == 5


class TestURLs:
    """Connection URL construction"""

    def test_postgres_defaults_and_ssl(self):
        c = PostgresConnector(_source(ssl_enabled=True))
        url = c.url()
        assert url.drivername == "postgresql+psycopg2"
        assert url.port == 5432
        assert url.query["sslmode"] == "require"
        assert url.password == "pw"

    def test_mysql_ssl_connect_args(self):
        c = MySQLConnector(_source("mysql", ssl_enabled=True), connect_timeout=7)
        assert c.url().port == 3306
        assert c.engine_kwargs()["connect_args"] == {"connect_timeout": 7, "ssl": {"check_hostname": False}}

    def test_mssql_driver_and_encrypt(self):
        url = MSSQLConnector(_source("mssql", ssl_enabled=True, port=14330)).url()
        assert url.port == 14330
        assert url.query["driver"] == "ODBC Driver 18 for SQL Server"
        assert url.query["Encrypt"] == "yes"

    def test_oracle_service_name(self):
        url = OracleConnector(_source("oracle")).url()
        assert url.query["service_name"] == "crm"
        assert url.database is None

    def test_sqlite_is_read_only(self, tmp_path):
        url = SQLiteConnector(_source("sqlite", database=str(tmp_path / "x.db"))).url()
        assert url.query["mode"] == "ro"
        assert url.database.startswith("file:")


class TestExtractQuery:
    """SQL rendering per dialect"""

    def test_postgres(self):
        sql, params = PostgresConnector(_source()).build_extract_query(PLAN)
        assert sql == (
            'SELECT id, "Email", updated_at FROM customers WHERE (id > 0) '
            "AND updated_at > :watermark ORDER BY updated_at LIMIT 5"
        )
        assert params == {"watermark": "2024-01-01T00:00:00Z"}

    def test_mysql_backticks(self):
        sql, _ = MySQLConnector(_source("mysql")).build_extract_query(PLAN)
        assert "`Email`" in sql
        assert sql.endswith("LIMIT 5")

    def test_mssql_top(self):
        sql, _ = MSSQLConnector(_source("mssql")).build_extract_query(PLAN)
        assert sql.startswith("SELECT TOP (5) id, [Email], updated_at FROM customers")
        assert "LIMIT" not in sql

    def test_oracle_fetch_first(self):
        sql, _ = OracleConnector(_source("oracle")).build_extract_query(PLAN)
        assert sql.endswith("ORDER BY updated_at FETCH FIRST 5 ROWS ONLY")

    def test_schema_qualified_table(self):
        plan = ExtractPlan(schema="Sales", table="orders", columns=("id",))
        sql, params = PostgresConnector(_source()).build_extract_query(plan)
        assert sql == 'SELECT id FROM "Sales".orders'
        assert params == {}

    def test_no_watermark_bound_on_first_incremental_run(self):
        plan = ExtractPlan(schema=None, table="t", columns=("id",), watermark_column="ts")
        sql, params = PostgresConnector(_source()).build_extract_query(plan)
        assert ":watermark" not in sql
        assert sql.endswith("ORDER BY ts")
        assert params == {}

    def test_hidden_watermark_column(self):
        assert PLAN.select_columns == ("id", "Email", "updated_at")
        assert PLAN.watermark_index == 2
        included = ExtractPlan(schema=None, table="t", columns=("ts", "id"), watermark_column="ts")
        assert included.select_columns == ("ts", "id")
        assert included.watermark_index == 0

    def test_no_columns_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            PostgresConnector(_source()).build_extract_query(ExtractPlan(schema=None, table="t", columns=()))


class TestSQLiteConnector:
    """Real connections against a SQLite file"""

    def test_test_connection_ok(self, source_db):
        ok, err = SQLiteConnector(_source("sqlite", database=str(source_db))).test_connection()
        assert ok is True
        assert err is None

    def test_missing_file_fails_without_creating_it(self, tmp_path):
        missing = tmp_path / "nope.sqlite"
        ok, err = SQLiteConnector(_source("sqlite", database=str(missing))).test_connection()
        assert ok is False
        assert err
        assert not missing.exists()

    def test_introspection(self, source_db):
        with SQLiteConnector(_source("sqlite", database=str(source_db))) as c:
            assert c.list_schemas() == ["main"]
            assert sorted(c.list_tables()) == ["customers", "orders"]
            cols = c.list_columns("orders")
            assert [x["name"] for x in cols] == ["id", "customer_id", "amount", "created_at"]

    def test_stream_rows_in_batches(self, source_db):
        plan = ExtractPlan(schema=None, table="customers", columns=("id", "name"), watermark_column="updated_at")
        with SQLiteConnector(_source("sqlite", database=str(source_db))) as c:
            batches = list(c.stream_rows(plan, 2))
        assert [len(b) for b in batches] == [2, 1]
        # ordered by watermark, watermark appended as a hidden trailing column
        assert [r[0] for r in batches[0] + batches[1]] == [3, 1, 2]
        assert batches[0][0][2] == "2023-12-31T00:00:00Z"

    def test_bad_filter_raises_extraction_error(self, source_db):
        plan = ExtractPlan(schema=None, table="customers", columns=("id",), where_clause="no_such_col = 1")
        with SQLiteConnector(_source("sqlite", database=str(source_db))) as c:
            with pytest.raises(ExtractionError):
                list(c.stream_rows(plan, 10))
