"""
Shared fixtures: an isolated metadata store, a SQLite source database and a
Settings instance, all under pytest's tmp_path.
"""
import sqlite3

import pytest

from sentinelconnect import metrics
from sentinelconnect.config import Settings
from sentinelconnect.store import MetadataStore


CUSTOMERS = [
    (1, "Alice Smith", "alice@example.com", "123-45-6789", "2024-01-02T00:00:00Z"),
    (2, "Bob Jones", "bob@example.com", "987-65-4321", "2024-01-03T00:00:00Z"),
    (3, "Carol White", "carol@example.com", "555-12-3456", "2023-12-31T00:00:00Z"),
]

ORDERS = [
    (10, 1, 19.99, "2024-01-05T10:00:00Z"),
    (11, 1, 5.00, "2024-01-06T11:00:00Z"),
    (12, 2, 120.50, "2024-01-07T12:00:00Z"),
    (13, 3, 7.25, "2024-01-08T13:00:00Z"),
]


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        secret_key="test-secret-key",
        masking_secret="test-masking-secret",
        metadata_db_url=f"sqlite+pysqlite:///{tmp_path / 'meta.sqlite'}",
        default_output_path=str(tmp_path / "out"),
        fetch_batch_size=2,
        default_row_limit=None,
        run_scheduler=False,
        worker_pool_size=4,
        connect_timeout=5,
    )


@pytest.fixture
def store(settings):
    return MetadataStore.from_url(settings.metadata_db_url, settings)


@pytest.fixture
def source_db(tmp_path):
    path = tmp_path / "source.sqlite"
    con = sqlite3.connect(path)
    try:
        con.execute(
            "CREATE TABLE customers (id INTEGER PRIMARY KEY, name TEXT, email TEXT, ssn TEXT, updated_at TEXT)"
        )
        con.execute("CREATE TABLE orders (id INTEGER PRIMARY KEY, customer_id INTEGER, amount REAL, created_at TEXT)")
        con.executemany("INSERT INTO customers VALUES (?, ?, ?, ?, ?)", CUSTOMERS)
        con.executemany("INSERT INTO orders VALUES (?, ?, ?, ?)", ORDERS)
        con.commit()
    finally:
        con.close()
    return path


@pytest.fixture
def data_source_id(store, source_db):
    return store.add_data_source(name="crm", db_type="sqlite", database=str(source_db))


def add_customers_table(store, config_id, **table_kw):
    """customers with id (pk), name (none), email (hash), ssn (redact), updated_at (none)."""
    tid = store.add_table_config(sync_config_id=config_id, source_table="customers", **table_kw)
    store.add_column_config(table_config_id=tid, source_column="id", data_type="INTEGER", is_primary_key=True)
    store.add_column_config(table_config_id=tid, source_column="name")
    store.add_column_config(table_config_id=tid, source_column="email", masking_type="hash")
    store.add_column_config(table_config_id=tid, source_column="ssn", masking_type="redact")
    store.add_column_config(table_config_id=tid, source_column="updated_at")
    return tid


def add_orders_table(store, config_id, **table_kw):
    tid = store.add_table_config(sync_config_id=config_id, source_table="orders", **table_kw)
    store.add_column_config(table_config_id=tid, source_column="id", data_type="INTEGER", is_primary_key=True)
    store.add_column_config(table_config_id=tid, source_column="customer_id", data_type="INTEGER")
    store.add_column_config(table_config_id=tid, source_column="amount", data_type="REAL")
    store.add_column_config(table_config_id=tid, source_column="created_at")
    return tid


@pytest.fixture
def config_id(store, data_source_id):
    cid = store.add_sync_config(name="crm-nightly", data_source_id=data_source_id)
    add_customers_table(store, cid)
    add_orders_table(store, cid)
    return cid
