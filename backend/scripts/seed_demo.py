#!/usr/bin/env python3
"""
Seed the metadata store with a demo SQLite data source and a daily sync
configuration so the scheduler and /api/sync-configs/{id}/run have something
to work on.

Usage:
    python seed_demo.py [path_to_demo_source.sqlite]
"""
import os
import sqlite3
import sys
from pathlib import Path

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from sentinelconnect.config import settings
from sentinelconnect.store import MetadataStore


def create_demo_source(path: Path) -> None:
    con = sqlite3.connect(path)
    try:
        con.execute(
            "CREATE TABLE IF NOT EXISTS patients ("
            "id INTEGER PRIMARY KEY, full_name TEXT, email TEXT, ssn TEXT, card_number TEXT, updated_at TEXT)"
        )
        con.executemany(
            "INSERT OR REPLACE INTO patients VALUES (?, ?, ?, ?, ?, ?)",
            [
                (1, "Ada Lovelace", "ada@example.com", "123-45-6789", "4111111111111111", "2024-01-01T08:00:00Z"),
                (2, "Alan Turing", "alan@example.com", "987-65-4321", "5500000000000004", "2024-01-02T09:30:00Z"),
                (3, "Grace Hopper", "grace@example.com", "555-12-3456", "340000000000009", "2024-01-03T10:15:00Z"),
            ],
        )
        con.commit()
    finally:
        con.close()


def seed(source_path: Path) -> str:
    store = MetadataStore.from_url(settings.metadata_db_url, settings)
    ds = store.add_data_source(name="demo-sqlite", db_type="sqlite", database=str(source_path.resolve()))
    cid = store.add_sync_config(
        name="demo-daily",
        data_source_id=ds,
        sync_mode="incremental",
        schedule_type="daily",
        output_file_name="demo_{date}_{job_id}",
        compress_output=True,
    )
    tid = store.add_table_config(sync_config_id=cid, source_table="patients", incremental_column="updated_at")
    store.add_column_config(table_config_id=tid, source_column="id", data_type="INTEGER", is_primary_key=True)
    store.add_column_config(table_config_id=tid, source_column="full_name", masking_type="randomize")
    store.add_column_config(table_config_id=tid, source_column="email", masking_type="hash",
                            masking_config={"length": 16})
    store.add_column_config(table_config_id=tid, source_column="ssn", masking_type="redact")
    store.add_column_config(table_config_id=tid, source_column="card_number", masking_type="partial")
    store.add_column_config(table_config_id=tid, source_column="updated_at")
    return cid


if __name__ == "__main__":
    path = Path(sys.argv[1]) if len(sys.argv) > 1 else Path(".data") / "demo_source.sqlite"
    path.parent.mkdir(parents=True, exist_ok=True)
    create_demo_source(path)
    config_id = seed(path)
    print(f"Demo source: {path}")
    print(f"Sync config: {config_id}")
