#!/usr/bin/env python3
"""
Unwrap a sync output artifact and print its tables.

Reverses the optional post-processing stages (``.enc`` then ``.gz``) and
writes the plain DuckDB file next to the input.

Usage:
    python open_artifact.py /path/to/sync_x_20240101T000000Z.duckdb.gz.enc [secret]

The secret defaults to SECRET_KEY from the environment / .env.
"""
import gzip
import os
import shutil
import sys
from pathlib import Path

import duckdb

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from sentinelconnect.config import settings
from sentinelconnect.security import decrypt_file


def unwrap(path: Path, secret: str) -> Path:
    current = path
    if current.suffix == ".enc":
        target = current.with_suffix("")
        decrypt_file(current, target, secret)
        print(f"  decrypted  -> {target}")
        current = target
    if current.suffix == ".gz":
        target = current.with_suffix("")
        with gzip.open(current, "rb") as fin, open(target, "wb") as fout:
            shutil.copyfileobj(fin, fout)
        print(f"  decompressed -> {target}")
        if current != path:
            current.unlink()
        current = target
    return current


def describe(db_path: Path) -> None:
    con = duckdb.connect(str(db_path), read_only=True)
    try:
        tables = con.execute(
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_schema = 'main' ORDER BY table_name"
        ).fetchall()
        if not tables:
            print("No tables found.")
            return
        for (name,) in tables:
            n = con.execute(f'SELECT count(*) FROM "{name}"').fetchone()[0]
            print(f"  {name}: {n} row(s)")
    finally:
        con.close()


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python open_artifact.py <artifact_path> [secret]")
        sys.exit(1)

    src = Path(sys.argv[1])
    secret = sys.argv[2] if len(sys.argv) > 2 else settings.secret_key
    print(f"Opening: {src}\n")
    plain = unwrap(src, secret)
    describe(plain)
