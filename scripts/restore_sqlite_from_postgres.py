#!/usr/bin/env python3
"""
Restore/sync faculty reports from Postgres back into the local SQLite cache.

Usage:
  python scripts/restore_sqlite_from_postgres.py \
    --sqlite data/db/reports.db \
    --postgres-url "$DATABASE_URL" \
    --truncate-first
"""

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from report_store import PostgresBackend, ReportStore, SQLiteBackend

DEFAULT_SQLITE_PATH = ROOT / "data" / "db" / "reports.db"


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--sqlite", default=str(DEFAULT_SQLITE_PATH), help="Path to sqlite db file")
    parser.add_argument(
        "--postgres-url",
        default=os.environ.get("DATABASE_URL", ""),
        help="Postgres connection URL (defaults to DATABASE_URL)",
    )
    parser.add_argument("--truncate-first", action="store_true", help="Clear the cache table before restore")
    args = parser.parse_args()

    if not args.postgres_url.strip():
        raise SystemExit("Missing --postgres-url and DATABASE_URL not set.")

    store = ReportStore(SQLiteBackend(args.sqlite), PostgresBackend(args.postgres_url))
    store.create_cache_schema()
    if not store.test_primary_connection():
        raise SystemExit("Postgres is unreachable; cache left untouched.")

    written = store.sync_from_primary(truncate_first=args.truncate_first)
    print(f"\nRestore complete. Reports synced: {written}; cache now holds {store.count()}")


if __name__ == "__main__":
    main()
