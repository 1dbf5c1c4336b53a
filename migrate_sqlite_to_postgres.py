#!/usr/bin/env python3
"""
Push faculty reports from the local SQLite cache up to Postgres.

Use after the primary was offline for a while: rows written only to the cache
are merged into Postgres by faculty id and report date; Postgres keeps its own ids.

Usage:
  python migrate_sqlite_to_postgres.py --sqlite data/db/reports.db --postgres-url "$DATABASE_URL" --truncate-first
"""

import argparse
import os

from report_store import PostgresBackend, ReportStore, SQLiteBackend


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--sqlite", default=os.path.join("data", "db", "reports.db"), help="Path to sqlite db file")
    parser.add_argument(
        "--postgres-url",
        default=os.environ.get("DATABASE_URL", ""),
        help="Postgres connection URL (defaults to DATABASE_URL)",
    )
    parser.add_argument("--truncate-first", action="store_true", help="Clear destination table before sync")
    args = parser.parse_args()

    if not args.postgres_url.strip():
        raise SystemExit("Missing --postgres-url and DATABASE_URL not set.")

    store = ReportStore(SQLiteBackend(args.sqlite), PostgresBackend(args.postgres_url))
    store.create_cache_schema()
    written = store.push_to_primary(truncate_first=args.truncate_first)
    print(f"\nMigration complete. Total reports synced: {written}")


if __name__ == "__main__":
    main()
