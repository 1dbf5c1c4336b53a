# ==========================================================
# FACULTY REPORTER — REPORT STORE
# Local SQLite cache serves every read; Postgres primary is best-effort
# ==========================================================

import json
import os
import sqlite3
from collections.abc import Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import NamedTuple, Optional
from urllib.parse import urlsplit
from zoneinfo import ZoneInfo

DEFAULT_TIMEZONE = "Asia/Kolkata"
DISPLAY_TIMESTAMP_FORMAT = "%d/%m/%Y, %H:%M:%S"
REPORT_COLUMNS = ("id", "uid", "name", "team", "activities", "report_date", "submitted_at")

SQLITE_CREATE_REPORTS = """
    CREATE TABLE IF NOT EXISTS reports (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        uid TEXT NOT NULL,
        name TEXT NOT NULL,
        team TEXT NOT NULL,
        activities TEXT NOT NULL,
        report_date TEXT NOT NULL,
        submitted_at TEXT NOT NULL,
        UNIQUE(uid, report_date)
    )
"""

POSTGRES_CREATE_REPORTS = """
    CREATE TABLE IF NOT EXISTS reports (
        id SERIAL PRIMARY KEY,
        uid TEXT NOT NULL,
        name TEXT NOT NULL,
        team TEXT NOT NULL,
        activities TEXT NOT NULL,
        report_date TEXT NOT NULL,
        submitted_at TEXT NOT NULL,
        UNIQUE(uid, report_date)
    )
"""

INSERT_REPORT_SQL = """
    INSERT INTO reports (uid, name, team, activities, report_date, submitted_at)
    VALUES (?, ?, ?, ?, ?, ?)
"""

MERGE_BY_UID_DATE_SQL = """
    INSERT INTO reports (uid, name, team, activities, report_date, submitted_at)
    VALUES (?, ?, ?, ?, ?, ?)
    ON CONFLICT (uid, report_date) DO UPDATE SET
        name=excluded.name,
        team=excluded.team,
        activities=excluded.activities,
        submitted_at=excluded.submitted_at
"""

UPSERT_BY_UID_DATE_SQL = """
    INSERT INTO reports (uid, name, team, activities, report_date, submitted_at)
    VALUES (?, ?, ?, ?, ?, ?)
    ON CONFLICT (uid, report_date) DO UPDATE SET
        name=excluded.name,
        team=excluded.team,
        activities=excluded.activities
"""


class StorageError(Exception):
    """The cache database failed; the operation cannot continue."""


class DuplicateReportError(StorageError):
    def __init__(self, uid, report_date):
        super().__init__(f"A report for {uid} on {report_date} already exists")
        self.uid = uid
        self.report_date = report_date


class ReportNotFoundError(StorageError):
    def __init__(self, report_id):
        super().__init__(f"Report {report_id} not found")
        self.report_id = report_id


class Activity(NamedTuple):
    name: str
    count: str = ""


@dataclass
class Report:
    """One faculty submission for one calendar date."""

    id: Optional[int]
    uid: str
    name: str
    team: str
    report_date: str
    activities: list = field(default_factory=list)
    submitted_at: str = ""


def serialize_activities(activities) -> str:
    return json.dumps([{"name": a.name, "count": a.count} for a in activities])


def deserialize_activities(text) -> list:
    if not text:
        return []
    try:
        items = json.loads(text)
    except ValueError as exc:
        print(f"⚠️ Unreadable activities blob, treating as empty: {exc}")
        return []
    activities = []
    for item in items if isinstance(items, list) else []:
        if not isinstance(item, dict):
            continue
        count = item.get("count")
        activities.append(Activity(str(item.get("name") or ""), "" if count is None else str(count)))
    return activities


def report_from_row(row) -> Report:
    return Report(
        id=row["id"],
        uid=str(row["uid"]),
        name=row["name"],
        team=row["team"],
        report_date=row["report_date"],
        activities=deserialize_activities(row["activities"]),
        submitted_at=row["submitted_at"],
    )


def build_report_filters(date=None, name=None, uid=None):
    conditions = []
    params = []
    if date:
        conditions.append("report_date = ?")
        params.append(date)
    if name:
        conditions.append("name LIKE ?")
        params.append(f"%{name}%")
    if uid:
        conditions.append("uid LIKE ?")
        params.append(f"%{uid}%")
    return " AND ".join(conditions) or None, tuple(params)


# ==========================================================
# TIMESTAMPS
# ==========================================================

def looks_machine_readable(value):
    text = value or ""
    return "T" in text or "Z" in text


def to_display_timestamp(value, zone):
    """Render an ISO-8601 timestamp as local DD/MM/YYYY, HH:MM:SS.

    Naive values are read as UTC. Anything that does not parse is returned
    unchanged.
    """
    text = (value or "").strip()
    normalized = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return value
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(zone).strftime(DISPLAY_TIMESTAMP_FORMAT)


# ==========================================================
# BACKENDS
# ==========================================================

def redact_database_url(raw_url):
    url = (raw_url or "").strip()
    if not url:
        return ""
    parsed = urlsplit(url)
    if not parsed.scheme:
        return url
    netloc = parsed.netloc
    if "@" in netloc:
        userinfo, hostinfo = netloc.rsplit("@", 1)
        if ":" in userinfo:
            user = userinfo.split(":", 1)[0]
            safe_userinfo = f"{user}:***"
        else:
            safe_userinfo = userinfo
        safe_netloc = f"{safe_userinfo}@{hostinfo}"
    else:
        safe_netloc = netloc
    return f"{parsed.scheme}://{safe_netloc}{parsed.path or ''}"


class RowCompat(Mapping):
    def __init__(self, columns, values):
        self._columns = tuple(columns)
        self._values = tuple(values)
        self._data = {k: v for k, v in zip(self._columns, self._values)}

    def __getitem__(self, key):
        if isinstance(key, int):
            return self._values[key]
        return self._data[key]

    def __iter__(self):
        return iter(self._data)

    def __len__(self):
        return len(self._data)


def _replace_qmarks_with_percent_s(sql):
    out = []
    in_single_quote = False
    i = 0
    while i < len(sql):
        ch = sql[i]
        if ch == "'":
            out.append(ch)
            if in_single_quote and i + 1 < len(sql) and sql[i + 1] == "'":
                out.append(sql[i + 1])
                i += 1
            else:
                in_single_quote = not in_single_quote
        elif ch == "?" and not in_single_quote:
            out.append("%s")
        else:
            out.append(ch)
        i += 1
    return "".join(out)


class PostgresCursorCompat:
    def __init__(self, raw_cursor):
        self._cur = raw_cursor

    def _columns(self):
        return [d.name if hasattr(d, "name") else d[0] for d in (self._cur.description or [])]

    def execute(self, sql, args=()):
        self._cur.execute(_replace_qmarks_with_percent_s(sql), tuple(args or ()))
        return self

    def fetchone(self):
        row = self._cur.fetchone()
        if row is None:
            return None
        return RowCompat(self._columns(), row)

    def fetchall(self):
        rows = self._cur.fetchall()
        if not rows:
            return []
        cols = self._columns()
        return [RowCompat(cols, row) for row in rows]

    @property
    def rowcount(self):
        return self._cur.rowcount

    def close(self):
        self._cur.close()


class PostgresConnectionCompat:
    """Lets Postgres run the same ``?``-placeholder SQL the SQLite cache uses."""

    def __init__(self, raw_conn):
        self._conn = raw_conn

    def cursor(self):
        return PostgresCursorCompat(self._conn.cursor())

    def execute(self, sql, args=()):
        return self.cursor().execute(sql, args)

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


class SQLiteBackend:
    create_table_sql = SQLITE_CREATE_REPORTS

    def __init__(self, path, busy_timeout_ms=60000):
        self.path = str(path)
        self.busy_timeout_ms = int(busy_timeout_ms)

    @property
    def label(self):
        return self.path

    def connect(self):
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        conn = sqlite3.connect(self.path, timeout=max(5, self.busy_timeout_ms // 1000))
        conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
        conn.row_factory = sqlite3.Row
        return conn

    def truncate(self, conn):
        conn.execute("DELETE FROM reports")


class PostgresBackend:
    create_table_sql = POSTGRES_CREATE_REPORTS

    def __init__(self, database_url, connect_timeout=10):
        self.database_url = database_url
        self.connect_timeout = int(connect_timeout)

    @property
    def label(self):
        return redact_database_url(self.database_url)

    def connect(self):
        import psycopg
        return PostgresConnectionCompat(
            psycopg.connect(self.database_url, connect_timeout=self.connect_timeout)
        )

    def truncate(self, conn):
        conn.execute("TRUNCATE TABLE reports RESTART IDENTITY")


# ==========================================================
# STORE
# ==========================================================

class ReportStore:
    """Report persistence over a cache backend and an optional primary backend.

    The cache is authoritative for every read and its failures always raise
    ``StorageError``. The primary receives a mirrored copy of every write on a
    best-effort basis: its failures are logged and never raised, so it may lag
    behind or miss writes entirely. Ids are assigned independently by each
    backend and are not guaranteed to match.
    """

    def __init__(self, cache, primary=None, tz_name=DEFAULT_TIMEZONE):
        self.cache = cache
        self.primary = primary
        self.zone = ZoneInfo(tz_name)

    @contextmanager
    def _cache_connection(self):
        try:
            conn = self.cache.connect()
        except sqlite3.Error as exc:
            raise StorageError(f"Cache database unavailable: {exc}") from exc
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StorageError(f"Cache database error: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _primary_connection(self):
        conn = self.primary.connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def display_timestamp(self, moment=None):
        moment = moment or datetime.now(timezone.utc)
        return moment.astimezone(self.zone).strftime(DISPLAY_TIMESTAMP_FORMAT)

    # ------------------------------------------------------
    # Startup
    # ------------------------------------------------------

    def create_cache_schema(self):
        with self._cache_connection() as conn:
            conn.execute(self.cache.create_table_sql)
        print(f"✅ Cache table ready ({self.cache.label})")

    def create_primary_schema(self):
        with self._primary_connection() as pg:
            pg.execute(self.primary.create_table_sql)
        print(f"✅ Primary table ready ({self.primary.label})")

    def test_primary_connection(self):
        if self.primary is None:
            print("ℹ️ No primary database configured")
            return False
        try:
            with self._primary_connection() as pg:
                pg.execute("SELECT 1").fetchone()
        except Exception as exc:
            print(f"❌ Primary connection failed ({self.primary.label}): {exc}")
            return False
        print(f"✅ Primary connection successful ({self.primary.label})")
        return True

    def initialize(self):
        """Prepare both schemas, pull the primary into the cache, migrate timestamps.

        Returns True when the primary took part, False when running cache-only.
        """
        print("🔄 Initializing report store...")
        self.create_cache_schema()

        if not self.test_primary_connection():
            print("⚠️ Primary database unavailable, continuing with local cache only")
            return False
        try:
            self.create_primary_schema()
        except Exception as exc:
            print(f"⚠️ Could not prepare primary table: {exc}")
            print("⚠️ Continuing with local cache only")
            return False

        self.sync_from_primary()
        self.migrate_timestamps_to_local_format()
        print("✅ Report store initialized")
        return True

    def sync_from_primary(self, truncate_first=False):
        print("🔄 Syncing reports from primary into cache...")
        try:
            with self._primary_connection() as pg:
                rows = pg.execute(
                    f"SELECT {', '.join(REPORT_COLUMNS)} FROM reports ORDER BY id"
                ).fetchall()
        except Exception as exc:
            print(f"⚠️ Could not read reports from primary: {exc}")
            print("⚠️ Continuing with local cache only")
            return 0

        # Ids are assigned independently per store, so rows are matched on uid/date
        # and cache-only reports keep their own ids.
        payload = [tuple(row[c] for c in REPORT_COLUMNS[1:]) for row in rows]
        with self._cache_connection() as conn:
            if truncate_first:
                self.cache.truncate(conn)
            for values in payload:
                conn.execute(MERGE_BY_UID_DATE_SQL, values)

        if not payload:
            print("📝 No reports found in primary")
        else:
            print(f"✅ Synced {len(payload)} report(s) from primary into cache")
        return len(payload)

    def push_to_primary(self, truncate_first=False):
        if self.primary is None:
            raise ValueError("No primary database configured")
        reports = self.get_all()
        with self._primary_connection() as pg:
            pg.execute(self.primary.create_table_sql)
            if truncate_first:
                self.primary.truncate(pg)
            for report in reports:
                pg.execute(MERGE_BY_UID_DATE_SQL, self._row_values(report))
        print(f"✅ Pushed {len(reports)} report(s) from cache to primary")
        return len(reports)

    # ------------------------------------------------------
    # Reads (cache only)
    # ------------------------------------------------------

    def get_all(self, where=None, params=()):
        sql = "SELECT * FROM reports"
        if where:
            sql += f" WHERE {where}"
        sql += " ORDER BY report_date DESC, submitted_at DESC"
        with self._cache_connection() as conn:
            rows = conn.execute(sql, tuple(params or ())).fetchall()
        return [report_from_row(row) for row in rows]

    def get_by_id(self, report_id):
        with self._cache_connection() as conn:
            row = conn.execute("SELECT * FROM reports WHERE id=?", (report_id,)).fetchone()
        return report_from_row(row) if row else None

    def check_duplicate(self, uid, report_date):
        with self._cache_connection() as conn:
            row = conn.execute(
                "SELECT * FROM reports WHERE uid=? AND report_date=?",
                (uid, report_date),
            ).fetchone()
        return report_from_row(row) if row else None

    def count(self):
        with self._cache_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM reports").fetchone()[0]

    # ------------------------------------------------------
    # Writes (primary best-effort, then cache)
    # ------------------------------------------------------

    @staticmethod
    def _row_values(report):
        return (
            report.uid,
            report.name,
            report.team,
            serialize_activities(report.activities),
            report.report_date,
            report.submitted_at,
        )

    def insert(self, report):
        """Store a new report and return its cache id. The caller's Report is left as passed."""
        report = replace(report, submitted_at=report.submitted_at or self.display_timestamp())
        values = self._row_values(report)
        print("💾 Saving report to both databases...")

        if self.primary is not None:
            try:
                with self._primary_connection() as pg:
                    rows = pg.execute(INSERT_REPORT_SQL.rstrip() + " RETURNING id", values).fetchall()
                print(f"✅ Saved to primary (id={rows[0]['id']})")
            except Exception as exc:
                print(f"⚠️ Primary save failed: {exc}")

        with self._cache_connection() as conn:
            try:
                cur = conn.execute(INSERT_REPORT_SQL, values)
            except sqlite3.IntegrityError as exc:
                if "UNIQUE" in str(exc).upper():
                    raise DuplicateReportError(report.uid, report.report_date) from exc
                raise
            report_id = cur.lastrowid
        print(f"✅ Saved to cache (id={report_id})")
        return report_id

    def update(self, report_id, fields):
        """Apply an admin edit. ``fields`` may hold uid, name, team, report_date, activities."""
        print(f"🔄 Updating report {report_id} in both databases...")
        original = self.get_by_id(report_id)
        if original is None:
            raise ReportNotFoundError(report_id)

        updated = Report(
            id=original.id,
            uid=fields.get("uid", original.uid),
            name=fields.get("name", original.name),
            team=fields.get("team", original.team),
            report_date=fields.get("report_date", original.report_date),
            activities=list(fields.get("activities", original.activities)),
            submitted_at=original.submitted_at,
        )
        changes = self._row_values(updated)[:5]

        if self.primary is not None:
            try:
                self._update_primary(original, changes)
            except Exception as exc:
                print(f"⚠️ Primary update failed: {exc}")

        with self._cache_connection() as conn:
            try:
                conn.execute(
                    """
                    UPDATE reports
                    SET uid=?, name=?, team=?, activities=?, report_date=?
                    WHERE id=?
                    """,
                    changes + (report_id,),
                )
            except sqlite3.IntegrityError as exc:
                if "UNIQUE" in str(exc).upper():
                    raise DuplicateReportError(updated.uid, updated.report_date) from exc
                raise
        print(f"✅ Updated report {report_id} in cache")
        return updated

    def _update_primary(self, original, changes):
        # The stores key rows independently, so locate the primary row by
        # progressively looser matches before falling back to an upsert.
        set_clause = "UPDATE reports SET uid=?, name=?, team=?, activities=?, report_date=?"
        with self._primary_connection() as pg:
            matched = pg.execute(
                set_clause + " WHERE uid=? AND report_date=?",
                changes + (original.uid, original.report_date),
            ).rowcount
            if matched == 0:
                print("⚠️ No primary row for uid/date, trying uid only...")
                matched = pg.execute(set_clause + " WHERE uid=?", changes + (original.uid,)).rowcount
            if matched == 0:
                print("⚠️ No primary row for uid, upserting by uid/date...")
                pg.execute(UPSERT_BY_UID_DATE_SQL, changes + (original.submitted_at,))
        print("✅ Updated in primary")

    # ------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------

    def migrate_timestamps_to_local_format(self):
        print("🔄 Checking for ISO timestamp migration...")
        pending = []
        for report in self.get_all():
            if not looks_machine_readable(report.submitted_at):
                continue
            converted = to_display_timestamp(report.submitted_at, self.zone)
            if converted != report.submitted_at:
                pending.append((report, converted))

        if not pending:
            print("📝 No ISO timestamps found, migration not needed")
            return 0

        with self._cache_connection() as conn:
            for report, converted in pending:
                print(f"Converting timestamp for id {report.id}: {report.submitted_at} → {converted}")
                conn.execute("UPDATE reports SET submitted_at=? WHERE id=?", (converted, report.id))

        if self.primary is not None:
            try:
                with self._primary_connection() as pg:
                    for report, converted in pending:
                        pg.execute(
                            "UPDATE reports SET submitted_at=? WHERE uid=? AND report_date=?",
                            (converted, report.uid, report.report_date),
                        )
            except Exception as exc:
                print(f"⚠️ Primary timestamp migration failed: {exc}")

        print(f"✅ Migrated {len(pending)} report(s) to local timestamp format")
        return len(pending)
