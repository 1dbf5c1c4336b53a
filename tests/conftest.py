"""
Faculty Reporter - Test Configuration and Fixtures

The primary backend is played by a second SQLite file so the mirrored writes
can be inspected directly.
"""
import pytest

from app import create_app
from report_store import Activity, Report, ReportStore, SQLiteBackend

CSRF_TOKEN = "test-csrf-token"
ADMIN_PASSWORD = "s3cret-pass"


class UnreachableBackend:
    """Primary double whose every connection attempt is refused."""

    label = "postgresql://reporter@db.invalid/reports"
    create_table_sql = ""

    def connect(self):
        raise ConnectionRefusedError("could not connect to server: Connection refused")


@pytest.fixture
def cache_backend(tmp_path):
    return SQLiteBackend(tmp_path / "cache" / "reports.db")


@pytest.fixture
def primary_backend(tmp_path):
    return SQLiteBackend(tmp_path / "primary" / "reports.db")


@pytest.fixture
def store(cache_backend, primary_backend):
    report_store = ReportStore(cache_backend, primary_backend)
    report_store.initialize()
    return report_store


@pytest.fixture
def offline_store(cache_backend):
    report_store = ReportStore(cache_backend, UnreachableBackend())
    report_store.initialize()
    return report_store


@pytest.fixture
def make_report():
    def factory(uid="42", report_date="2024-01-05", **overrides):
        fields = {
            "id": None,
            "uid": uid,
            "name": "Asha Rao",
            "team": "Teaching",
            "report_date": report_date,
            "activities": [Activity("A", "3"), Activity("B", "5")],
        }
        fields.update(overrides)
        return Report(**fields)
    return factory


@pytest.fixture
def primary_rows(primary_backend):
    """Read the primary's reports table as plain dicts."""
    def read():
        conn = primary_backend.connect()
        try:
            return [dict(row) for row in conn.execute("SELECT * FROM reports ORDER BY id")]
        finally:
            conn.close()
    return read


@pytest.fixture
def app(tmp_path, store):
    flask_app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key",
            "REPORTER_EXPORT_FILE": str(tmp_path / "exports" / "reports.xlsx"),
            "REPORTER_UID_TYPE": "text",
            "ADMIN_USERNAME": "admin",
            "ADMIN_PASSWORD": ADMIN_PASSWORD,
            "ADMIN_PASSWORD_HASH": "",
        },
        store=store,
    )
    yield flask_app


@pytest.fixture
def client(app):
    test_client = app.test_client()
    with test_client.session_transaction() as sess:
        sess["_csrf_token"] = CSRF_TOKEN
    return test_client


@pytest.fixture
def admin_client(client):
    response = client.post(
        "/admin/login",
        data={"username": "Admin", "password": ADMIN_PASSWORD, "_csrf_token": CSRF_TOKEN},
    )
    assert response.status_code == 302
    return client
