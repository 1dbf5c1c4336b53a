# ==========================================================
# FACULTY DAILY REPORTER — MAIN APPLICATION
# Submission form, admin dashboard, workbook export
# ==========================================================

import json
import os
import re
import secrets
from datetime import date, datetime, timedelta
from functools import wraps
from urllib.parse import urlsplit

from flask import (
    Blueprint, Flask, abort, current_app, flash, redirect,
    render_template, request, send_file, session, url_for
)
from markupsafe import Markup
from werkzeug.security import check_password_hash

from report_store import (
    DuplicateReportError, PostgresBackend, Report, ReportNotFoundError,
    ReportStore, SQLiteBackend, StorageError, Activity, build_report_filters
)
from workbook_export import XLSX_MIMETYPE, ExportError, WorkbookExporter

# ==========================================================
# APP CONFIG
# ==========================================================

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.path.join(BASE_DIR, "data")
DEFAULT_DB_FILE = os.path.join(DATA_DIR, "db", "reports.db")
DEFAULT_EXPORT_FILE = os.path.join(DATA_DIR, "exports", "reports.xlsx")
DEFAULT_TEAMS_FILE = os.path.join(BASE_DIR, "config", "teams.json")
DEFAULT_SHEETS_URL = "https://docs.google.com/spreadsheets/create"
UID_TYPES = {"text", "int"}


def is_env_true(name, default="0"):
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes", "on"}


def load_settings():
    uid_type = os.environ.get("REPORTER_UID_TYPE", "text").strip().lower()
    return {
        "SECRET_KEY": (
            os.environ.get("REPORTER_SECRET_KEY")
            or os.environ.get("SECRET")
            or "faculty-reporter-secret-key"
        ),
        "DATABASE_URL": (
            os.environ.get("DATABASE_URL") or os.environ.get("CONNECTION_STRING") or ""
        ).strip(),
        "REPORTER_DB_FILE": os.environ.get("REPORTER_DB_FILE", DEFAULT_DB_FILE),
        "REPORTER_EXPORT_FILE": os.environ.get("REPORTER_EXPORT_FILE", DEFAULT_EXPORT_FILE),
        "REPORTER_TEAMS_FILE": os.environ.get("REPORTER_TEAMS_FILE", DEFAULT_TEAMS_FILE),
        "REPORTER_TIMEZONE": os.environ.get("REPORTER_TIMEZONE", "Asia/Kolkata").strip(),
        "REPORTER_UID_TYPE": uid_type if uid_type in UID_TYPES else "text",
        "REPORTER_SHEETS_URL": os.environ.get("REPORTER_SHEETS_URL", DEFAULT_SHEETS_URL).strip(),
        "REPORTER_PG_CONNECT_TIMEOUT": int(os.environ.get("REPORTER_PG_CONNECT_TIMEOUT", "10")),
        "REPORTER_SQLITE_BUSY_TIMEOUT_MS": int(os.environ.get("REPORTER_SQLITE_BUSY_TIMEOUT_MS", "60000")),
        "ADMIN_USERNAME": os.environ.get("ADMIN_USERNAME", "admin"),
        "ADMIN_PASSWORD": os.environ.get("ADMIN_PASSWORD", "admin123"),
        "ADMIN_PASSWORD_HASH": os.environ.get("ADMIN_PASSWORD_HASH", "").strip(),
        "SESSION_COOKIE_SECURE": is_env_true("REPORTER_FORCE_SECURE_COOKIES", "0"),
    }


def build_report_store(config):
    cache = SQLiteBackend(config["REPORTER_DB_FILE"], config["REPORTER_SQLITE_BUSY_TIMEOUT_MS"])
    primary = None
    if config.get("DATABASE_URL"):
        primary = PostgresBackend(config["DATABASE_URL"], config["REPORTER_PG_CONNECT_TIMEOUT"])
    return ReportStore(cache, primary, config["REPORTER_TIMEZONE"])


def load_teams_config(path):
    try:
        with open(path, encoding="utf-8") as f:
            teams_config = json.load(f)
    except (OSError, ValueError) as exc:
        print(f"❌ Error loading teams configuration from {path}: {exc}")
        raise
    teams_config.setdefault("teams", {})
    return teams_config


def safe_internal_target(raw_target):
    target = (raw_target or "").strip()
    if not target:
        return None
    parsed = urlsplit(target)
    if parsed.scheme or parsed.netloc:
        return None
    if not target.startswith("/") or target.startswith("//"):
        return None
    return target


# ==========================================================
# FORM PARSING
# ==========================================================

def normalise_uid(raw_uid, uid_type="text"):
    uid = (raw_uid or "").strip()
    if not uid:
        raise ValueError("Faculty ID cannot be empty")
    if uid_type == "int":
        if not re.fullmatch(r"[+-]?\d+", uid):
            raise ValueError("Faculty ID must be a number")
        return str(int(uid))
    return uid


def is_iso_date(value):
    if not re.fullmatch(r"\d{4}-\d{2}-\d{2}", value or ""):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def parse_activities(form):
    """Turn the ``activities`` / ``counts`` form fields into Activity pairs.

    One ticked activity arrives as a single field and several as repeated
    fields; ``getlist`` reads both the same way. Each count is looked up as
    ``counts[<activity>]`` first, then positionally in a repeated ``counts``.
    """
    names = [n.strip() for n in form.getlist("activities") if n and n.strip()]
    positional = form.getlist("counts")
    activities = []
    seen = set()
    for index, name in enumerate(names):
        if name in seen:
            continue
        seen.add(name)
        count = form.get(f"counts[{name}]")
        if count is None and index < len(positional):
            count = positional[index]
        activities.append(Activity(name, (count or "").strip()))
    return activities


def duplicate_message(uid, report_date):
    return (
        f"You ({uid}) have already submitted a report for {report_date}. "
        "Each user can only submit one report per day."
    )


def team_dom_id(team):
    return re.sub(r"[^a-zA-Z0-9]", "", team)


# ==========================================================
# SECURITY
# ==========================================================

def get_csrf_token():
    token = session.get("_csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["_csrf_token"] = token
    return token


def csrf_field():
    token = get_csrf_token()
    return Markup(f'<input type="hidden" name="_csrf_token" value="{token}">')


def validate_csrf_token():
    sent = request.form.get("_csrf_token", "")
    expected = session.get("_csrf_token", "")
    if not sent or not expected:
        return False
    return secrets.compare_digest(sent, expected)


def enforce_csrf():
    if request.method not in {"POST", "PUT", "PATCH", "DELETE"}:
        return None
    if request.endpoint in {"static", "reports.health"}:
        return None
    if not validate_csrf_token():
        abort(400, description="Invalid CSRF token")
    return None


def apply_security_headers(response):
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "SAMEORIGIN")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault(
        "Content-Security-Policy",
        (
            "default-src 'self'; "
            "style-src 'self' 'unsafe-inline'; "
            "script-src 'self' 'unsafe-inline'; "
            "frame-ancestors 'self'; base-uri 'self'; form-action 'self'"
        ),
    )
    if current_app.config.get("SESSION_COOKIE_SECURE"):
        response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    return response


def credentials_valid(username, password):
    config = current_app.config
    expected_user = config["ADMIN_USERNAME"].strip().lower().encode("utf-8")
    if not secrets.compare_digest(username.strip().lower().encode("utf-8"), expected_user):
        return False
    if config.get("ADMIN_PASSWORD_HASH"):
        return check_password_hash(config["ADMIN_PASSWORD_HASH"], password)
    return secrets.compare_digest(password.encode("utf-8"), config["ADMIN_PASSWORD"].encode("utf-8"))


def admin_required(view_func):
    @wraps(view_func)
    def wrapped(*args, **kwargs):
        if not session.get("is_admin"):
            return redirect(url_for("reports.admin_login", next=request.path))
        return view_func(*args, **kwargs)
    return wrapped


def format_uk_date(value):
    text = str(value or "").strip()
    if is_iso_date(text):
        return date.fromisoformat(text).strftime("%d/%m/%Y")
    return text


def inject_template_helpers():
    return {
        "csrf_field": csrf_field,
        "is_admin": bool(session.get("is_admin")),
    }


# ==========================================================
# ROUTES
# ==========================================================

bp = Blueprint("reports", __name__)


def get_store():
    return current_app.extensions["report_store"]


def get_exporter():
    return current_app.extensions["workbook_exporter"]


def get_teams_config():
    return current_app.extensions["teams_config"]


def render_form(error=None, success=None, status=200, form=None):
    return render_template(
        "index.html",
        teams_config=get_teams_config(),
        error=error,
        success=success,
        form=form or {},
        today_str=date.today().isoformat(),
    ), status


def refresh_workbook(reason):
    try:
        get_exporter().regenerate()
    except ExportError as exc:
        print(f"⚠️ Workbook regeneration after {reason} failed: {exc}")
        return False
    return True


@bp.route("/")
def index():
    return render_form()


@bp.route("/submit", methods=["POST"])
def submit():
    form = request.form
    raw_uid = form.get("uid", "")
    name = form.get("name", "").strip()
    team = form.get("team", "").strip()
    report_date = form.get("report_date", "").strip()
    activities = parse_activities(form)

    if not raw_uid or not name or not team or not report_date or not activities:
        return render_form(error="Missing required fields", status=400, form=form)
    try:
        uid = normalise_uid(raw_uid, current_app.config["REPORTER_UID_TYPE"])
    except ValueError as exc:
        return render_form(error=str(exc), status=400, form=form)
    if not is_iso_date(report_date):
        return render_form(error="Report date must be a valid date (YYYY-MM-DD)", status=400, form=form)

    store = get_store()
    try:
        if store.check_duplicate(uid, report_date) is not None:
            return render_form(error=duplicate_message(uid, report_date), status=409, form=form)
        store.insert(Report(
            id=None,
            uid=uid,
            name=name,
            team=team,
            report_date=report_date,
            activities=activities,
        ))
    except DuplicateReportError:
        return render_form(error=duplicate_message(uid, report_date), status=409, form=form)
    except StorageError as exc:
        print(f"❌ Submit error: {exc}")
        return render_form(
            error="Could not save your report right now. Please try again.", status=500, form=form
        )

    refresh_workbook("submission")
    return render_form(success="Report submitted successfully")


@bp.route("/admin/login", methods=["GET", "POST"])
def admin_login():
    if session.get("is_admin"):
        return redirect(url_for("reports.admin"))

    if request.method == "POST":
        username = request.form.get("username", "")
        password = request.form.get("password", "")
        if not username.strip() or not password:
            flash("Enter username and password.", "warning")
            return render_template("login.html"), 400
        if not credentials_valid(username, password):
            flash("Invalid username or password", "danger")
            return render_template("login.html"), 401

        session["is_admin"] = True
        session.permanent = True
        print("🔐 Admin signed in")
        target = safe_internal_target(request.args.get("next")) or url_for("reports.admin")
        return redirect(target)

    return render_template("login.html")


@bp.route("/admin/logout")
def admin_logout():
    session.clear()
    return redirect(url_for("reports.admin_login"))


@bp.route("/admin")
@admin_required
def admin():
    filters = {key: request.args.get(key, "").strip() for key in ("date", "name", "uid")}
    where, params = build_report_filters(**filters)
    try:
        reports = get_store().get_all(where, params)
    except StorageError as exc:
        print(f"❌ Admin dashboard error: {exc}")
        flash(f"Database error: {exc}", "danger")
        reports = []
    return render_template("admin.html", reports=reports, filters=filters)


@bp.route("/admin/edit/<int:report_id>", methods=["GET", "POST"])
@admin_required
def edit_report(report_id):
    store = get_store()
    if request.method == "POST":
        return _save_report_edit(store, report_id)

    try:
        report = store.get_by_id(report_id)
    except StorageError as exc:
        print(f"❌ Database error when fetching report {report_id}: {exc}")
        flash(f"Database error: {exc}", "danger")
        return redirect(url_for("reports.admin"))
    if report is None:
        flash("Report not found", "warning")
        return redirect(url_for("reports.admin"))

    teams_config = get_teams_config()
    team_mapping = {team: team_dom_id(team) for team in teams_config["teams"]}
    known = {name for names in teams_config["teams"].values() for name in names}
    return render_template(
        "edit_report.html",
        report=report,
        teams_config=teams_config,
        team_mapping=team_mapping,
        selected={a.name: a.count for a in report.activities},
        extra_activities=[a for a in report.activities if a.name not in known],
    )


def _save_report_edit(store, report_id):
    edit_url = url_for("reports.edit_report", report_id=report_id)
    try:
        uid = normalise_uid(request.form.get("uid", ""), current_app.config["REPORTER_UID_TYPE"])
    except ValueError as exc:
        flash(str(exc), "danger")
        return redirect(edit_url)

    name = request.form.get("name", "").strip()
    team = request.form.get("team", "").strip()
    report_date = request.form.get("report_date", "").strip()
    activities = parse_activities(request.form)
    if not name or not team or not activities:
        flash("Name, team and at least one activity are required", "danger")
        return redirect(edit_url)
    if not is_iso_date(report_date):
        flash("Report date must be a valid date (YYYY-MM-DD)", "danger")
        return redirect(edit_url)

    try:
        store.update(report_id, {
            "uid": uid,
            "name": name,
            "team": team,
            "report_date": report_date,
            "activities": activities,
        })
    except ReportNotFoundError:
        flash("Report not found", "warning")
        return redirect(url_for("reports.admin"))
    except DuplicateReportError:
        flash(f"Another report already exists for {uid} on {report_date}.", "danger")
        return redirect(edit_url)
    except StorageError as exc:
        print(f"❌ DB update error: {exc}")
        flash(f"Database error: {exc}", "danger")
        return redirect(edit_url)

    if not refresh_workbook("edit"):
        flash("Report updated, but the export workbook could not be regenerated.", "warning")
    flash("Report updated successfully", "success")
    return redirect(url_for("reports.admin"))


@bp.route("/export")
@admin_required
def export():
    try:
        path = get_exporter().ensure()
    except ExportError as exc:
        print(f"❌ Error generating Excel file: {exc}")
        return render_form(error="Error generating Excel file", status=500)
    return send_file(path, as_attachment=True, download_name="reports.xlsx", mimetype=XLSX_MIMETYPE)


@bp.route("/export-to-sheets")
@admin_required
def export_to_sheets():
    return redirect(current_app.config["REPORTER_SHEETS_URL"])


@bp.route("/health")
def health():
    store = get_store()
    try:
        report_count = store.count()
    except StorageError as exc:
        return {"status": "error", "detail": str(exc)}, 503
    return {
        "status": "ok",
        "time": datetime.now().isoformat(timespec="seconds"),
        "primary": store.test_primary_connection(),
        "reports": report_count,
    }


# ==========================================================
# APP FACTORY
# ==========================================================

def create_app(overrides=None, store=None):
    app = Flask(__name__)
    app.config.update(load_settings())
    if overrides:
        app.config.update(overrides)
    app.config.update(
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE="Lax",
        PERMANENT_SESSION_LIFETIME=timedelta(hours=1),
    )

    if store is None:
        store = build_report_store(app.config)
    primary_live = store.initialize()

    app.extensions["report_store"] = store
    app.extensions["workbook_exporter"] = WorkbookExporter(store, app.config["REPORTER_EXPORT_FILE"])
    app.extensions["teams_config"] = load_teams_config(app.config["REPORTER_TEAMS_FILE"])

    app.add_template_filter(format_uk_date, "uk_date")
    app.context_processor(inject_template_helpers)
    app.before_request(enforce_csrf)
    app.after_request(apply_security_headers)
    app.register_blueprint(bp)

    primary_label = store.primary.label if store.primary is not None else "none"
    print(
        f"🗄️ DB ready: cache={store.cache.label} primary={primary_label} "
        f"({'online' if primary_live else 'offline'}) | reports={store.count()}"
    )
    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", "5000"))
    application = create_app()
    print(f"🌐 Server running on http://localhost:{port}")
    print(f"👨‍💼 Admin panel: http://localhost:{port}/admin/login")
    application.run(debug=is_env_true("REPORTER_DEBUG", "0"), port=port)
