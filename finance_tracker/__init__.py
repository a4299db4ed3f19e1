import os
import sqlite3
from datetime import date
from decimal import Decimal
from functools import wraps

from flask import (
    Flask,
    abort,
    flash,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    session,
    url_for,
    Response,
)
from werkzeug.security import check_password_hash, generate_password_hash

from .balances import (
    amount_sign_class,
    format_amount,
    format_short_date,
    movement_totals,
    reconcile,
    summarize_periods,
)
from .crypto import PayloadDecryptionError, load_cipher
from .db import connect_db, parse_database_config
from .db_migrations import apply_migrations, get_db_health
from .export import SUMMARY_FILE_NAME, XLSX_MIMETYPE, build_summary_workbook
from .periods import (
    MONTH_ORDER,
    InvalidPeriodError,
    format_period_label,
    parse_period_file_name,
    period_file_name,
    validate_period,
    validate_year,
)
from .statements import (
    Movement,
    UnsupportedStatementError,
    describe_source,
    normalize_text,
    parse_statement,
)
from .storage import delete_statement, list_statements, list_years, load_statement, save_statement


class DatabaseInitError(RuntimeError):
    """Raised when the statements database cannot be initialized."""


MAX_UPLOAD_BYTES = 10 * 1024 * 1024


def resolve_year_filter(args):
    raw = (args.get("year") or "").strip()
    if not raw:
        return None
    try:
        return validate_year(raw)
    except InvalidPeriodError:
        return None


def period_display_label(summary, include_year=False):
    label = format_period_label(summary["month"])
    if include_year:
        return f"{label} {summary['year']}"
    return label


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY=os.environ.get("SECRET_KEY", "dev"),
        DATABASE=os.path.join(app.instance_path, "finance_tracker.sqlite"),
        APP_PASSWORD=os.environ.get("APP_PASSWORD"),
        APP_PASSWORD_HASH=os.environ.get("APP_PASSWORD_HASH"),
        ENCRYPTION_KEY=os.environ.get("ENCRYPTION_KEY"),
        ENCRYPTION_PASSPHRASE=os.environ.get("ENCRYPTION_PASSPHRASE"),
        ENCRYPTION_SALT=os.environ.get("ENCRYPTION_SALT"),
        MAX_CONTENT_LENGTH=MAX_UPLOAD_BYTES,
    )

    if test_config is not None:
        app.config.update(test_config)

    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)

    if not app.config.get("APP_PASSWORD_HASH") and app.config.get("APP_PASSWORD"):
        app.config["APP_PASSWORD_HASH"] = generate_password_hash(app.config["APP_PASSWORD"])
    if not app.config.get("APP_PASSWORD_HASH"):
        app.logger.warning("No APP_PASSWORD configured; every login attempt will be rejected.")

    cipher = load_cipher(app.config, app.instance_path)

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def get_db():
        if "db" not in g:
            config = parse_database_config(app.config["DATABASE"])
            try:
                g.db = connect_db(config)
            except (sqlite3.Error, OSError, RuntimeError) as exc:
                message = f"Unable to open database {config['database_name']}: {exc}"
                app.logger.error(message)
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.db

    def init_db():
        config = parse_database_config(app.config["DATABASE"])
        try:
            apply_migrations(config)
            app.config["DB_INIT_ERROR"] = None
        except (sqlite3.Error, OSError, RuntimeError) as exc:
            message = f"Failed to initialize database {config['database_name']}: {exc}"
            app.logger.error(message)
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        print("Initialized the database.")

    @app.template_filter("amount")
    def amount_filter(value):
        return format_amount(value)

    @app.template_filter("short_date")
    def short_date_filter(value):
        return format_short_date(value)

    @app.template_filter("sign_class")
    def sign_class_filter(value):
        return amount_sign_class(value)

    @app.errorhandler(PayloadDecryptionError)
    def handle_decryption_error(exc):
        app.logger.error("Stored statement could not be decrypted: %s", exc)
        if request.path.startswith(("/uploads", "/dashboard/data")):
            return jsonify({"error": "Stored statement could not be decrypted."}), 500
        return "<h1>Stored statement could not be decrypted</h1>", 500

    def render_db_init_error_response():
        message = app.config.get("DB_INIT_ERROR") or "Database initialization failed."
        return f"<h1>Database initialization failed</h1><p>{message}</p>", 500

    @app.before_request
    def load_session_state():
        if app.config.get("DB_INIT_ERROR") and request.endpoint != "health":
            return render_db_init_error_response()
        g.authenticated = bool(session.get("authenticated"))

    def login_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            if not g.authenticated:
                if request.is_json:
                    return jsonify({"error": "Authentication required."}), 401
                return redirect(url_for("login", next=request.path))
            return view(**kwargs)

        return wrapped_view

    def api_login_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            if not g.authenticated:
                return jsonify({"error": "Authentication required."}), 401
            return view(**kwargs)

        return wrapped_view

    def collect_periods(year=None):
        db = get_db()
        periods = []
        for summary in list_statements(db, year):
            movements = load_statement(db, cipher, summary["year"], summary["month"]) or []
            periods.append((summary, movements))
        return periods

    @app.get("/health")
    def health():
        return jsonify({"ok": True})

    @app.get("/health/db")
    @api_login_required
    def db_health():
        try:
            return jsonify(get_db_health(parse_database_config(app.config["DATABASE"])))
        except sqlite3.Error as exc:
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    @app.route("/login", methods=("GET", "POST"))
    def login():
        if request.method == "POST":
            password = request.form.get("password", "")
            password_hash = app.config.get("APP_PASSWORD_HASH")
            error = None
            if not password_hash:
                error = "Access password is not configured."
            elif not check_password_hash(password_hash, password):
                error = "Incorrect password."

            if error is None:
                session.clear()
                session["authenticated"] = True
                next_path = request.args.get("next") or ""
                if next_path.startswith("/") and not next_path.startswith("//"):
                    return redirect(next_path)
                return redirect(url_for("index"))

            app.logger.warning("Rejected login attempt from %s", request.remote_addr)
            flash(error)

        return render_template("login.html")

    @app.route("/logout")
    def logout():
        session.clear()
        return redirect(url_for("login"))

    @app.route("/")
    @login_required
    def index():
        year = resolve_year_filter(request.args)
        db = get_db()
        statements = list_statements(db, year)
        for summary in statements:
            summary["file_name"] = period_file_name(summary["year"], summary["month"])
            summary["display_label"] = period_display_label(summary)
        return render_template(
            "index.html",
            statements=statements,
            years=list_years(db),
            selected_year=year,
            current_year=date.today().year,
            months=[(month, format_period_label(month)) for month in MONTH_ORDER],
        )

    def upload_json():
        payload = request.get_json(silent=True) or {}
        data = payload.get("data")
        if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
            return jsonify({"error": "Invalid format."}), 400
        try:
            year, token = validate_period(payload.get("month"), payload.get("year") or date.today().year)
        except InvalidPeriodError as exc:
            return jsonify({"error": str(exc)}), 400

        movements = [Movement.from_dict(item) for item in data]
        save_statement(get_db(), cipher, year, token, movements, label=normalize_text(payload.get("month")))
        file_name = period_file_name(year, token)
        app.logger.info("Stored %s movements as %s", len(movements), file_name)
        return jsonify({"fileName": file_name, "rows": len(movements)})

    @app.post("/upload")
    @login_required
    def upload():
        if request.is_json:
            return upload_json()

        month = request.form.get("month", "")
        try:
            year, token = validate_period(month, request.form.get("year") or date.today().year)
        except InvalidPeriodError as exc:
            flash(str(exc))
            return redirect(url_for("index"))

        statement_file = request.files.get("statement_file")
        if statement_file is None or not statement_file.filename:
            flash("Choose a statement file to upload.")
            return redirect(url_for("index"))

        try:
            movements = parse_statement(statement_file.read())
        except UnsupportedStatementError as exc:
            app.logger.warning("Rejected upload %r: %s", statement_file.filename, exc)
            flash("Could not read the statement file. Upload an Excel or HTML export.")
            return redirect(url_for("index"))

        if not movements:
            app.logger.warning("No movements recognized in %r", statement_file.filename)
            flash("No movements found. Check that the file contains the statement table.")
            return redirect(url_for("index"))

        save_statement(
            get_db(),
            cipher,
            year,
            token,
            movements,
            label=normalize_text(month),
            source_name=describe_source(statement_file.filename),
        )
        app.logger.info("Stored %s movements for %s/%s", len(movements), year, token)
        flash(f"Statement saved ({len(movements)} movements).")
        return redirect(url_for("index", year=year))

    @app.get("/uploads")
    @api_login_required
    def list_uploads():
        year = resolve_year_filter(request.args)
        statements = list_statements(get_db(), year)
        return jsonify({"files": [period_file_name(s["year"], s["month"]) for s in statements]})

    @app.get("/uploads/<file_name>")
    @api_login_required
    def get_upload(file_name):
        period = parse_period_file_name(file_name)
        if period is None:
            return jsonify({"error": "Invalid file."}), 400
        movements = load_statement(get_db(), cipher, *period)
        if movements is None:
            return jsonify({"error": "File not found."}), 404
        return jsonify([movement.to_dict() for movement in movements])

    @app.delete("/uploads/<file_name>")
    @api_login_required
    def delete_upload(file_name):
        period = parse_period_file_name(file_name)
        if period is None:
            return jsonify({"error": "Invalid file."}), 400
        if not delete_statement(get_db(), *period):
            return jsonify({"error": "File not found."}), 404
        app.logger.info("Deleted statement %s", file_name)
        return jsonify({"deleted": True})

    @app.post("/uploads/<file_name>/delete")
    @login_required
    def delete_upload_form(file_name):
        period = parse_period_file_name(file_name)
        if period is None or not delete_statement(get_db(), *period):
            flash("Statement not found.")
        else:
            app.logger.info("Deleted statement %s", file_name)
            flash("Statement deleted.")
        return redirect(url_for("index"))

    @app.get("/statements/<file_name>")
    @login_required
    def statement_detail(file_name):
        period = parse_period_file_name(file_name)
        if period is None:
            abort(404)
        movements = load_statement(get_db(), cipher, *period)
        if movements is None:
            abort(404)
        return render_template(
            "statement.html",
            file_name=file_name,
            label=format_period_label(period[1]),
            year=period[0],
            movements=movements,
            summary=reconcile(movements),
        )

    def dashboard_figures(year):
        labels, income, expenses, net = [], [], [], []
        for summary, movements in collect_periods(year):
            totals = movement_totals(movements)
            labels.append(period_display_label(summary, include_year=year is None))
            income.append(totals["income"])
            expenses.append(totals["expenses"])
            net.append(totals["net"])
        total_income = sum(income, Decimal("0"))
        total_expenses = sum(expenses, Decimal("0"))
        return {
            "labels": labels,
            "income": income,
            "expenses": expenses,
            "net": net,
            "totals": {
                "income": total_income,
                "expenses": total_expenses,
                "net": total_income - total_expenses,
            },
        }

    @app.get("/dashboard")
    @login_required
    def dashboard():
        year = resolve_year_filter(request.args)
        figures = dashboard_figures(year)
        return render_template(
            "dashboard.html",
            rows=list(zip(figures["labels"], figures["income"], figures["expenses"], figures["net"])),
            totals=figures["totals"],
            years=list_years(get_db()),
            selected_year=year,
        )

    @app.get("/dashboard/data")
    @api_login_required
    def dashboard_data():
        figures = dashboard_figures(resolve_year_filter(request.args))
        return jsonify({
            "labels": figures["labels"],
            "income": [float(value) for value in figures["income"]],
            "expenses": [float(value) for value in figures["expenses"]],
            "net": [float(value) for value in figures["net"]],
            "totals": {key: float(value) for key, value in figures["totals"].items()},
        })

    @app.get("/export-summary")
    @login_required
    def export_summary():
        year = resolve_year_filter(request.args)
        periods = [
            (period_display_label(summary, include_year=year is None), movements)
            for summary, movements in collect_periods(year)
        ]
        rows, total_delta = summarize_periods(periods)
        return Response(
            build_summary_workbook(rows, total_delta),
            mimetype=XLSX_MIMETYPE,
            headers={"Content-Disposition": f'attachment; filename="{SUMMARY_FILE_NAME}"'},
        )

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            pass

    app.get_db = get_db
    app.init_db = init_db
    app.cipher = cipher
    return app
