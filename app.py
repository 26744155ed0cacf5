"""Flask application factory, CLI entry points, and database bootstrap."""

import json
import logging
from logging.handlers import RotatingFileHandler
import os
import sqlite3
import uuid
from pathlib import Path

import click
from dotenv import load_dotenv
from flask import Flask, g, has_request_context, jsonify, request
from flask_compress import Compress
from flask_talisman import Talisman
from sqlalchemy import event, func, or_
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from werkzeug.exceptions import HTTPException

load_dotenv()

from config import Config, INSTANCE_DIR as CONFIG_INSTANCE_DIR  # noqa: E402
from extensions import db, migrate, cache, csrf, limiter, login_manager  # noqa: E402
from services.errors import AppError  # noqa: E402


class RequestIdFilter(logging.Filter):
    """Inject request-scoped metadata into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            record.request_id = getattr(g, "request_id", "n/a")
            record.path = request.path
            record.method = request.method
        else:
            record.request_id = getattr(record, "request_id", "startup")
            record.path = getattr(record, "path", "")
            record.method = getattr(record, "method", "")
        return True


_STANDARD_RECORD_KEYS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime", "request_id", "path", "method"}


class JsonRequestFormatter(logging.Formatter):
    """One JSON object per line; ``extra=`` fields are carried along."""

    def format(self, record: logging.LogRecord) -> str:
        base = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", "n/a"),
            "path": getattr(record, "path", ""),
            "method": getattr(record, "method", ""),
        }
        for key, value in vars(record).items():
            if key not in _STANDARD_RECORD_KEYS and key not in base:
                base[key] = value
        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False, default=str)


def _configure_logging(app: Flask) -> None:
    """Configure structured logging with request IDs."""
    stream_handler = logging.StreamHandler()
    stream_handler.addFilter(RequestIdFilter())
    stream_handler.setFormatter(JsonRequestFormatter())
    stream_handler.setLevel(logging.INFO)

    handlers = [stream_handler]

    try:
        logs_dir = Path(app.instance_path) / "logs"
        logs_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            logs_dir / "app.log",
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.addFilter(RequestIdFilter())
        file_handler.setFormatter(JsonRequestFormatter())
        file_handler.setLevel(logging.INFO)
        handlers.append(file_handler)
    except OSError as exc:
        app.logger.warning("Falling back to stream-only logging (file handler unavailable): %s", exc)

    app.logger.handlers = handlers
    app.logger.setLevel(logging.INFO)
    # Service modules log through logging.getLogger(__name__).
    for name in ("services", "scheduler", "werkzeug"):
        logging.getLogger(name).handlers = handlers
        logging.getLogger(name).setLevel(logging.INFO)


def _configure_login_manager(app: Flask) -> None:
    """Bind Flask-Login to bearer tokens and API keys."""
    from models import User
    from services.auth_service import user_from_access_token, user_from_api_key

    login_manager.init_app(app)
    login_manager.session_protection = "strong"

    def _extract_token(req):
        auth_header = req.headers.get("Authorization", "")
        if auth_header.lower().startswith("bearer "):
            return auth_header.split(" ", 1)[1].strip()
        return None

    @login_manager.user_loader
    def _load_user(user_id: str):
        try:
            return db.session.get(User, int(user_id))
        except (TypeError, ValueError):
            return None

    @login_manager.request_loader
    def _load_user_from_request(req):
        token = _extract_token(req)
        if token:
            return user_from_access_token(token)
        api_key = req.headers.get("X-API-Key")
        if api_key:
            return user_from_api_key(api_key.strip())
        return None

    @login_manager.unauthorized_handler
    def _unauthorized():
        return jsonify({"error": "Authentication required", "code": "authentication_required"}), 401


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(AppError)
    def handle_app_error(err: AppError):
        if err.status_code >= 500:
            db.session.rollback()
            app.logger.error("Application error: %s", err.message, exc_info=True)
        else:
            app.logger.info("%s: %s", err.code, err.message)
        body = {"error": err.message, "code": err.code}
        field = getattr(err, "field", None)
        if field:
            body["field"] = field
        return jsonify(body), err.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(err: HTTPException):
        code = (err.name or "error").lower().replace(" ", "_")
        return jsonify({"error": err.description or err.name, "code": code}), err.code

    @app.errorhandler(Exception)
    def handle_unexpected(err: Exception):
        """Roll back broken transactions and return a JSON 500."""
        db.session.rollback()
        app.logger.exception("Unhandled exception")
        message = str(err) if (app.debug or app.testing) else "Internal server error"
        return jsonify({"error": message, "code": "server_error"}), 500


def _ensure_sqlite_directory(app: Flask) -> None:
    uri = app.config.get("SQLALCHEMY_DATABASE_URI")
    if not uri:
        return
    url = make_url(uri)
    if url.get_backend_name() != "sqlite" or not url.database or url.database == ":memory:":
        return
    db_path = Path(url.database)
    if not db_path.is_absolute():
        db_path = Path(app.instance_path) / db_path
    db_path.parent.mkdir(parents=True, exist_ok=True)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app():
    """Create, configure, and return a fully-initialised Flask app."""
    app = Flask(
        __name__,
        instance_path=str(CONFIG_INSTANCE_DIR),
        instance_relative_config=False,
    )
    app.config.from_object(Config)
    os.makedirs(app.instance_path, exist_ok=True)
    os.makedirs(app.config["BACKUP_DIR"], exist_ok=True)
    _configure_logging(app)

    # --- Core extensions ---
    _ensure_sqlite_directory(app)
    db.init_app(app)
    migrate.init_app(app, db, render_as_batch=True)
    cache.init_app(
        app,
        config={
            "CACHE_TYPE": app.config.get("CACHE_TYPE", "SimpleCache"),
            "CACHE_DEFAULT_TIMEOUT": app.config.get("CACHE_DEFAULT_TIMEOUT", 600),
            "CACHE_REDIS_URL": app.config.get("CACHE_REDIS_URL"),
        },
    )
    _configure_login_manager(app)
    csrf.init_app(app)
    Compress(app)

    if limiter:
        limiter.init_app(app)
    else:
        app.logger.warning("Rate limiting disabled.")

    if app.config.get("ENABLE_TALISMAN", True):
        Talisman(
            app,
            content_security_policy=app.config.get("CONTENT_SECURITY_POLICY"),
            force_https=app.config.get("TALISMAN_FORCE_HTTPS", not app.debug),
            session_cookie_secure=app.config.get("SESSION_COOKIE_SECURE", True),
            session_cookie_samesite=app.config.get("SESSION_COOKIE_SAMESITE", "Lax"),
        )

    from services.catalog_sync import CatalogSyncService

    app.extensions["catalog_sync"] = CatalogSyncService()

    with app.app_context():
        import models  # noqa: F401

        db.create_all()

    # Blueprints
    from routes import register_blueprints

    register_blueprints(app)
    _register_error_handlers(app)

    @app.get("/health")
    def health():
        return jsonify({"status": "ok"})

    # ------------------------------------------------------------------
    # CLI COMMANDS
    # ------------------------------------------------------------------
    _register_cli(app)

    @app.before_request
    def assign_request_id():
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex

    @app.after_request
    def attach_request_id(resp):
        rid = getattr(g, "request_id", None)
        if rid:
            resp.headers.setdefault("X-Request-ID", rid)
        return resp

    @app.after_request
    def security_headers(resp):
        """Attach a minimal set of security-related HTTP headers to each response."""
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("Referrer-Policy", "no-referrer-when-downgrade")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        return resp

    return app


def _register_cli(app: Flask) -> None:
    from models import User
    from services import backup as backup_service
    from services import scheduler
    from services.auth_service import create_api_key
    from services.errors import AppError as ServiceError
    from services.validation import validate_email, validate_password, validate_username

    def _find_user(identifier: str) -> User:
        ident = identifier.strip().lower()
        user = User.query.filter(or_(func.lower(User.username) == ident, func.lower(User.email) == ident)).first()
        if not user:
            raise click.ClickException(f"User {identifier} not found.")
        return user

    @app.cli.command("sync-catalog")
    @click.option("--source", default=None, help="URL or path of the catalog JSON (defaults to CATALOG_SOURCE).")
    def sync_catalog(source):
        """Replace the card catalog, keeping decks and collections attached."""
        try:
            result = app.extensions["catalog_sync"].run(source)
        except ServiceError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(
            f"Synced {result['cards']:,} cards, {result['printings']:,} printings, {result['sets']:,} sets; "
            f"{result['prices']:,} priced ({result['pricesSkipped']:,} skipped); "
            f"{result['entriesSkipped']:,} malformed catalog entries skipped."
        )
        click.echo(
            f"Deck cards restored {result['deckCards']['restored']} (missing {result['deckCards']['notFound']}); "
            f"owned printings restored {result['ownedPrintings']['restored']} "
            f"(missing {result['ownedPrintings']['notFound']})."
        )

    @app.cli.group("backup")
    def backup_cli():
        """Create, list and restore user-data backups."""

    @backup_cli.command("create")
    @click.option("--type", "backup_type", type=click.Choice(backup_service.BACKUP_TYPES), default="manual", show_default=True)
    def backup_create(backup_type):
        entry = backup_service.create_backup_file(backup_type)
        click.echo(f"Wrote {entry['filename']} ({entry['size']:,} bytes).")

    @backup_cli.command("list")
    def backup_list():
        entries = backup_service.list_backups()
        if not entries:
            click.echo("No backups found.")
            return
        for entry in entries:
            click.echo(f"{entry['created']}  {entry['type']:<9}  {entry['size']:>10,}  {entry['filename']}")

    @backup_cli.command("restore")
    @click.argument("source")
    @click.option("--overwrite", is_flag=True, help="Delete existing user data before restoring.")
    def backup_restore(source, overwrite):
        """Restore SOURCE (a path, or a filename inside BACKUP_DIR)."""
        path = Path(source).expanduser()
        try:
            if path.is_file():
                with open(path, "r", encoding="utf-8") as handle:
                    backup = json.load(handle)
            else:
                backup = backup_service.load_backup_file(source)
            results = backup_service.restore_backup(backup, overwrite=overwrite)
        except (ServiceError, ValueError) as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(
            f"Restored {results['users']} user(s), {results['decks']} deck(s), {results['deck_cards']} deck card(s), "
            f"{results['owned_printings']} owned printing(s); {results['notFound']} not found."
        )
        for error in results["errors"][:20]:
            click.echo(f"  ! {error}")

    @app.cli.group("users")
    def users_cli():
        """Manage DeckLotus user accounts."""

    @users_cli.command("create")
    @click.argument("username")
    @click.argument("email")
    @click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
    @click.option("--admin/--no-admin", default=False, help="Grant admin rights")
    def create_user(username, email, password, admin):
        try:
            username = validate_username(username)
            email = validate_email(email)
            validate_password(password)
        except ServiceError as exc:
            raise click.ClickException(str(exc)) from exc
        clash = User.query.filter(
            or_(func.lower(User.username) == username.lower(), func.lower(User.email) == email.lower())
        ).first()
        if clash:
            raise click.ClickException("Username or email already exists.")
        user = User(username=username, email=email, is_admin=admin)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        click.echo(f"Created user {username} <{email}> (admin={admin}).")

    @users_cli.command("set-password")
    @click.argument("identifier")
    @click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
    def set_user_password(identifier, password):
        user = _find_user(identifier)
        try:
            user.set_password(validate_password(password))
        except ServiceError as exc:
            raise click.ClickException(str(exc)) from exc
        db.session.commit()
        click.echo(f"Password updated for {user.username}.")

    @users_cli.command("api-key")
    @click.argument("identifier")
    @click.argument("name")
    def issue_api_key(identifier, name):
        user = _find_user(identifier)
        raw_key = create_api_key(user, name)
        click.echo("New API key (store securely; shown once):")
        click.echo(raw_key)

    @app.cli.command("run-scheduler")
    def run_scheduler():
        """Run the weekly catalog sync and scheduled backups until interrupted."""
        scheduler.run_forever(app)


if __name__ == "__main__":
    _app = create_app()
    _app.run(host="127.0.0.1", port=5000, debug=True)


# Single SQLite PRAGMA hook (avoid duplicate listeners)
_SQLITE_PRAGMA_STATEMENTS = (
    "PRAGMA foreign_keys=ON;",
    "PRAGMA journal_mode=WAL;",
    "PRAGMA synchronous=NORMAL;",
    "PRAGMA temp_store=MEMORY;",
)


@event.listens_for(Engine, "connect")
def _sqlite_pragmas(dbapi_connection, _) -> None:
    """Enforce foreign keys and WAL each time SQLite opens a connection."""
    if not isinstance(dbapi_connection, sqlite3.Connection):
        return
    cur = dbapi_connection.cursor()
    for statement in _SQLITE_PRAGMA_STATEMENTS:
        cur.execute(statement)
    cur.close()
