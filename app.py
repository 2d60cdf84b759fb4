"""Flask application factory for the ward grievance portal."""
import json
import os
from typing import Optional

from flask import Flask, jsonify, request
from sqlalchemy import create_engine, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError
from dotenv import load_dotenv
from werkzeug.exceptions import HTTPException

from utils.api import PortalJSONProvider
from utils.errors import PortalError, Unauthenticated
from utils.logger import init_logging
from utils.security import apply_security_headers
from extensions import csrf, db, migrate, login_manager, register_collaborator


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(PortalError)
    def portal_error(error: PortalError):
        log = app.logger.warning if error.http_status >= 500 or error.http_status == 403 else app.logger.info
        log(
            "Request rejected",
            extra={"path": request.path, "method": request.method, "kind": error.kind},
        )
        return jsonify(error.to_payload()), error.http_status

    @app.errorhandler(HTTPException)
    def http_error(error: HTTPException):
        if error.code is None or error.code < 400:
            return error
        app.logger.warning(
            f"{error.code} {error.name}",
            extra={"path": request.path, "method": request.method},
        )
        return jsonify({"success": False, "message": error.description, "error": error.name, "data": None}), error.code

    @app.errorhandler(Exception)
    def internal_error(error):
        db.session.rollback()
        app.logger.exception("500 Internal Server Error")
        return (
            jsonify({"success": False, "message": "Internal server error", "error": "InternalError", "data": None}),
            500,
        )


def ensure_default_admin(app: Flask) -> None:
    """Ensure a default admin can log in without registering."""
    from models import User, UserRole  # Local import to avoid circular dependency

    admin_email = (app.config.get("DEFAULT_ADMIN_EMAIL") or "").lower().strip()
    admin_password = app.config.get("DEFAULT_ADMIN_PASSWORD") or ""
    if not admin_email or not admin_password:
        return

    admin_user = User.query.filter_by(email=admin_email).first()

    if admin_user:
        updates = False
        if admin_user.role != UserRole.ADMIN:
            admin_user.role = UserRole.ADMIN
            updates = True
        if not admin_user.is_active:
            admin_user.is_active = True
            updates = True
        if not admin_user.is_email_verified:
            admin_user.is_email_verified = True
            updates = True
        if updates:
            db.session.commit()
        return

    admin_user = User(
        full_name="System Administrator",
        email=admin_email,
        role=UserRole.ADMIN,
        is_email_verified=True,
        is_active=True,
    )
    admin_user.set_password(admin_password)
    db.session.add(admin_user)
    db.session.commit()


def ensure_database_exists(database_uri: str) -> None:
    """Create the target database if it does not exist (PostgreSQL + SQLite support)."""
    url = make_url(database_uri)

    if url.drivername.startswith("sqlite"):
        # In-memory databases have no file; otherwise make sure the parent directory exists.
        if url.database and url.database != ":memory:":
            os.makedirs(os.path.dirname(url.database) or ".", exist_ok=True)
        return

    if url.drivername.startswith("postgres"):
        db_name = url.database
        admin_url = url.set(database=os.getenv("POSTGRES_DB_ADMIN", "postgres"))
        engine = create_engine(admin_url, isolation_level="AUTOCOMMIT")
        try:
            with engine.connect() as conn:
                exists = conn.execute(
                    text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": db_name}
                ).scalar()
                if not exists:
                    conn.execute(text(f'CREATE DATABASE "{db_name}"'))
        except OperationalError:
            # If we cannot connect/create, let the normal app startup fail loudly later.
            pass
        finally:
            engine.dispose()


def register_collaborators(app: Flask) -> None:
    from utils.email_service import build_code_sender
    from utils.notifications import InAppNotificationDispatcher
    from utils.session_store import SqlVerificationSessionStore

    register_collaborator(app, "session_store", SqlVerificationSessionStore())
    register_collaborator(app, "code_sender", build_code_sender(app.config.get("OTP_DELIVERY_BACKEND")))
    register_collaborator(app, "notifier", InAppNotificationDispatcher())


def register_cli(app: Flask) -> None:
    from utils.sla_monitor import purge_notifications, run_housekeeping_cycle, scan_sla, sweep_sessions

    @app.cli.command("sla-scan")
    def sla_scan():
        """Send SLA warning and breach notifications (schedule this via cron)."""
        print(json.dumps(scan_sla()))

    @app.cli.command("sessions-sweep")
    def sessions_sweep():
        """Delete expired verification sessions."""
        print(json.dumps({"removed": sweep_sessions()}))

    @app.cli.command("notifications-purge")
    def notifications_purge():
        """Delete notifications past their retention window."""
        print(json.dumps({"removed": purge_notifications()}))

    @app.cli.command("housekeeping-run")
    def housekeeping_run():
        """Run every scheduled job once."""
        print(json.dumps(run_housekeeping_cycle(app)))


def create_app(config_name: Optional[str] = None) -> Flask:
    """Application factory with environment-aware configuration."""
    load_dotenv()

    app = Flask(__name__, instance_relative_config=True)
    app.json = PortalJSONProvider(app)

    # Resolve configuration
    from config import DevelopmentConfig, ProductionConfig, TestingConfig

    config_key = (config_name or os.getenv("FLASK_CONFIG") or os.getenv("FLASK_ENV") or "production").lower()
    config_map = {
        "development": DevelopmentConfig,
        "dev": DevelopmentConfig,
        "testing": TestingConfig,
        "test": TestingConfig,
        "production": ProductionConfig,
        "prod": ProductionConfig,
    }
    config_class = config_map.get(config_key, ProductionConfig)
    app.config.from_object(config_class())

    ensure_database_exists(app.config["SQLALCHEMY_DATABASE_URI"])

    # Optional instance-specific overrides
    if not app.config.get("TESTING"):
        app.config.from_pyfile("config.py", silent=True)
    os.makedirs(app.instance_path, exist_ok=True)

    # Initialize logging early
    init_logging(app)

    # Initialize extensions
    csrf.init_app(app)
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    login_manager.session_protection = "strong"

    @login_manager.user_loader
    def load_user(user_id):
        from models import User  # Local import to avoid circular dependency

        if not user_id:
            return None
        return db.session.get(User, str(user_id))

    @login_manager.request_loader
    def load_user_from_bearer(req):
        from utils.auth_tokens import load_user_from_request

        return load_user_from_request(req)

    @login_manager.unauthorized_handler
    def unauthorized():
        raise Unauthenticated()

    register_collaborators(app)

    # Blueprints; the API authenticates with bearer tokens, so it is exempt from CSRF.
    from routes import main_bp, auth_bp, complaints_bp, guest_bp

    for blueprint in (main_bp, auth_bp, complaints_bp, guest_bp):
        csrf.exempt(blueprint)
        app.register_blueprint(blueprint)

    register_cli(app)

    # Error handlers
    register_error_handlers(app)

    @app.after_request
    def _after_request(response):
        return apply_security_headers(response, force_https=app.config.get("PREFERRED_URL_SCHEME") == "https")

    # Ensure tables exist so first run creates the database structure automatically.
    with app.app_context():
        db.create_all()
        ensure_default_admin(app)

    return app


# Expose the Flask application for WSGI servers (e.g., gunicorn app:app).
app = create_app()


if __name__ == "__main__":
    port = int(os.getenv("PORT", 5000))
    app.run(host="0.0.0.0", port=port, use_reloader=False)
