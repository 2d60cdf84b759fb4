"""Environment-aware configuration for the Flask application."""
import os
import tempfile
from datetime import timedelta


class BaseConfig:
    def __init__(self) -> None:
        # Defaults for local dev: SQLite db and a non-empty secret. Override via env for production.
        self.SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-me")
        db_url = os.getenv("DATABASE_URL")
        # If DATABASE_URL points to a placeholder host (e.g., db_host) or is missing, fall back to SQLite for local dev.
        if db_url and "db_host" not in db_url:
            self.SQLALCHEMY_DATABASE_URI = db_url
        else:
            self.SQLALCHEMY_DATABASE_URI = os.getenv(
                "SQLITE_URL",
                f"sqlite:///{os.path.join(os.getcwd(), 'instance', 'grievance.db')}",
            )
        self.SQLALCHEMY_TRACK_MODIFICATIONS = False
        self.SQLALCHEMY_ENGINE_OPTIONS = {
            "pool_size": int(os.getenv("DB_POOL_SIZE", 10)),
            "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", 20)),
            "pool_timeout": int(os.getenv("DB_POOL_TIMEOUT", 30)),
            "pool_recycle": int(os.getenv("DB_POOL_RECYCLE", 1800)),
        }
        self.SESSION_COOKIE_HTTPONLY = True
        self.SESSION_COOKIE_SAMESITE = "Lax"
        self.PREFERRED_URL_SCHEME = os.getenv("PREFERRED_URL_SCHEME", "https")
        self.WTF_CSRF_TIME_LIMIT = 3600
        self.WTF_CSRF_ENABLED = True
        self.MAIL_SERVER = os.getenv("MAIL_SERVER", "")
        self.MAIL_PORT = int(os.getenv("MAIL_PORT", 25))
        self.MAIL_USERNAME = os.getenv("MAIL_USERNAME", "")
        self.MAIL_PASSWORD = os.getenv("MAIL_PASSWORD", "")
        self.MAIL_USE_TLS = os.getenv("MAIL_USE_TLS", "true").lower() == "true"
        self.MAIL_USE_SSL = os.getenv("MAIL_USE_SSL", "false").lower() == "true"
        self.MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", "no-reply@grievance.local")
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.LOG_DIR = os.getenv("LOG_DIR", os.path.join(os.getcwd(), "logs"))
        self.DEFAULT_ADMIN_EMAIL = os.getenv("DEFAULT_ADMIN_EMAIL", "admin@municipal.gov.in")
        self.DEFAULT_ADMIN_PASSWORD = os.getenv("DEFAULT_ADMIN_PASSWORD", "Admin@12345!")

        # One-time code gateway
        self.OTP_CODE_LENGTH = int(os.getenv("OTP_CODE_LENGTH", 6))
        self.OTP_TTL_MINUTES = int(os.getenv("OTP_TTL_MINUTES", 10))
        self.OTP_MAX_ATTEMPTS = int(os.getenv("OTP_MAX_ATTEMPTS", 3))
        self.OTP_MAX_SESSIONS_PER_WINDOW = int(os.getenv("OTP_MAX_SESSIONS_PER_WINDOW", 5))
        self.VERIFIED_TOKEN_TTL_MINUTES = int(os.getenv("VERIFIED_TOKEN_TTL_MINUTES", 30))
        # smtp | log
        self.OTP_DELIVERY_BACKEND = os.getenv("OTP_DELIVERY_BACKEND", "smtp").lower()

        # Complaint lifecycle
        self.COMPLAINT_ID_PREFIX = os.getenv("COMPLAINT_ID_PREFIX", "CMP")
        self.SLA_HOURS_BY_PRIORITY = {
            "CRITICAL": int(os.getenv("SLA_HOURS_CRITICAL", 24)),
            "HIGH": int(os.getenv("SLA_HOURS_HIGH", 48)),
            "MEDIUM": int(os.getenv("SLA_HOURS_MEDIUM", 72)),
            "LOW": int(os.getenv("SLA_HOURS_LOW", 120)),
        }
        self.SLA_WARNING_HOURS = int(os.getenv("SLA_WARNING_HOURS", 24))
        self.COMPLAINTS_PER_PAGE = int(os.getenv("COMPLAINTS_PER_PAGE", 10))

        # Bearer tokens
        self.JWT_SECRET = os.getenv("JWT_SECRET", self.SECRET_KEY)
        self.JWT_EXPIRES_HOURS = int(os.getenv("JWT_EXPIRES_HOURS", 24))

        self.NOTIFICATION_RETENTION_DAYS = int(os.getenv("NOTIFICATION_RETENTION_DAYS", 30))


class DevelopmentConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.DEBUG = True
        self.ENV = "development"
        self.SESSION_COOKIE_SECURE = False
        self.OTP_DELIVERY_BACKEND = os.getenv("OTP_DELIVERY_BACKEND", "log").lower()


class TestingConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.TESTING = True
        self.ENV = "testing"
        self.SQLALCHEMY_DATABASE_URI = "sqlite://"
        # In-memory SQLite is served from a StaticPool; pool sizing options do not apply.
        self.SQLALCHEMY_ENGINE_OPTIONS = {}
        self.WTF_CSRF_ENABLED = False
        self.SESSION_COOKIE_SECURE = False
        self.OTP_DELIVERY_BACKEND = "log"
        self.LOG_LEVEL = "WARNING"
        self.LOG_DIR = os.path.join(tempfile.gettempdir(), "grievance-test-logs")
        self.JWT_SECRET = "testing-jwt-secret"
        self.DEFAULT_ADMIN_EMAIL = ""


class ProductionConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.DEBUG = False
        self.ENV = "production"
        self.SESSION_COOKIE_SECURE = True
        self.PERMANENT_SESSION_LIFETIME = timedelta(hours=12)
