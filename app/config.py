"""
Collection Workflow Platform
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'collection_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _int_list(raw, default):
    if not raw:
        return list(default)
    return [int(part) for part in raw.split(",") if part.strip()]


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,   # recycle connections every 5 min
        "pool_timeout": 20,    # wait max 20s for a connection from pool
    }

    # Redis (rate limiter storage + readiness probe)
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Email / SMTP (optional: log-only when MAIL_SERVER is unset)
    MAIL_SERVER = os.getenv("MAIL_SERVER")
    MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
    MAIL_USE_TLS = os.getenv("MAIL_USE_TLS", "true").lower() == "true"
    MAIL_USERNAME = os.getenv("MAIL_USERNAME")
    MAIL_PASSWORD = os.getenv("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", "noreply@collections.local")

    # Channel gateways (WhatsApp / SMS / voice); unset → log-only sender
    CHANNEL_PROVIDER_URLS = {
        "whatsapp": os.getenv("WHATSAPP_PROVIDER_URL"),
        "sms": os.getenv("SMS_PROVIDER_URL"),
        "voice": os.getenv("VOICE_PROVIDER_URL"),
    }
    CHANNEL_PROVIDER_TOKEN = os.getenv("CHANNEL_PROVIDER_TOKEN")
    CHANNEL_SEND_TIMEOUT = float(os.getenv("CHANNEL_SEND_TIMEOUT", "10"))

    # Reminder & retry engine
    REMINDER_MAX_RETRIES = int(os.getenv("REMINDER_MAX_RETRIES", "3"))
    REMINDER_BACKOFF_POLICY = os.getenv("REMINDER_BACKOFF_POLICY", "exponential")
    REMINDER_BACKOFF_SECONDS = int(os.getenv("REMINDER_BACKOFF_SECONDS", "300"))
    REMINDER_BACKOFF_MAX_SECONDS = int(os.getenv("REMINDER_BACKOFF_MAX_SECONDS", "86400"))
    REMINDER_PRE_DUE_OFFSETS = _int_list(os.getenv("REMINDER_PRE_DUE_OFFSETS"), (3, 1))

    # Sweeps
    SWEEP_LEASE_SECONDS = int(os.getenv("SWEEP_LEASE_SECONDS", "120"))
    SWEEP_BATCH_SIZE = int(os.getenv("SWEEP_BATCH_SIZE", "100"))
    SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "false").lower() == "true"
    OCCURRENCE_MAX_CATCH_UP = int(os.getenv("OCCURRENCE_MAX_CATCH_UP", "12"))

    # Workflow policy
    DEFAULT_SLA_DAYS = int(os.getenv("DEFAULT_SLA_DAYS", "7"))
    APPROVAL_REQUIRED_FOR = [
        t.strip() for t in os.getenv("APPROVAL_REQUIRED_FOR", "request_item").split(",") if t.strip()
    ]
    REJECT_TRIGGERS_RE_REQUEST = os.getenv("REJECT_TRIGGERS_RE_REQUEST", "true").lower() == "true"
    AI_AUTO_APPROVE_ON_MATCH = os.getenv("AI_AUTO_APPROVE_ON_MATCH", "false").lower() == "true"


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    # In-memory SQLite runs on a StaticPool which takes no pool sizing arguments
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    SCHEDULER_ENABLED = False
    MAIL_SERVER = None
    CHANNEL_PROVIDER_URLS = {"whatsapp": None, "sms": None, "voice": None}
    REMINDER_BACKOFF_POLICY = "fixed"
    REMINDER_BACKOFF_SECONDS = 60


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
