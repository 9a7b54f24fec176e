"""
Municipal Document & Workflow Platform
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'municipal_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


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

    # Redis (asset cache + rate limiter storage)
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Asset cache: remote images are fetched only from these hosts (comma-separated)
    ASSET_ALLOWED_HOSTS = [
        h.strip().lower() for h in os.getenv("ASSET_ALLOWED_HOSTS", "").split(",") if h.strip()
    ]
    ASSET_MAX_BYTES = int(os.getenv("ASSET_MAX_BYTES", str(2 * 1024 * 1024)))

    # Protocol numbering: total write attempts per document on protocol collision
    PROTOCOL_MAX_ATTEMPTS = int(os.getenv("PROTOCOL_MAX_ATTEMPTS", "3"))

    # Realtime / chat
    REALTIME_DELIVERY = os.getenv("REALTIME_DELIVERY", "thread")   # thread | deferred
    CHAT_DISPATCH = os.getenv("CHAT_DISPATCH", "thread")           # thread | inline
    CHAT_UNREAD_POLL_SECONDS = float(os.getenv("CHAT_UNREAD_POLL_SECONDS", "15"))


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )
    REDIS_URL = os.getenv("REDIS_URL", "memory://")


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    REDIS_URL = "memory://"
    RATELIMIT_ENABLED = False
    ASSET_ALLOWED_HOSTS = ["cdn"]

    # Deterministic delivery: events drain at the end of each request,
    # sends run inline and no poll threads are started.
    REALTIME_DELIVERY = "deferred"
    CHAT_DISPATCH = "inline"
    CHAT_UNREAD_POLL_SECONDS = 0


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    # Override engine options with PostgreSQL statement timeout
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
