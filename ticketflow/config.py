"""
Configuration classes for the Ticketflow app factory.

Selected by name in ``create_app``; classes are instantiated so that
ProductionConfig can refuse to start with missing secrets:

    app.config.from_object(config[os.getenv("APP_ENV", "development")]())

Lifecycle settings (all overridable through the environment):

    COMPLETION_CERTIFICATE_ROLES   comma list, default "DO,EO"
    MIN_REMARKS_LENGTH             default 10
    MIN_REJECTION_REASON_LENGTH    default 20
    DOCUMENT_STORE_BACKEND         "local" | "memory"
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
instance_dir = os.path.join(basedir, "instance")


def _csv(value: str) -> tuple[str, ...]:
    return tuple(v.strip().upper() for v in value.split(",") if v.strip())


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


def _database_url(fallback: str | None) -> str | None:
    # Hosted Postgres URLs still use the postgres:// scheme SQLAlchemy 2.0 rejects
    url = os.getenv("DATABASE_URL", "")
    if not url:
        return fallback
    return url.replace("postgres://", "postgresql://", 1)


_POOL_OPTIONS = {
    "pool_pre_ping": True,
    "pool_size": 5,
    "max_overflow": 10,
    "pool_recycle": 300,
    "pool_timeout": 20,
}


class Config:
    """Settings shared by every environment."""

    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = dict(_POOL_OPTIONS)

    REDIS_URL = os.getenv("REDIS_URL", "")
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Certificates and approval documents arrive as multipart uploads
    MAX_CONTENT_LENGTH = _int_env("MAX_CONTENT_LENGTH", 20 * 1024 * 1024)
    DOCUMENT_STORE_BACKEND = os.getenv("DOCUMENT_STORE_BACKEND", "local")
    DOCUMENT_STORAGE_PATH = os.getenv("DOCUMENT_STORAGE_PATH", os.path.join(instance_dir, "documents"))

    COMPLETION_CERTIFICATE_ROLES = _csv(os.getenv("COMPLETION_CERTIFICATE_ROLES", "DO,EO"))
    MIN_REMARKS_LENGTH = _int_env("MIN_REMARKS_LENGTH", 10)
    MIN_REJECTION_REASON_LENGTH = _int_env("MIN_REJECTION_REASON_LENGTH", 20)


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(
        f"sqlite:///{os.path.join(instance_dir, 'ticketflow_dev.db')}"
    )
    # Pool sizing is meaningless for the SQLite fallback
    SQLALCHEMY_ENGINE_OPTIONS = dict(_POOL_OPTIONS) if os.getenv("DATABASE_URL") else {}


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    DOCUMENT_STORE_BACKEND = "memory"


class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = _database_url(None)
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        **_POOL_OPTIONS,
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")
        if self.DOCUMENT_STORE_BACKEND == "memory":
            raise RuntimeError("DOCUMENT_STORE_BACKEND=memory loses uploads on restart")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
