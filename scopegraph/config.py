"""
scopegraph configuration classes for the Flask app factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])

Services read these keys from ``current_app.config``; outside an application
context they fall back to the module-level defaults below.
"""

import os

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'scopegraph_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

DEFAULT_PERMISSION_CACHE_TTL = 300
DEFAULT_GRAPH_CACHE_TTL = 60
DEFAULT_SUPER_ADMIN_ROLES = ("super_admin", "super-admin", "SuperAdmin")


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


class Config:
    """Base configuration shared across all environments."""

    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # Redis (graph / permission cache); "memory://" keeps everything in-process
    REDIS_URL = os.getenv("REDIS_URL", "memory://")

    # RBAC
    SUPER_ADMIN_ROLES = tuple(
        r.strip() for r in os.getenv("SUPER_ADMIN_ROLES", ",".join(DEFAULT_SUPER_ADMIN_ROLES)).split(",")
        if r.strip()
    )
    PERMISSION_CACHE_TTL = int(os.getenv("PERMISSION_CACHE_TTL", str(DEFAULT_PERMISSION_CACHE_TTL)))
    GRAPH_CACHE_TTL = int(os.getenv("GRAPH_CACHE_TTL", str(DEFAULT_GRAPH_CACHE_TTL)))
    RBAC_GRAPH_ENABLED = _env_flag("RBAC_GRAPH_ENABLED", "true")


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
    SQLALCHEMY_ENGINE_OPTIONS = {}
    REDIS_URL = "memory://"
    RBAC_GRAPH_ENABLED = True


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None

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


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
