"""
scopegraph — hierarchical data scoping, RBAC and approval/reporting graphs.
Flask Application Factory.

Usage:
    from scopegraph import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config

The engine is a library: services take an explicit ``Actor`` and run inside
an application context. The factory wires config, logging, the database and
the error handlers that turn engine exceptions into JSON responses.
"""

import logging
import os

from flask import Flask
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from scopegraph.config import config
from scopegraph.core.exceptions import (
    AccessDenied,
    ChainBuildError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from scopegraph.middleware.logging_config import configure_logging
from scopegraph.models import db

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def _register_error_handlers(app):
    @app.errorhandler(AccessDenied)
    def access_denied(e):
        return {"error": "Forbidden", "reason": e.reason, "detail": str(e)}, 403

    @app.errorhandler(NotFoundError)
    def not_found(e):
        return {"error": "Not found", "detail": str(e)}, 404

    @app.errorhandler(ConflictError)
    def conflict(e):
        return {"error": "Conflict", "detail": str(e)}, 409

    @app.errorhandler(ValidationError)
    def validation_failed(e):
        return {"error": "Validation failed", "detail": str(e), "fields": e.details}, 422

    @app.errorhandler(ChainBuildError)
    def chain_build_failed(e):
        logger.error("Approval chain build failed: %s", e, exc_info=e.__cause__)
        return {"error": "Internal server error", "detail": "approval chain could not be built"}, 500


def _register_cli(app):
    @app.cli.command("seed-rbac")
    def seed_rbac_cmd():
        """Seed the standard roles and <resource>.<action> permissions."""
        from scopegraph.services.permission_service import seed_permissions
        counts = seed_permissions()
        logger.info("Seeded RBAC: %s", counts)

    @app.cli.command("expire-roles")
    def expire_roles_cmd():
        """Deactivate role assignments whose end date has passed."""
        from scopegraph.services.permission_service import expire_temporary_assignments
        result = expire_temporary_assignments()
        logger.info("Expired role assignments: %s", result["expired_assignments"])


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)

    # ── Import all models so db.create_all() sees every table ────────────
    from scopegraph.models import audit as _audit_models          # noqa: F401
    from scopegraph.models import auth as _auth_models            # noqa: F401
    from scopegraph.models import graph as _graph_models          # noqa: F401
    from scopegraph.models import hierarchy as _hierarchy_models  # noqa: F401
    from scopegraph.models import scope as _scope_models          # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    db_uri = app.config.get("SQLALCHEMY_DATABASE_URI") or ""
    if db_uri.startswith("sqlite:///") and ":memory:" not in db_uri:
        db_dir = os.path.dirname(db_uri[len("sqlite:///"):])
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
    with app.app_context():
        db.create_all()
        app.logger.info("db.create_all() completed successfully")

    _register_error_handlers(app)
    _register_cli(app)

    return app
