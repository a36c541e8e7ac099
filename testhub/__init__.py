"""
Test Hub
Flask Application Factory for the test asset hierarchy & lifecycle engine.

Usage:
    from testhub import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config

    with app.app_context():
        assets = get_asset_service()
"""

import logging
import os

from flask import Flask

from testhub.config import config
from testhub.core.exceptions import AssetError
from testhub.logging_config import configure_logging
from testhub.models import db
from testhub.services.asset_service import get_asset_service, init_app as init_asset_service

logger = logging.getLogger(__name__)

__all__ = ["create_app", "get_asset_service"]

# ── SQLite connection setup (global engine events) ──────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _configure_sqlite(dbapi_conn, connection_record):
    """Enable FK enforcement and hand transaction control to SQLAlchemy.

    pysqlite opens transactions lazily and ignores SAVEPOINT semantics; with
    isolation_level=None the driver stays out of the way and the "begin"
    listener below emits BEGIN IMMEDIATE itself.
    """
    if "sqlite" in type(dbapi_conn).__module__:
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


@_sa_event.listens_for(_sa_engine.Engine, "begin")
def _sqlite_begin(conn):
    """Take the SQLite write lock when the transaction starts.

    A deferred BEGIN lets two writers read the same state and then fail with
    "database is locked" when both upgrade to a write lock. IMMEDIATE makes
    the second writer wait (up to the busy timeout) until the first commits,
    so it reads committed state.
    """
    if conn.dialect.name == "sqlite":
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def _ensure_sqlite_dir(uri: str) -> None:
    if uri.startswith("sqlite:///") and ":memory:" not in uri:
        folder = os.path.dirname(uri[len("sqlite:///"):])
        if folder:
            os.makedirs(folder, exist_ok=True)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance with the asset engine
        registered under ``app.extensions["testhub.assets"]``.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Database ─────────────────────────────────────────────────────────
    _ensure_sqlite_dir(app.config.get("SQLALCHEMY_DATABASE_URI") or "")
    db.init_app(app)

    from testhub.models import testing as _testing_models  # noqa: F401

    with app.app_context():
        db.create_all()
        app.logger.debug("db.create_all() completed successfully")

    # ── Asset engine ─────────────────────────────────────────────────────
    init_asset_service(app)

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(AssetError)
    def asset_error(e):
        if e.status_code >= 500:
            logger.error("Asset engine failure: %s", e, exc_info=True)
        return e.to_dict(), e.status_code

    return app
