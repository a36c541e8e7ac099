"""
Shared pytest fixtures for the Test Hub test suite.

Provides:
    - app: Flask application (session-scoped, in-memory SQLite)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - assets: the AssetService registered on the app
    - root_module / case: pre-created assets for case and step tests
"""

import pytest
from sqlalchemy import text

from testhub import create_app, get_asset_service
from testhub.models import db as _db

PROJECT_ID = 1
OTHER_PROJECT_ID = 2
OPERATOR_ID = 42
REVIEWER_ID = 7


# ── App & DB fixtures ────────────────────────────────────────────────────


def _drop_all():
    """Drop all tables, deleting module rows leaf-first beforehand.

    SQLite enforces the RESTRICT self-FK on ``test_modules.parent_id`` row by
    row during the implicit DELETE of ``DROP TABLE``.
    """
    for table in ("test_steps", "test_cases"):
        _db.session.execute(text(f"DELETE FROM {table}"))
    while _db.session.execute(text(
        "DELETE FROM test_modules WHERE id NOT IN "
        "(SELECT parent_id FROM test_modules WHERE parent_id IS NOT NULL)"
    )).rowcount:
        pass
    _db.session.commit()
    _db.drop_all()


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield _db.session
        _db.session.rollback()
        _drop_all()
        _db.create_all()


@pytest.fixture()
def assets(app):
    return get_asset_service()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def root_module(assets):
    return assets.create_module(PROJECT_ID, "Root", operator_id=OPERATOR_ID)


@pytest.fixture()
def case(assets, root_module):
    """A DRAFT case with three steps."""
    return assets.create_case(
        PROJECT_ID,
        root_module.id,
        {"title": "Create sales order", "priority": "HIGH", "tags": ["smoke", "otc"]},
        steps=[
            {"description": "Open VA01"},
            {"description": "Enter header data", "is_key_step": True},
            {"description": "Save order", "automated": True},
        ],
        operator_id=OPERATOR_ID,
    )

