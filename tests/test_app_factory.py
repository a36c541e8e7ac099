"""App factory, configuration, logging formatters and exception payloads."""

import json
import logging

import pytest

from testhub import get_asset_service
from testhub.config import ProductionConfig, TestingConfig, _database_url
from testhub.core.exceptions import (
    ConflictError,
    InvalidOperationError,
    InvalidStateError,
    NotFoundError,
)
from testhub.logging_config import JSONFormatter, ReadableFormatter
from testhub.models import db
from testhub.repositories.base import unit_of_work
from testhub.services.asset_service import EXTENSION_KEY, AssetService


class TestFactory:
    def test_testing_config_loaded(self, app):
        assert app.config["TESTING"] is True
        assert app.config["SQLALCHEMY_DATABASE_URI"] == TestingConfig.SQLALCHEMY_DATABASE_URI
        assert app.config["MODULE_PATH_SEPARATOR"] == "/"

    def test_asset_service_registered(self, app):
        service = get_asset_service()
        assert isinstance(service, AssetService)
        assert app.extensions[EXTENSION_KEY] is service
        assert service.identifiers.max_retries == app.config["CASE_ID_MAX_RETRIES"]

    def test_sqlite_foreign_keys_enabled(self):
        assert db.session.execute(db.text("PRAGMA foreign_keys")).scalar() == 1

    def test_asset_error_handler(self, app):
        @app.route("/_probe/<int:module_id>")
        def probe(module_id):
            get_asset_service().get_module(module_id)
            return {"ok": True}

        res = app.test_client().get("/_probe/404")
        assert res.status_code == 404
        body = res.get_json()
        assert body["error"] == "NOT_FOUND"
        assert body["details"]["resource"] == "TestModule"


class TestConfig:
    def test_postgres_scheme_normalized(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgres://u:p@db/testhub")
        assert _database_url() == "postgresql://u:p@db/testhub"

    def test_default_when_unset(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        assert _database_url("sqlite://") == "sqlite://"

    def test_production_requires_database_url(self, monkeypatch):
        monkeypatch.setattr(ProductionConfig, "SQLALCHEMY_DATABASE_URI", None)
        with pytest.raises(RuntimeError, match="DATABASE_URL"):
            ProductionConfig()


class TestUnitOfWork:
    def test_nested_failure_keeps_outer_work(self, assets):
        with unit_of_work():
            kept = assets.create_module(1, "Kept")
            with pytest.raises(NotFoundError):
                assets.create_module(1, "Lost", parent_id=9999)
        assert [m.name for m in assets.module_roots(1)] == [kept.name]

    def test_outer_failure_rolls_back_everything(self, assets):
        with pytest.raises(RuntimeError):
            with unit_of_work():
                assets.create_module(1, "Temp")
                raise RuntimeError("boom")
        assert assets.module_roots(1) == []


def _record(**extra):
    record = logging.LogRecord("testhub.test", logging.INFO, __file__, 1, "moved %s", ("B",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestLogging:
    def test_json_formatter_includes_context(self):
        payload = json.loads(JSONFormatter().format(_record(module_id=5, operator_id=7)))
        assert payload["message"] == "moved B"
        assert payload["module_id"] == 5
        assert payload["operator_id"] == 7
        assert "case_id" not in payload

    def test_readable_formatter_appends_context(self):
        line = ReadableFormatter().format(_record(test_case_id=3))
        assert "moved B" in line
        assert "[test_case_id=3]" in line


class TestExceptions:
    def test_kinds_and_status_codes(self):
        assert NotFoundError("TestCase", 1).status_code == 404
        assert ConflictError("TestModule", "name", "SD").status_code == 409
        assert InvalidOperationError("TestModule", 1, "cycle").status_code == 422
        assert InvalidStateError("TestCase", 1, current="ACTIVE", target="REJECTED").status_code == 409

    def test_invalid_state_message(self):
        err = InvalidStateError("TestCase", 1, current="ACTIVE", target="REJECTED", action="reject")
        assert str(err) == "TestCase id=1 cannot move from ACTIVE to REJECTED (action=reject)"
        assert err.to_dict()["details"]["target"] == "REJECTED"

    def test_not_found_message(self):
        assert str(NotFoundError("TestModule", 3, project_id=2)) == "TestModule id=3 not found (project=2)"
