"""
Tests for application assembly, configuration and the logging facade.
"""

import logging

import pytest
from fastapi.testclient import TestClient

from ProcessDesk.config import Config, env_bool
from ProcessDesk.core.logging import (
    ColoredFormatter,
    LogConfig,
    configure_logging,
    create_config,
    get_logging_manager,
)
from ProcessDesk.start.server import build_application
from ProcessDesk.test.conftest import FakeConnection


class TestBuildApplication:

    def test_rest_writes_reach_chat_connections(self, temp_dir):
        application = build_application(
            records_db=str(temp_dir / "database.sqlite"),
            messages_db=str(temp_dir / "msgdatabase.sqlite"),
        )
        try:
            watcher = FakeConnection("w1")
            application.chat_server.hub.add(watcher)
            client = TestClient(application.app)

            response = client.post("/api/categories", json={"name": "Legal"})

            assert response.status_code == 201
            assert watcher.events == [{"event": "state-invalidated", "data": {}}]
        finally:
            application.close()

    def test_presence_endpoint_shares_registry(self, temp_dir):
        application = build_application(
            records_db=str(temp_dir / "database.sqlite"),
            messages_db=str(temp_dir / "msgdatabase.sqlite"),
        )
        try:
            application.chat_server.registry.register("5", {"fullName": "Eve"}, "c5")

            users = TestClient(application.app).get("/api/presence").json()["users"]

            assert users == [{"fullName": "Eve", "id": "5"}]
        finally:
            application.close()


class TestConfig:

    def test_defaults(self):
        values = Config.get_config()

        assert isinstance(values["DEFAULT_WS_PORT"], int)
        assert isinstance(values["CORS_ORIGINS"], list)
        assert isinstance(values["BIND_SENDER_TO_IDENTITY"], bool)

    @pytest.mark.parametrize("raw,expected", [("1", True), ("yes", True), ("off", False), ("0", False)])
    def test_env_bool(self, monkeypatch, raw, expected):
        monkeypatch.setenv("PROCESSDESK_TEST_FLAG", raw)

        assert env_bool("PROCESSDESK_TEST_FLAG", not expected) is expected

    def test_env_bool_default(self, monkeypatch):
        monkeypatch.delenv("PROCESSDESK_TEST_FLAG", raising=False)

        assert env_bool("PROCESSDESK_TEST_FLAG", True) is True


class TestLogging:

    def teardown_method(self):
        configure_logging(LogConfig(console_output=False, file_output=False))

    def test_file_output_writes_rotating_files(self, temp_dir):
        configure_logging(LogConfig(level="INFO", log_dir=str(temp_dir), console_output=False))

        logging.getLogger("ProcessDesk.test").error("disk check")
        for handler in get_logging_manager()._handlers:
            handler.flush()

        assert "disk check" in (temp_dir / "processdesk.log").read_text(encoding="utf-8")
        assert "disk check" in (temp_dir / "processdesk_errors.log").read_text(encoding="utf-8")

    def test_reconfigure_replaces_handlers(self):
        configure_logging(LogConfig(file_output=False))
        configure_logging(LogConfig(file_output=False))

        assert len(get_logging_manager()._handlers) == 1

    def test_component_levels(self):
        configure_logging(create_config("testing"))

        assert logging.getLogger("websockets").level == logging.ERROR
        assert get_logging_manager().config.file_output is False

    def test_unknown_environment_falls_back(self):
        assert create_config("staging").level == create_config("development").level
        assert create_config("prod").console_output is False

    def test_colored_formatter_restores_levelname(self):
        formatter = ColoredFormatter("%(levelname)s %(message)s", use_colors=True)
        record = logging.LogRecord("x", logging.WARNING, __file__, 1, "careful", None, None)

        formatter.format(record)

        assert record.levelname == "WARNING"
