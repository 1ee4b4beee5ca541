"""
Tests for configuration and structured logging
"""

import json
import logging
import pytest
import sys
from decimal import Decimal

from loan_engine import config as config_module
from loan_engine.config import LoanEngineConfig, reload_config
from loan_engine.logging_config import (
    JSONFormatter, setup_logging, configure_from, get_logger, log_action
)


class TestConfig:

    def test_defaults(self, monkeypatch):
        for name in ("LOAN_ENGINE_DATABASE_URL", "LOAN_ENGINE_PENALTY_ANNUAL_RATE",
                     "LOAN_ENGINE_SMS_API_TOKEN", "LOAN_ENGINE_DISPLAY_ID_PREFIX"):
            monkeypatch.delenv(name, raising=False)

        config = LoanEngineConfig(_env_file=None)

        assert config.database_url == "sqlite:///loans.db"
        assert config.default_currency == "LKR"
        assert config.display_id_prefix == "L"
        assert config.display_id_width == 4
        assert config.penalty_grace_period_days == 10
        assert config.penalty_rate == Decimal('0.12')
        assert config.transaction_max_retries == 3
        assert config.sms_api_token == ""

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("LOAN_ENGINE_DATABASE_URL", "memory://")
        monkeypatch.setenv("LOAN_ENGINE_PENALTY_GRACE_PERIOD_DAYS", "5")
        monkeypatch.setenv("loan_engine_display_id_prefix", "ML")

        config = LoanEngineConfig(_env_file=None)

        assert config.database_url == "memory://"
        assert config.penalty_grace_period_days == 5
        assert config.display_id_prefix == "ML"

    def test_reload_config(self, monkeypatch):
        original = config_module.config
        monkeypatch.setenv("LOAN_ENGINE_NOTIFICATIONS_ENABLED", "false")
        try:
            reloaded = reload_config()
            assert reloaded is config_module.get_config()
            assert reloaded.notifications_enabled is False
        finally:
            config_module.config = original


class TestLogging:

    def _record(self, **attributes):
        record = logging.LogRecord("loan_engine.test", logging.INFO, __file__, 1,
                                   "Loan %s settled", ("L0001",), None)
        for key, value in attributes.items():
            setattr(record, key, value)
        return record

    def test_json_formatter(self):
        record = self._record(action="loan.settle", resource="loan:L0001",
                              extra={'amount': Decimal('5200.00')})

        entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "Loan L0001 settled"
        assert entry["level"] == "INFO"
        assert entry["action"] == "loan.settle"
        assert entry["extra"] == {"amount": "5200.00"}
        assert "correlation_id" not in entry

    def test_json_formatter_includes_exception(self):
        try:
            raise ValueError("bad amount")
        except ValueError:
            record = self._record()
            record.exc_info = sys.exc_info()

        entry = json.loads(JSONFormatter().format(record))
        assert "ValueError: bad amount" in entry["exception"]

    def test_get_logger_prefix(self):
        assert get_logger("reporting").name == "loan_engine.reporting"
        assert get_logger("loan_engine.lifecycle").name == "loan_engine.lifecycle"
        assert get_logger().name == "loan_engine"

    def test_setup_logging_to_file(self, tmp_path):
        log_file = tmp_path / "engine.log"
        logger = setup_logging("DEBUG", "text", str(log_file), logger_name="loan_engine_test_text")

        logger.debug("schedule generated")
        for handler in logger.handlers:
            handler.flush()

        line = log_file.read_text()
        assert "DEBUG" in line
        assert "schedule generated" in line
        assert logger.propagate is False
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

    def test_setup_logging_replaces_handlers(self):
        logger = setup_logging(logger_name="loan_engine_test_replace")
        setup_logging(logger_name="loan_engine_test_replace")
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_configure_from(self, tmp_path):
        config = LoanEngineConfig(_env_file=None, log_level="WARNING", log_format="json",
                                  log_file=str(tmp_path / "x.log"))
        logger = configure_from(config)
        try:
            assert logger.name == "loan_engine"
            assert logger.level == logging.WARNING
        finally:
            for handler in logger.handlers[:]:
                handler.close()
                logger.removeHandler(handler)
            logger.propagate = True
            logger.setLevel(logging.NOTSET)

    def test_log_action(self, caplog):
        logger = logging.getLogger("loan_engine_test_action")
        logger.setLevel(logging.INFO)

        with caplog.at_level(logging.INFO, logger="loan_engine_test_action"):
            log_action(logger, "info", "Settled L0001", action="loan.settle",
                       resource="loan:L0001", correlation_id="loan-1",
                       extra={'payment_id': "p1"})

        record = caplog.records[-1]
        assert record.getMessage() == "Settled L0001"
        assert record.action == "loan.settle"
        assert record.resource == "loan:L0001"
        assert record.correlation_id == "loan-1"
        assert record.extra == {'payment_id': "p1"}

    def test_log_action_respects_level(self, caplog):
        logger = logging.getLogger("loan_engine_test_quiet")
        logger.setLevel(logging.ERROR)

        with caplog.at_level(logging.ERROR, logger="loan_engine_test_quiet"):
            log_action(logger, "info", "not logged")

        assert caplog.records == []
