"""
Tests for logging configuration.
"""

import json
import logging

import pytest

from service_deployer.logging_config import (
    HumanReadableFormatter,
    LogContext,
    StructuredFormatter,
    setup_logging,
)


@pytest.fixture
def restore_logging():
    """Put back the root and transition handlers that setup_logging replaces."""
    root = logging.getLogger()
    transitions = logging.getLogger("service_deployer.transitions")
    saved = (list(root.handlers), root.level, list(transitions.handlers))
    yield
    for handler in root.handlers + transitions.handlers:
        handler.close()
    root.handlers[:] = saved[0]
    root.setLevel(saved[1])
    transitions.handlers[:] = saved[2]


def make_record(msg="hello", level=logging.INFO):
    return logging.getLogger("service_deployer.test").makeRecord(
        "service_deployer.test", level, __file__, 10, msg, (), None
    )


class TestFormatters:
    def test_structured_formatter_includes_context(self):
        logger = logging.getLogger("service_deployer.test")

        with LogContext(logger, deployment_id="d-42", service="prod/api"):
            record = make_record()

        entry = json.loads(StructuredFormatter().format(record))
        assert entry["message"] == "hello"
        assert entry["level"] == "INFO"
        assert entry["deployment_id"] == "d-42"
        assert entry["service"] == "prod/api"

    def test_context_is_removed_on_exit(self):
        logger = logging.getLogger("service_deployer.test")

        with LogContext(logger, deployment_id="d-42"):
            pass
        record = make_record()

        assert "deployment_id" not in json.loads(StructuredFormatter().format(record))

    def test_colors_do_not_leak_into_record(self):
        record = make_record(level=logging.ERROR)

        line = HumanReadableFormatter(use_colors=True).format(record)

        assert "\033[31m" in line
        assert record.levelname == "ERROR"


class TestSetupLogging:
    def test_log_files_created(self, tmp_path, restore_logging):
        setup_logging(log_dir=str(tmp_path), use_json=True)

        logging.getLogger("service_deployer.transitions").info("d-1: INIT -> VALIDATED")
        logging.getLogger("service_deployer.coordinator").error("swap failed")

        assert (tmp_path / "deployer.log").exists()
        assert "swap failed" in (tmp_path / "error.log").read_text()
        assert "INIT -> VALIDATED" in (tmp_path / "transitions.log").read_text()

    def test_console_only_without_log_dir(self, restore_logging):
        setup_logging(console_level="WARNING")

        handlers = logging.getLogger().handlers
        assert len(handlers) == 1
        assert handlers[0].level == logging.WARNING
