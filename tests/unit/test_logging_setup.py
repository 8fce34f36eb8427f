"""
Unit tests for logging configuration.
"""
import json
import logging
import sys

import pytest

from smartmeter_exporter.logging_setup import (
    JsonFormatter,
    configure_logging,
    verbosity_to_level,
)


@pytest.fixture(autouse=True)
def restore_root_logger():
    """Put the root logger back the way pytest configured it."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


class TestVerbosity:
    """Test verbosity mapping."""

    @pytest.mark.parametrize(
        "verbosity,level",
        [
            (0, logging.WARNING),
            (1, logging.INFO),
            (2, logging.DEBUG),
            (3, logging.DEBUG),
        ],
    )
    def test_levels(self, verbosity, level):
        assert verbosity_to_level(verbosity) == level

    def test_configure_sets_root_level(self):
        configure_logging(verbosity=0)

        assert logging.getLogger().level == logging.WARNING


class TestFormats:
    """Test text and JSON output."""

    def test_text_format(self, capsys):
        configure_logging(verbosity=1, log_format="text")

        logging.getLogger("smartmeter_exporter.test").info("Scrape successful")

        out = capsys.readouterr().out
        assert " - smartmeter_exporter.test - INFO - Scrape successful" in out

    def test_json_format(self, capsys):
        configure_logging(verbosity=1, log_format="json")

        logging.getLogger("smartmeter_exporter.test").warning("Query failed: timeout")

        payload = json.loads(capsys.readouterr().out.strip())
        assert payload["level"] == "WARNING"
        assert payload["logger"] == "smartmeter_exporter.test"
        assert payload["msg"] == "Query failed: timeout"

    def test_json_includes_exception(self):
        try:
            raise ValueError("bad frame")
        except ValueError:
            exc_info = sys.exc_info()
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), exc_info)

        payload = json.loads(JsonFormatter().format(record))

        assert "ValueError: bad frame" in payload["exc_info"]

    def test_debug_suppressed_at_info(self, capsys):
        configure_logging(verbosity=1)

        logging.getLogger("smartmeter_exporter.test").debug("<< OK")

        assert "<< OK" not in capsys.readouterr().out
