"""Tests for logging_config.py module."""

import io
import logging

import colorlog
import pytest

from termirc.logging_config import ErrorAggregator, LoggerConfigurator, log_structured_error
from termirc.logs.logger import logger as engine_logger


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


class TestLoggerConfigurator:
    """Root logger setup through colorlog."""

    def test_configure_installs_colored_handler(self, restore_root_logging, monkeypatch):
        monkeypatch.setenv("DEBUG", "false")
        stream = io.StringIO()
        LoggerConfigurator({"summary_on_exit": False}).configure(stream)
        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, colorlog.ColoredFormatter)
        assert root.level == logging.INFO
        assert engine_logger.logger.propagate is True

    def test_debug_env_selects_debug_level(self, restore_root_logging, monkeypatch):
        monkeypatch.setenv("DEBUG", "1")
        LoggerConfigurator({"summary_on_exit": False}).configure(io.StringIO())
        assert logging.getLogger().level == logging.DEBUG

    def test_explicit_level_overrides_env(self, restore_root_logging, monkeypatch):
        monkeypatch.setenv("DEBUG", "true")
        LoggerConfigurator({"level": logging.WARNING, "summary_on_exit": False}).configure(
            io.StringIO()
        )
        assert logging.getLogger().level == logging.WARNING

    def test_engine_events_reach_configured_stream(self, restore_root_logging, monkeypatch):
        monkeypatch.setenv("DEBUG", "false")
        stream = io.StringIO()
        LoggerConfigurator({"summary_on_exit": False}).configure(stream)
        engine_logger.log_event("engine", "stopped")
        assert "Engine stopped" in stream.getvalue()

    def test_formatter_colors_errors(self):
        formatter = LoggerConfigurator().build_formatter()
        record = logging.LogRecord("t", logging.ERROR, "", 0, "boom", (), None)
        formatted = formatter.format(record)
        assert "\033[31m" in formatted
        assert "boom" in formatted


class TestErrorAggregator:
    def test_counts_per_category(self):
        aggregator = ErrorAggregator()
        aggregator.record_error("transport", "reset")
        aggregator.record_error("transport", "refused")
        aggregator.record_error("protocol", "bad line")
        summary = aggregator.get_error_summary()
        assert summary["transport"]["total_count"] == 2
        assert summary["protocol"]["last_occurrence"]["message"] == "bad line"

    def test_keeps_bounded_history(self):
        aggregator = ErrorAggregator(keep=3)
        for i in range(10):
            aggregator.record_error("transport", str(i))
        entries = aggregator.errors["transport"]
        assert [e["message"] for e in entries] == ["7", "8", "9"]

    def test_alert_threshold(self):
        aggregator = ErrorAggregator()
        for _ in range(5):
            aggregator.record_error("transport", "x")
        assert aggregator.should_alert("transport", threshold_rate=4)
        assert not aggregator.should_alert("transport", threshold_rate=10)
        assert not aggregator.should_alert("unknown")

    def test_summary_report(self, caplog):
        aggregator = ErrorAggregator()
        with caplog.at_level(logging.INFO):
            aggregator.log_summary_report()
        assert "No errors recorded" in caplog.text
        aggregator.record_error("transport", "x")
        with caplog.at_level(logging.WARNING):
            aggregator.log_summary_report()
        assert "transport: 1 total" in caplog.text


def test_log_structured_error_includes_exception(caplog):
    with caplog.at_level(logging.ERROR, logger="termirc.errors"):
        log_structured_error("protocol", "bad", ValueError("nope"), {"line": "x"})
    message = caplog.records[-1].getMessage()
    assert message == "[PROTOCOL] bad | Exception: ValueError: nope | Context: line=x"
