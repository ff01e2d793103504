"""Tests for structured logging configuration."""

from __future__ import annotations

import json
import logging

import pytest
import structlog
from structlog.stdlib import ProcessorFormatter

from ormgraph import Connection, configure_logging, get_logger


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    level = root.level
    yield
    structlog.reset_defaults()
    root.handlers = [h for h in root.handlers if not isinstance(h.formatter, ProcessorFormatter)]
    root.setLevel(level)
    for name in ("mysql.connector", "psycopg2"):
        logging.getLogger(name).setLevel(logging.NOTSET)


def json_lines(output: str) -> list[dict]:
    return [json.loads(line) for line in output.splitlines() if line.startswith("{")]


class TestConfigureLogging:
    def test_json_query_events(self, capsys) -> None:
        """Executed statements are logged at debug level with their SQL."""
        configure_logging(json_output=True, level="DEBUG")
        conn = Connection("sqlite::memory:")
        conn.select("SELECT 1 AS one")
        conn.disconnect()

        events = [e for e in json_lines(capsys.readouterr().out) if e["event"] == "query_executed"]

        assert events[-1]["sql"] == "SELECT 1 AS one"
        assert events[-1]["level"] == "debug"
        assert "timestamp" in events[-1]

    def test_level_filters_debug(self, capsys) -> None:
        configure_logging(json_output=True, level="INFO")
        conn = Connection("sqlite::memory:")
        conn.select("SELECT 1")
        conn.disconnect()

        assert [e["event"] for e in json_lines(capsys.readouterr().out)] == []

    def test_warning_events_pass(self, capsys) -> None:
        configure_logging(json_output=True, level="WARNING")
        conn = Connection("sqlite::memory:")

        def broken(entry) -> None:
            raise RuntimeError("listener down")

        conn.listen(broken)
        conn.select("SELECT 1")
        conn.disconnect()

        events = json_lines(capsys.readouterr().out)
        assert [e["event"] for e in events] == ["query_listener_failed"]
        assert events[0]["error"] == "listener down"

    def test_stdlib_records_share_the_format(self, capsys) -> None:
        """Driver libraries log through logging; they end up as JSON too."""
        configure_logging(json_output=True)
        logging.getLogger("some.driver").warning("pool %s exhausted", "main")

        events = json_lines(capsys.readouterr().out)
        assert events[0]["event"] == "pool main exhausted"
        assert events[0]["level"] == "warning"

    def test_console_renderer(self, capsys) -> None:
        configure_logging(level="DEBUG")
        get_logger("ormgraph.tests").info("something_happened", rows=3)

        out = capsys.readouterr().out
        assert "something_happened" in out
        assert "rows=3" in out

    def test_noisy_drivers_quietened(self) -> None:
        configure_logging(level="DEBUG")
        assert logging.getLogger("psycopg2").level == logging.WARNING
        assert logging.getLogger("mysql.connector").level == logging.WARNING

    def test_handler_replaced_not_stacked(self) -> None:
        configure_logging()
        configure_logging()
        assert len(logging.getLogger().handlers) == 1
