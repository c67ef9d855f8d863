"""Tests for JSON and console log formatters."""

import json
import logging
import sys

import pytest

from core.errors import SinkError
from core.logging.context import clear_log_context, set_log_context
from core.logging.formatters import ConsoleFormatter, JSONFormatter
from events_to_db.filters import Subscription


def _make_record(
    msg="test message",
    level=logging.INFO,
    name="test.logger",
    exc_info=None,
    **extras,
):
    record = logging.LogRecord(
        name=name,
        level=level,
        pathname="test.py",
        lineno=42,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )
    for key, value in extras.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:

    @pytest.fixture(autouse=True)
    def clear_context(self):
        clear_log_context()
        yield
        clear_log_context()

    def test_base_fields(self):
        entry = json.loads(JSONFormatter().format(_make_record()))

        assert entry["level"] == "INFO"
        assert entry["logger"] == "test.logger"
        assert entry["message"] == "test message"
        assert entry["ts"].endswith("Z")
        assert "file" not in entry

    def test_source_location_on_error(self):
        entry = json.loads(JSONFormatter().format(_make_record(level=logging.ERROR)))
        assert entry["file"] == "test.py:42"

    def test_context_injected(self):
        set_log_context(stage="relay", worker_id="events-to-db-calm-red-fox", table="events")

        entry = json.loads(JSONFormatter().format(_make_record()))

        assert entry["stage"] == "relay"
        assert entry["worker_id"] == "events-to-db-calm-red-fox"
        assert entry["table"] == "events"

    def test_extra_fields_included(self):
        record = _make_record(
            batch_size=1024,
            duration_ms=12.5,
            sources=["a", "b"],
            state="streaming",
        )
        entry = json.loads(JSONFormatter().format(record))

        assert entry["batch_size"] == 1024
        assert entry["duration_ms"] == 12.5
        assert entry["sources"] == ["a", "b"]
        assert entry["state"] == "streaming"

    def test_unknown_extra_fields_dropped(self):
        entry = json.loads(JSONFormatter().format(_make_record(not_a_field="x")))
        assert "not_a_field" not in entry

    def test_numeric_fields_coerced(self):
        record = _make_record(batch_size="17", delay_seconds="1.5", attempt="not a number")
        entry = json.loads(JSONFormatter().format(record))

        assert entry["batch_size"] == 17
        assert entry["delay_seconds"] == 1.5
        assert entry["attempt"] is None

    def test_database_url_password_masked(self):
        record = _make_record(database_url="postgresql+asyncpg://relay:s3cret@db:5432/ax")
        entry = json.loads(JSONFormatter().format(record))

        assert entry["database_url"] == "postgresql+asyncpg://relay:***@db:5432/ax"
        assert "s3cret" not in json.dumps(entry)

    def test_sensitive_query_params_redacted(self):
        record = _make_record(http_url="http://localhost:4454/api/v1/events?token=abc&x=1")
        entry = json.loads(JSONFormatter().format(record))

        assert entry["http_url"] == "http://localhost:4454/api/v1/events?token=[REDACTED]&x=1"

    def test_pydantic_values_serialized(self):
        record = _make_record(subscriptions=[Subscription(source="a")])
        entry = json.loads(JSONFormatter().format(record))

        assert entry["subscriptions"] == [{"source": "a"}]

    def test_exception_included(self):
        try:
            raise SinkError("database went away")
        except SinkError:
            record = _make_record(level=logging.ERROR, exc_info=sys.exc_info())

        entry = json.loads(JSONFormatter().format(record))

        assert entry["exception"]["type"] == "SinkError"
        assert entry["exception"]["message"] == "database went away"
        assert "Traceback" in entry["exception"]["stacktrace"]


class TestConsoleFormatter:

    @pytest.fixture(autouse=True)
    def clear_context(self):
        clear_log_context()
        yield
        clear_log_context()

    @pytest.fixture
    def formatter(self):
        formatter = ConsoleFormatter()
        formatter._use_colors = False
        return formatter

    def test_plain_line(self, formatter):
        line = formatter.format(_make_record(msg="hello"))
        assert "INFO" in line
        assert line.endswith(" - hello")

    def test_context_in_prefix(self, formatter):
        set_log_context(stage="relay", table="events")
        line = formatter.format(_make_record())
        assert "[relay]" in line
        assert "[events]" in line

    def test_tags(self, formatter):
        line = formatter.format(_make_record(msg="Wrote", batch_size=3, state="flushing"))
        assert "[batch:3] [flushing] Wrote" in line

    def test_colors(self):
        formatter = ConsoleFormatter()
        formatter._use_colors = True
        line = formatter.format(_make_record(level=logging.WARNING))
        assert "\033[33mWARNING\033[0m" in line

    def test_exception_appended(self, formatter):
        try:
            raise ValueError("bad")
        except ValueError:
            record = _make_record(level=logging.ERROR, exc_info=sys.exc_info())

        line = formatter.format(record)
        assert "ValueError: bad" in line
