"""
Tests for exception hierarchy and error classification.
"""

import errno

import pytest

from core.errors.exceptions import (
    ConfigurationError,
    ErrorCategory,
    EventDecodeError,
    EventSourceError,
    EventSourceRejectedError,
    PermanentError,
    PipelineError,
    SchemaMismatchError,
    SinkError,
    SinkQueryError,
    TransientError,
    classify_exception,
    classify_http_status,
    wrap_exception,
)


class TestErrorCategory:
    """Test ErrorCategory enum."""

    def test_all_categories_exist(self):
        assert ErrorCategory.TRANSIENT.value == "transient"
        assert ErrorCategory.PERMANENT.value == "permanent"
        assert ErrorCategory.UNKNOWN.value == "unknown"


class TestPipelineError:
    """Test base PipelineError class."""

    def test_basic_error(self):
        err = PipelineError("Something went wrong")
        assert err.message == "Something went wrong"
        assert err.cause is None
        assert err.context == {}
        assert err.category == ErrorCategory.UNKNOWN

    def test_error_with_cause(self):
        cause = ValueError("Invalid value")
        err = PipelineError("Wrapper message", cause=cause)
        assert err.cause == cause
        assert "Caused by" in str(err)

    def test_error_with_context(self):
        err = PipelineError("Error", context={"table": "events"})
        assert err.context["table"] == "events"

    def test_unknown_is_retryable(self):
        assert PipelineError("x").is_retryable is True


class TestHierarchy:

    @pytest.mark.parametrize("cls", [EventSourceError, SinkError])
    def test_transient_errors(self, cls):
        err = cls("boom")
        assert isinstance(err, TransientError)
        assert err.category == ErrorCategory.TRANSIENT
        assert err.is_retryable is True

    @pytest.mark.parametrize(
        "cls", [ConfigurationError, SinkQueryError, EventDecodeError]
    )
    def test_permanent_errors(self, cls):
        err = cls("boom")
        assert isinstance(err, PermanentError)
        assert err.category == ErrorCategory.PERMANENT
        assert err.is_retryable is False

    def test_schema_mismatch_carries_table(self):
        err = SchemaMismatchError("events", "missing column 'seq'")
        assert err.table == "events"
        assert err.context == {"table": "events"}
        assert "Table 'events' is incompatible" in str(err)
        assert err.is_retryable is False

    def test_rejected_carries_status(self):
        err = EventSourceRejectedError("bad request", status=400)
        assert err.status == 400
        assert err.context["status"] == 400
        assert err.is_retryable is False


class TestClassifyHttpStatus:

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504])
    def test_transient(self, status):
        assert classify_http_status(status) == ErrorCategory.TRANSIENT

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    def test_permanent(self, status):
        assert classify_http_status(status) == ErrorCategory.PERMANENT

    def test_success_is_not_an_error(self):
        assert classify_http_status(200) == ErrorCategory.UNKNOWN


class TestClassifyException:

    def test_pipeline_error_uses_own_category(self):
        assert classify_exception(SinkError("x")) == ErrorCategory.TRANSIENT
        assert classify_exception(SinkQueryError("x")) == ErrorCategory.PERMANENT

    def test_connection_and_timeout_are_transient(self):
        assert classify_exception(ConnectionRefusedError()) == ErrorCategory.TRANSIENT
        assert classify_exception(TimeoutError()) == ErrorCategory.TRANSIENT

    def test_disk_full_is_permanent(self):
        exc = OSError(errno.ENOSPC, "No space left on device")
        assert classify_exception(exc) == ErrorCategory.PERMANENT

    def test_other_os_errors_are_transient(self):
        exc = OSError(errno.EIO, "I/O error")
        assert classify_exception(exc) == ErrorCategory.TRANSIENT

    def test_value_error_is_permanent(self):
        assert classify_exception(ValueError("bad")) == ErrorCategory.PERMANENT

    def test_marker_in_message(self):
        assert classify_exception(RuntimeError("server said 503")) == ErrorCategory.TRANSIENT
        assert (
            classify_exception(RuntimeError("the database system is starting up"))
            == ErrorCategory.TRANSIENT
        )

    def test_unrecognized_is_unknown(self):
        assert classify_exception(RuntimeError("weird")) == ErrorCategory.UNKNOWN


class TestWrapException:

    def test_pipeline_error_returned_as_is(self):
        err = SinkError("x")
        assert wrap_exception(err) is err

    def test_pipeline_error_context_merged(self):
        err = SinkError("x", context={"a": 1})
        wrap_exception(err, context={"b": 2})
        assert err.context == {"a": 1, "b": 2}

    def test_transient_uses_default_class_when_compatible(self):
        wrapped = wrap_exception(ConnectionResetError("reset"), default_class=EventSourceError)
        assert isinstance(wrapped, EventSourceError)
        assert wrapped.context["error_type"] == "ConnectionResetError"

    def test_transient_falls_back_to_transient_error(self):
        wrapped = wrap_exception(ConnectionResetError("reset"), default_class=SinkQueryError)
        assert type(wrapped) is TransientError

    def test_permanent(self):
        wrapped = wrap_exception(ValueError("bad"))
        assert type(wrapped) is PermanentError
        assert isinstance(wrapped.cause, ValueError)

    def test_unknown_uses_default_class(self):
        wrapped = wrap_exception(RuntimeError("weird"), default_class=EventSourceError)
        assert isinstance(wrapped, EventSourceError)

    def test_caller_context_wins_over_error_type(self):
        wrapped = wrap_exception(RuntimeError("weird"), context={"error_type": "custom", "table": "events"})
        assert wrapped.context == {"error_type": "custom", "table": "events"}


class TestStr:

    def test_message_only(self):
        assert str(SinkError("database is down")) == "database is down"

    def test_with_cause(self):
        err = SinkError("write failed", cause=ConnectionResetError("reset by peer"))
        assert str(err) == "write failed | Caused by: reset by peer"
