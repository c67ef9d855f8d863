"""
Relay error hierarchy and classification.

Transient errors (EventSourceError, SinkError) are retried; permanent ones
(ConfigurationError, SchemaMismatchError, SinkQueryError, EventDecodeError,
EventSourceRejectedError) end the relay. Foreign exceptions are classified
with classify_exception() and wrapped with wrap_exception().
"""

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

__all__ = [
    "ErrorCategory",
    "PipelineError",
    "TransientError",
    "PermanentError",
    "EventSourceError",
    "SinkError",
    "ConfigurationError",
    "SchemaMismatchError",
    "SinkQueryError",
    "EventDecodeError",
    "EventSourceRejectedError",
    "classify_exception",
    "classify_http_status",
    "wrap_exception",
]
