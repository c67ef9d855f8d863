"""
Exception hierarchy for the relay.

Each error class carries an ErrorCategory. The pipeline driver only looks at
the category: transient errors are retried with backoff, permanent errors
stop the process.
"""

import errno

from core.types import ErrorCategory


class PipelineError(Exception):
    """
    Base exception for all relay errors.

    Attributes:
        message: Human-readable error description
        category: Class-level classification used by retry decisions
        cause: Wrapped exception, if any
        context: Extra fields for structured logs
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.context = dict(context) if context else {}

    @property
    def is_retryable(self) -> bool:
        # Unclassified failures get the benefit of the doubt
        return self.category is not ErrorCategory.PERMANENT

    def __str__(self) -> str:
        if self.cause is None:
            return self.message
        return f"{self.message} | Caused by: {self.cause}"


# =============================================================================
# Transient: back off and try again
# =============================================================================


class TransientError(PipelineError):
    category = ErrorCategory.TRANSIENT


class EventSourceError(TransientError):
    """Event service unreachable, or the subscription stream broke off."""


class SinkError(TransientError):
    """Database connectivity or transaction failure."""


# =============================================================================
# Permanent: retrying cannot help
# =============================================================================


class PermanentError(PipelineError):
    category = ErrorCategory.PERMANENT


class ConfigurationError(PermanentError):
    """Invalid configuration, including malformed subscription sets."""


class SchemaMismatchError(PermanentError):
    """Existing sink table does not have the event table layout."""

    def __init__(self, table: str, message: str, cause: Exception | None = None):
        super().__init__(
            f"Table '{table}' is incompatible: {message}",
            cause=cause,
            context={"table": table},
        )
        self.table = table


class SinkQueryError(PermanentError):
    """SQL rejected by the database (syntax, data or integrity error)."""


class EventDecodeError(PermanentError):
    """A document from the event service is not a valid event."""


class EventSourceRejectedError(PermanentError):
    """Event service refused the request (4xx other than 408/429)."""

    def __init__(self, message: str, status: int, cause: Exception | None = None):
        super().__init__(message, cause=cause, context={"status": status})
        self.status = status


# =============================================================================
# Classifying foreign exceptions
# =============================================================================

# Message fragments of conditions that clear up on their own: gateways,
# timeouts, dropped connections, PostgreSQL restarting or out of slots
_TRANSIENT_MESSAGES = (
    "502",
    "503",
    "504",
    "timeout",
    "timed out",
    "connection",
    "broken pipe",
    "no route to host",
    "network unreachable",
    "name resolution",
    "temporarily unavailable",
    "service unavailable",
    "too many clients",
    "the database system is starting up",
    "the database system is shutting down",
)

# Local resource problems that a retry will hit again
_PERMANENT_ERRNOS = frozenset({errno.ENOSPC, errno.EROFS, errno.EACCES, errno.EPERM})


def classify_http_status(status_code: int) -> ErrorCategory:
    """Category of an event service response status; 2xx is UNKNOWN (not an error)."""
    if status_code in (408, 429) or status_code >= 500:
        return ErrorCategory.TRANSIENT
    if 400 <= status_code < 500:
        return ErrorCategory.PERMANENT
    return ErrorCategory.UNKNOWN


def classify_exception(exc: BaseException) -> ErrorCategory:
    """Category of any exception.

    Relay errors know their own category. Builtins are judged by type:
    network and timeout errors are transient, bad values permanent.
    Anything else is judged by its type name and message.
    """
    if isinstance(exc, PipelineError):
        return exc.category

    if isinstance(exc, (ConnectionError, TimeoutError)):
        return ErrorCategory.TRANSIENT

    if isinstance(exc, OSError):
        if exc.errno in _PERMANENT_ERRNOS:
            return ErrorCategory.PERMANENT
        return ErrorCategory.TRANSIENT

    if isinstance(exc, (ValueError, TypeError, KeyError)):
        return ErrorCategory.PERMANENT

    text = f"{type(exc).__name__} {exc}".lower()
    if any(marker in text for marker in _TRANSIENT_MESSAGES):
        return ErrorCategory.TRANSIENT
    return ErrorCategory.UNKNOWN


def wrap_exception(
    exc: BaseException,
    default_class: type[PipelineError] = PipelineError,
    context: dict | None = None,
) -> PipelineError:
    """Return exc as a relay error.

    Relay errors come back unchanged, with context merged in. Others are
    wrapped in default_class when it agrees with their category, else in
    the plain TransientError or PermanentError base. Unclassified errors
    always take default_class.
    """
    if isinstance(exc, PipelineError):
        if context:
            exc.context.update(context)
        return exc

    category = classify_exception(exc)
    error_class = default_class
    if category is ErrorCategory.TRANSIENT and not issubclass(default_class, TransientError):
        error_class = TransientError
    elif category is ErrorCategory.PERMANENT and not issubclass(default_class, PermanentError):
        error_class = PermanentError

    details = {"error_type": type(exc).__name__, **(context or {})}
    return error_class(str(exc), cause=exc, context=details)
