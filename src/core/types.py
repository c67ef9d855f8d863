"""
Core types shared across modules.

Kept free of imports from the rest of the package so that both the error
hierarchy and the retry helpers can depend on it without cycles.
"""

from enum import Enum


class ErrorCategory(Enum):
    """
    Classification of error types for handling decisions.

    Categories:
        TRANSIENT: Temporary failures that should retry with backoff
                   (e.g., database unreachable, event service connection reset)
        PERMANENT: Failures that will not succeed on retry
                   (e.g., malformed subscriptions, incompatible sink table)
        UNKNOWN: Unclassified errors, retried conservatively
    """

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


__all__ = [
    "ErrorCategory",
]
