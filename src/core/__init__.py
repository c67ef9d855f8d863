"""
Core library: reusable, infrastructure-agnostic components.

Modules:
    resilience  - Retry with exponential backoff and jitter
    logging     - Structured JSON logging with context propagation
    errors      - Error classification and exception hierarchy
    utils       - JSON serialization helpers

Nothing in here knows about the event service or the sink table.
"""

from .types import ErrorCategory

__version__ = "0.1.0"

__all__ = [
    "ErrorCategory",
]
