"""
Structured logging: JSON files, console output and per-task context.
"""

from core.logging.context import (
    clear_log_context,
    get_log_context,
    set_log_context,
)
from core.logging.formatters import ConsoleFormatter, JSONFormatter, mask_url
from core.logging.setup import (
    ArchivingTimedRotatingFileHandler,
    get_log_file_path,
    setup_logging,
)
from core.logging.utilities import log_exception

__all__ = [
    # Setup
    "setup_logging",
    "get_log_file_path",
    "ArchivingTimedRotatingFileHandler",
    # Formatters
    "JSONFormatter",
    "ConsoleFormatter",
    "mask_url",
    # Context
    "set_log_context",
    "get_log_context",
    "clear_log_context",
    # Utilities
    "log_exception",
]
