"""Root logger configuration for the relay process."""

import logging
import sys
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from core.logging.context import set_log_context
from core.logging.formatters import ConsoleFormatter, JSONFormatter

DEFAULT_LOG_DIR = Path("logs")
DEFAULT_BACKUP_COUNT = 7

# Client and driver loggers that are chatty at INFO
NOISY_LOGGERS = [
    "aiohttp",
    "aiohttp.access",
    "asyncio",
    "asyncpg",
    "aiosqlite",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
]

_PLAIN_FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"


class ArchivingTimedRotatingFileHandler(TimedRotatingFileHandler):
    """
    Daily rotating file handler that writes rotated files to an archive folder.

        logs/2026-01-05/events_to_db_relay_0105_1430.log             (live)
        logs/archive/2026-01-05/events_to_db_relay_0105_1430.log.2026-01-05
    """

    def __init__(self, filename, archive_dir=None, **kwargs):
        super().__init__(filename, **kwargs)
        self.archive_dir = Path(archive_dir) if archive_dir else Path(self.baseFilename).parent / "archive"
        self.archive_dir.mkdir(parents=True, exist_ok=True)

    def rotation_filename(self, default_name: str) -> str:
        return str(self.archive_dir / Path(default_name).name)


def get_log_file_path(log_dir: Path, name: str, stage: str | None = None) -> Path:
    """``{log_dir}/{YYYY-MM-DD}/{name}[_{stage}]_{MMDD}_{HHMM}.log``"""
    now = datetime.now()
    prefix = f"{name}_{stage}" if stage else name
    return log_dir / f"{now:%Y-%m-%d}" / f"{prefix}_{now:%m%d}_{now:%H%M}.log"


def _file_handler(log_file: Path, log_dir: Path, json_format: bool, backup_count: int) -> logging.Handler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    # logs/2026-01-05/x.log archives to logs/archive/2026-01-05/
    try:
        archive_dir = log_dir / "archive" / log_file.parent.relative_to(log_dir)
    except ValueError:
        archive_dir = log_file.parent / "archive"

    handler = ArchivingTimedRotatingFileHandler(
        log_file,
        archive_dir=archive_dir,
        when="midnight",
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(JSONFormatter() if json_format else logging.Formatter(_PLAIN_FILE_FORMAT))
    return handler


def setup_logging(
    name: str = "events_to_db",
    stage: str | None = None,
    log_dir: Path | None = None,
    json_format: bool = True,
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    suppress_noisy: bool = True,
    worker_id: str | None = None,
    log_to_stdout: bool = False,
) -> logging.Logger:
    """
    Replace the root logger's handlers.

    By default the console gets human-readable lines at console_level and
    a dated file under log_dir gets everything at file_level, as JSON
    unless json_format is False. With log_to_stdout (containers) there is
    no file and stdout carries the JSON or console format.

    stage and worker_id are put in the log context so every record
    carries them.
    """
    set_log_context(stage=stage or None, worker_id=worker_id or None)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(console_level)
    log_file = None

    if log_to_stdout:
        console.setFormatter(JSONFormatter() if json_format else ConsoleFormatter())
    else:
        console.setFormatter(ConsoleFormatter())
        log_file = get_log_file_path(log_dir or DEFAULT_LOG_DIR, name, stage)
        file_handler = _file_handler(log_file, log_dir or DEFAULT_LOG_DIR, json_format, backup_count)
        file_handler.setLevel(file_level)
        root.addHandler(file_handler)
    root.addHandler(console)

    if suppress_noisy:
        for noisy in NOISY_LOGGERS:
            logging.getLogger(noisy).setLevel(logging.WARNING)

    logger = logging.getLogger(name)
    logger.debug(f"Logging initialized: {log_file or 'stdout only'}")
    return logger
