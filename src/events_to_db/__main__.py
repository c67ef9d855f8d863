"""events-to-db relay entry point. Use --help for usage."""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from config import load_config
from config.config import RelayConfig
from core.errors import ConfigurationError
from core.logging import set_log_context, setup_logging
from core.utils import generate_worker_id
from events_to_db.driver import PipelineDriver
from events_to_db.health import HealthCheckServer
from events_to_db.metrics import start_metrics_server
from events_to_db.signals import setup_shutdown_signal_handlers
from events_to_db.sink import SinkConnection
from events_to_db.source import EventServiceClient

# __main__.py is at src/events_to_db/__main__.py, so root is 3 levels up
PROJECT_ROOT = Path(__file__).parent.parent.parent

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2

logger = logging.getLogger(__name__)

_TRUTHY = ("true", "1", "yes")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="events-to-db",
        description="Stream events from the event service into a PostgreSQL table",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Everything, into table "events" of database "ax"
    events-to-db -d ax -u postgres

    # Only one source, batches of at most 500 rows
    events-to-db -d ax -u postgres -r 500 '[{"source": "4JhD8dw5VRgYkHM7"}]'

    # Re-read from the beginning into a different table
    events-to-db -d ax -u postgres -t events_copy --from-start
        """,
    )

    parser.add_argument(
        "subscriptions",
        nargs="?",
        default=None,
        help='Subscription set as JSON, e.g. \'[{"source": "a", "name": "orders"}]\' '
        "(default: SUBSCRIPTIONS env var, or all events)",
    )
    parser.add_argument(
        "-f",
        "--from-start",
        action="store_true",
        default=None,
        help="Ignore the rows already in the table and read every source from offset 0",
    )
    parser.add_argument("-H", "--host", default=None, help="Database host (default: localhost)")
    parser.add_argument("-p", "--port", type=int, default=None, help="Database port (default: 5432)")
    parser.add_argument("-u", "--username", default=None, help="Database user")
    parser.add_argument(
        "-w",
        "--password",
        default=None,
        help="Database password (default: PGPASSWORD env var)",
    )
    parser.add_argument("-d", "--db-name", default=None, help="Database name")
    parser.add_argument("-t", "--table", default=None, help="Target table (default: events)")
    parser.add_argument(
        "-r",
        "--max-batch-records",
        type=int,
        default=None,
        help="Flush a batch once it holds this many events (default: 1024)",
    )
    parser.add_argument(
        "-s",
        "--max-batch-seconds",
        type=float,
        default=None,
        help="Flush a batch once its first event is this old (default: 1)",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.yaml (default: src/config/config.yaml)",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        help="Port for Prometheus metrics server (default: 8000)",
    )
    parser.add_argument(
        "--health-port",
        type=int,
        default=None,
        help="Port for /health/live and /health/ready (default: 8080, 0 = any free port)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--log-dir",
        type=str,
        default=None,
        help="Log directory path (default: from LOG_DIR env var or ./logs)",
    )
    parser.add_argument(
        "--log-to-stdout",
        action="store_true",
        help="Send all log output to stdout only, skipping file handlers. "
        "Useful for containerized deployments where logs are captured from stdout. "
        "Can also be set via LOG_TO_STDOUT environment variable.",
    )

    return parser.parse_args(argv)


def build_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Map CLI flags onto the relay: section; unset flags leave config.yaml alone."""
    overrides: dict[str, Any] = {}
    database: dict[str, Any] = {}

    if args.subscriptions is not None:
        overrides["subscriptions"] = args.subscriptions
    if args.from_start:
        overrides["from_start"] = True
    if args.max_batch_records is not None:
        overrides["max_batch_records"] = args.max_batch_records
    if args.max_batch_seconds is not None:
        overrides["max_batch_seconds"] = args.max_batch_seconds
    if args.table is not None:
        overrides["table"] = args.table
    if args.metrics_port is not None:
        overrides["metrics_port"] = args.metrics_port
    if args.health_port is not None:
        overrides["health_port"] = args.health_port

    for flag, key in (
        ("host", "host"),
        ("port", "port"),
        ("username", "user"),
        ("password", "password"),
        ("db_name", "name"),
    ):
        value = getattr(args, flag)
        if value is not None:
            database[key] = value
    if database:
        overrides["database"] = database

    return overrides


def _setup_logging(args: argparse.Namespace, worker_id: str) -> None:
    log_level = getattr(logging, args.log_level)
    json_logs = os.getenv("JSON_LOGS", "true").lower() in _TRUTHY
    log_to_stdout = args.log_to_stdout or os.getenv("LOG_TO_STDOUT", "false").lower() in _TRUTHY
    log_dir = Path(args.log_dir or os.getenv("LOG_DIR") or "logs")

    setup_logging(
        name="events_to_db",
        stage="relay",
        log_dir=log_dir,
        json_format=json_logs,
        console_level=log_level,
        worker_id=worker_id,
        log_to_stdout=log_to_stdout,
    )


async def run_relay(config: RelayConfig, shutdown_event: asyncio.Event) -> None:
    """Wire the relay together and run it until shutdown."""
    health_server = HealthCheckServer(port=config.health_port, worker_name="events-to-db")
    await health_server.start()

    source = EventServiceClient(
        base_url=config.event_service_url,
        connect_timeout_seconds=config.event_service_connect_timeout_seconds,
    )
    connection = SinkConnection.from_config(config)
    set_log_context(table=config.table)

    driver = PipelineDriver(
        config,
        source,
        connection,
        shutdown_event=shutdown_event,
        health_server=health_server,
    )
    try:
        await driver.run()
    finally:
        await health_server.stop()


def main(argv: list[str] | None = None) -> int:
    load_dotenv(PROJECT_ROOT / ".env")

    args = parse_args(argv)
    worker_id = os.getenv("WORKER_ID") or generate_worker_id("events-to-db")
    _setup_logging(args, worker_id)

    try:
        config = load_config(args.config, overrides=build_overrides(args))
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG

    logger.info("Relay configuration loaded", extra={"database_url": config.database_url or None})
    logger.debug(f"Effective configuration: {config.to_safe_dict()}")

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    shutdown_event = asyncio.Event()
    setup_shutdown_signal_handlers(shutdown_event, loop)

    if config.metrics_port is not None:
        actual_port = start_metrics_server(config.metrics_port)
        if actual_port != config.metrics_port:
            logger.info(
                "Metrics server started on fallback port",
                extra={"actual_port": actual_port, "preferred_port": config.metrics_port},
            )
        else:
            logger.info("Metrics server started", extra={"port": actual_port})

    exit_code = EXIT_OK
    try:
        loop.run_until_complete(run_relay(config, shutdown_event))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, shutting down...")
    except asyncio.CancelledError:
        logger.info("Tasks cancelled, shutting down...")
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        exit_code = EXIT_CONFIG
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True, extra={"error_type": type(e).__name__})
        exit_code = EXIT_FATAL
    finally:
        loop.close()
        logger.info("Relay shutdown complete")

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
