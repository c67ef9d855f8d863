"""Relay configuration from YAML file.

Loads from config/config.yaml (the ``relay:`` section):
- Subscription set and batching thresholds
- Sink connection parameters and target table
- Event service endpoint
- Retry, backpressure, shutdown and observability settings

Environment variables ARE supported using ${VAR_NAME} and
${VAR_NAME:-default} syntax in YAML files.
"""

import json
import logging
import os
import re
import sys
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from core.errors import ConfigurationError
from core.logging.formatters import mask_url
from core.resilience import RetryConfig
from events_to_db.filters import Subscription, parse_subscriptions

# Configure module logger
logger = logging.getLogger(__name__)

# Plain or schema-qualified SQL identifier, e.g. "events" or "analytics.events"
_TABLE_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}(\.[A-Za-z_][A-Za-z0-9_]{0,62})?$")

_TRUE_VALUES = ("true", "1", "yes", "on")
_DISABLED_VALUES = ("", "none", "null", "off", "disabled")


# ${VAR} or ${VAR:-default}; unset variables without a default stay literal
_ENV_REFERENCE = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}")


def load_yaml(path: Path) -> Dict[str, Any]:
    """Parsed YAML mapping, or {} for a missing or empty file."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def _substitute_env(match: "re.Match[str]") -> str:
    name, default = match.group(1), match.group(2)
    return os.getenv(name, match.group(0) if default is None else default)


def _expand_env_vars(data: Any) -> Any:
    """Expand environment references in every string of a YAML tree."""
    if isinstance(data, str):
        return _ENV_REFERENCE.sub(_substitute_env, data)
    if isinstance(data, dict):
        return {key: _expand_env_vars(value) for key, value in data.items()}
    if isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    return data


def _to_bool(value: Any) -> bool:
    # bool('false') would be True, so only coerce non-bools
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def _to_optional_port(value: Any) -> Optional[int]:
    # YAML reads a bare `off` as False
    if value is None or value is False:
        return None
    if isinstance(value, str) and value.strip().lower() in _DISABLED_VALUES:
        return None
    return int(value)


# Default config file: config/config.yaml in src/ directory
DEFAULT_CONFIG_FILE = Path(__file__).parent.parent / "config" / "config.yaml"


@dataclass
class RelayConfig:
    """Relay configuration.

    Configuration structure:
        relay:
          subscriptions: '[{"source": "a"}]'   # JSON text or a YAML list
          max_batch_records: 1024
          max_batch_seconds: 1
          from_start: false
          table: events
          event_service_url: http://localhost:4454/api/
          database: {host, port, user, password, name, url}
          retry: {max_write_attempts, base_delay_seconds, max_delay_seconds}
          max_outstanding_batches: 2
          shutdown_timeout_seconds: 30
          health_port: 8080
          metrics_port: 8000

    All timing values in seconds.
    """

    # =========================================================================
    # STREAM
    # =========================================================================
    subscriptions: Any = ""
    from_start: bool = False
    event_service_url: str = "http://localhost:4454/api/"
    event_service_connect_timeout_seconds: float = 10.0

    # =========================================================================
    # BATCHING
    # =========================================================================
    max_batch_records: int = 1024
    max_batch_seconds: float = 1.0
    max_outstanding_batches: int = 2

    # =========================================================================
    # SINK
    # =========================================================================
    table: str = "events"
    db_host: str = "localhost"
    db_port: int = 5432
    db_user: str = ""
    db_password: str = ""
    db_name: str = ""
    database_url: str = ""

    # =========================================================================
    # RESILIENCE / LIFECYCLE
    # =========================================================================
    max_write_attempts: int = 0  # 0 = retry forever
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    shutdown_timeout_seconds: float = 30.0

    # =========================================================================
    # OBSERVABILITY
    # =========================================================================
    health_port: Optional[int] = 8080
    metrics_port: Optional[int] = 8000

    def __post_init__(self):
        """Ensure proper types from YAML/env vars."""
        try:
            self.from_start = _to_bool(self.from_start)
            self.max_batch_records = int(self.max_batch_records)
            self.max_batch_seconds = float(self.max_batch_seconds)
            self.max_outstanding_batches = int(self.max_outstanding_batches)
            self.db_port = int(self.db_port)
            self.max_write_attempts = int(self.max_write_attempts)
            self.retry_base_delay_seconds = float(self.retry_base_delay_seconds)
            self.retry_max_delay_seconds = float(self.retry_max_delay_seconds)
            self.shutdown_timeout_seconds = float(self.shutdown_timeout_seconds)
            self.event_service_connect_timeout_seconds = float(
                self.event_service_connect_timeout_seconds
            )
            self.health_port = _to_optional_port(self.health_port)
            self.metrics_port = _to_optional_port(self.metrics_port)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration value: {e}", cause=e) from e

        self.table = str(self.table or "").strip()
        self.event_service_url = str(self.event_service_url or "").strip()
        if self.event_service_url and not self.event_service_url.endswith("/"):
            self.event_service_url += "/"

    def subscription_set(self) -> tuple[Subscription, ...]:
        """Parsed subscription set; raises ConfigurationError when malformed."""
        return parse_subscriptions(self.subscriptions)

    def write_retry_config(self) -> RetryConfig:
        """Backoff policy for batch writes."""
        return RetryConfig(
            max_attempts=self.max_write_attempts,
            base_delay=self.retry_base_delay_seconds,
            max_delay=self.retry_max_delay_seconds,
        )

    def to_safe_dict(self) -> Dict[str, Any]:
        """Config as a dict with the database password masked, for logging."""
        data = asdict(self)
        if data.get("db_password"):
            data["db_password"] = "***"
        if data.get("database_url"):
            data["database_url"] = mask_url(data["database_url"])
        return data

    # field -> (lower bound, bound allowed)
    _LOWER_BOUNDS = {
        "max_batch_records": (1, True),
        "max_batch_seconds": (0, False),
        "max_outstanding_batches": (1, True),
        "max_write_attempts": (0, True),
        "retry_base_delay_seconds": (0, False),
        "retry_max_delay_seconds": (0, False),
        "shutdown_timeout_seconds": (0, True),
        "event_service_connect_timeout_seconds": (0, False),
    }

    def validate(self) -> None:
        """Validate configuration for correctness and constraints.

        Raises ConfigurationError; the process must not start with a
        malformed subscription set or an unusable sink.
        """
        for key, (bound, inclusive) in self._LOWER_BOUNDS.items():
            value = getattr(self, key)
            if value < bound or (value == bound and not inclusive):
                op = ">=" if inclusive else ">"
                raise ConfigurationError(f"relay: {key} must be {op} {bound}, got {value}")

        ports = {"health_port": (0, self.health_port), "metrics_port": (0, self.metrics_port)}
        if not self.database_url:
            for key in ("db_name", "db_user", "db_host"):
                if not getattr(self, key):
                    raise ConfigurationError(f"relay: {key} is required when database.url is not set")
            ports["db_port"] = (1, self.db_port)
        for key, (low, port) in ports.items():
            if port is not None and not low <= port <= 65535:
                raise ConfigurationError(f"relay: {key} must be between {low} and 65535, got {port}")

        if not _TABLE_NAME_PATTERN.match(self.table):
            raise ConfigurationError(
                f"relay: table must be a plain or schema-qualified SQL identifier, got '{self.table}'"
            )
        if not self.event_service_url.startswith(("http://", "https://")):
            raise ConfigurationError(
                f"relay: event_service_url must be an http(s) URL, got '{self.event_service_url}'"
            )

        self.subscription_set()


def _deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of base with overlay applied; nested mappings merge key by key."""
    merged = dict(base)
    for key, value in overlay.items():
        current = merged.get(key)
        merged[key] = _deep_merge(current, value) if isinstance(current, dict) and isinstance(value, dict) else value
    return merged


def _build_config(relay: Dict[str, Any]) -> RelayConfig:
    """Map the nested YAML layout onto the flat dataclass."""
    database = relay.get("database") or {}
    retry = relay.get("retry") or {}
    defaults = RelayConfig.__dataclass_fields__

    def pick(section: Dict[str, Any], key: str, field_name: str) -> Any:
        value = section.get(key)
        return defaults[field_name].default if value is None else value

    return RelayConfig(
        subscriptions=relay.get("subscriptions") or "",
        from_start=pick(relay, "from_start", "from_start"),
        event_service_url=pick(relay, "event_service_url", "event_service_url"),
        event_service_connect_timeout_seconds=pick(
            relay, "event_service_connect_timeout_seconds", "event_service_connect_timeout_seconds"
        ),
        max_batch_records=pick(relay, "max_batch_records", "max_batch_records"),
        max_batch_seconds=pick(relay, "max_batch_seconds", "max_batch_seconds"),
        max_outstanding_batches=pick(relay, "max_outstanding_batches", "max_outstanding_batches"),
        table=pick(relay, "table", "table"),
        db_host=pick(database, "host", "db_host"),
        db_port=pick(database, "port", "db_port"),
        db_user=pick(database, "user", "db_user"),
        db_password=pick(database, "password", "db_password"),
        db_name=pick(database, "name", "db_name"),
        database_url=pick(database, "url", "database_url"),
        max_write_attempts=pick(retry, "max_write_attempts", "max_write_attempts"),
        retry_base_delay_seconds=pick(retry, "base_delay_seconds", "retry_base_delay_seconds"),
        retry_max_delay_seconds=pick(retry, "max_delay_seconds", "retry_max_delay_seconds"),
        shutdown_timeout_seconds=pick(relay, "shutdown_timeout_seconds", "shutdown_timeout_seconds"),
        health_port=relay.get("health_port", defaults["health_port"].default),
        metrics_port=relay.get("metrics_port", defaults["metrics_port"].default),
    )


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> RelayConfig:
    """Load relay configuration from config.yaml.

    Overrides (e.g. from CLI flags) are deep-merged over the ``relay:``
    section before the dataclass is built. Environment variables ARE
    supported using ${VAR_NAME} syntax in YAML files.
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_FILE

    if not config_path.exists():
        raise ConfigurationError(
            f"Configuration file not found: {config_path}\n" f"Expected file: config/config.yaml"
        )

    logger.info(f"Loading configuration from file: {config_path}")
    yaml_data = _expand_env_vars(load_yaml(config_path))

    if "relay" not in yaml_data:
        raise ConfigurationError(
            "Invalid config file: missing 'relay:' section\n"
            "See src/config/config.yaml for the expected structure"
        )

    relay_config = yaml_data["relay"] or {}

    if overrides:
        logger.debug(f"Applying overrides: {list(overrides.keys())}")
        relay_config = _deep_merge(relay_config, overrides)

    config = _build_config(relay_config)

    logger.debug("Validating configuration...")
    config.validate()
    logger.debug("Configuration validation passed")

    return config


_relay_config: Optional[RelayConfig] = None


def get_config() -> RelayConfig:
    """Get or load the singleton relay config instance."""
    global _relay_config
    if _relay_config is None:
        _relay_config = load_config()
    return _relay_config


def set_config(config: RelayConfig) -> None:
    """Set the singleton relay config instance (useful for testing)."""
    global _relay_config
    _relay_config = config


def reset_config() -> None:
    """Reset the singleton config instance (forces reload on next get_config() call)."""
    global _relay_config
    _relay_config = None


def _cli_main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point for config validation and debugging."""
    import argparse

    parser = argparse.ArgumentParser(
        description="events-to-db configuration tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Validate configuration
  python -m config.config --validate

  # Show effective configuration (password masked)
  python -m config.config --show

  # JSON output for automation
  python -m config.config --validate --show --json
        """,
    )
    parser.add_argument("--validate", action="store_true", help="Validate configuration")
    parser.add_argument("--show", action="store_true", help="Display effective configuration")
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config.yaml file (default: src/config/config.yaml)",
    )
    parser.add_argument("--json", action="store_true", help="Output in JSON format")

    args = parser.parse_args(argv)

    if not args.validate and not args.show:
        parser.print_help()
        return 0

    try:
        config = load_config(config_path=args.config)
    except ConfigurationError as e:
        if args.json:
            print(json.dumps({"error": str(e)}))
        else:
            print(f"Validation error: {e}", file=sys.stderr)
        return 1

    output: Dict[str, Any] = {}
    if args.validate:
        output["validation"] = {"passed": True, "errors": []}
    if args.show:
        output["config"] = config.to_safe_dict()

    if args.json:
        print(json.dumps(output, indent=2, default=str))
    else:
        if args.validate:
            print("Configuration validation passed")
        if args.show:
            print(yaml.safe_dump(output["config"], default_flow_style=False, sort_keys=False))

    return 0


if __name__ == "__main__":
    sys.exit(_cli_main())
