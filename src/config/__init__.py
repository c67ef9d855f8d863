"""Configuration loading for events-to-db.

Configuration lives in a single file, ``src/config/config.yaml``, under a
``relay:`` section. Values may reference environment variables with
``${VAR}`` or ``${VAR:-default}``; the CLI layers its flags on top as
overrides.

Usage Examples
--------------

    >>> from config import load_config, get_config
    >>>
    >>> config = load_config()
    >>> config.max_batch_records
    1024
    >>>
    >>> # Command line flags are passed as nested overrides
    >>> config = load_config(overrides={"table": "audit_events"})

Configuration Priority
---------------------

1. Overrides passed to load_config() (CLI flags)
2. Environment variables referenced from config.yaml
3. Literal values in config.yaml
4. Dataclass defaults
"""

from config.config import (
    DEFAULT_CONFIG_FILE,
    RelayConfig,
    get_config,
    load_config,
    reset_config,
    set_config,
)

__all__ = [
    "load_config",
    "get_config",
    "set_config",
    "reset_config",
    "RelayConfig",
    "DEFAULT_CONFIG_FILE",
]
