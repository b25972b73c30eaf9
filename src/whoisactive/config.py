"""
Configuration loader for the activity collector.

Reads a JSON config file and applies WHOISACTIVE_* environment overrides.
"""
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import structlog

from whoisactive.lib.snapshot import DEFAULT_FLAGS, DEFAULT_PROCEDURE

logger = structlog.get_logger()

DEFAULT_ITERATIONS = 12
DEFAULT_INTERVAL_S = 5.0


def _parse_bool(value: str) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class CollectorConfig:
    """Collector configuration with defaults matching the hosted job."""

    # Connection string or SQLAlchemy URL for the target database
    database: Optional[str] = None
    # Label used in log output; derived from the connection when empty
    server: str = ""

    # One run: `iterations` polls, `interval_seconds` apart (~1 minute)
    iterations: int = DEFAULT_ITERATIONS
    interval_seconds: float = DEFAULT_INTERVAL_S
    sleep_after_last: bool = True

    procedure: str = DEFAULT_PROCEDURE
    procedure_flags: dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_FLAGS))
    procedure_script: Optional[str] = None

    log_format: str = "console"
    log_level: str = "info"


def load_config(config_path: Optional[str] = None) -> CollectorConfig:
    """
    Load configuration from a JSON file and environment variables.

    Priority:
    1. Environment variables (highest)
    2. JSON file
    3. Defaults (lowest)

    Environment variable format: WHOISACTIVE_<SETTING_NAME>
    Example: WHOISACTIVE_DATABASE, WHOISACTIVE_ITERATIONS
    """
    config = CollectorConfig()

    if config_path:
        p = Path(config_path)
        if p.exists():
            with p.open("r", encoding="utf-8") as fh:
                data = json.load(fh) or {}
            for key, value in data.items():
                if hasattr(config, key):
                    setattr(config, key, value)
                else:
                    logger.warning("config_key_unknown", key=key, path=config_path)
            logger.debug("config_loaded_from_file", path=config_path)
        else:
            logger.warning("config_file_missing", path=config_path)

    env_mappings = {
        "WHOISACTIVE_DATABASE": ("database", str),
        "WHOISACTIVE_SERVER": ("server", str),
        "WHOISACTIVE_ITERATIONS": ("iterations", int),
        "WHOISACTIVE_INTERVAL_SECONDS": ("interval_seconds", float),
        "WHOISACTIVE_SLEEP_AFTER_LAST": ("sleep_after_last", _parse_bool),
        "WHOISACTIVE_PROCEDURE": ("procedure", str),
        "WHOISACTIVE_PROCEDURE_SCRIPT": ("procedure_script", str),
        "WHOISACTIVE_LOG_FORMAT": ("log_format", str),
        "WHOISACTIVE_LOG_LEVEL": ("log_level", str),
    }

    for env_var, (attr, type_fn) in env_mappings.items():
        value = os.environ.get(env_var)
        if value is not None:
            setattr(config, attr, type_fn(value))
            logger.debug("config_override_from_env", var=env_var)

    return validate_config(config)


def validate_config(config: CollectorConfig) -> CollectorConfig:
    """Clamp out-of-range values back to usable ones."""
    try:
        config.iterations = int(config.iterations)
    except (TypeError, ValueError):
        config.iterations = 0
    if config.iterations < 1:
        logger.warning("iterations_reset", requested=config.iterations, default=DEFAULT_ITERATIONS)
        config.iterations = DEFAULT_ITERATIONS

    config.interval_seconds = float(config.interval_seconds)
    if config.interval_seconds < 0:
        logger.warning("interval_increased", requested=config.interval_seconds, minimum=0)
        config.interval_seconds = 0.0

    if isinstance(config.sleep_after_last, str):
        config.sleep_after_last = _parse_bool(config.sleep_after_last)
    else:
        config.sleep_after_last = bool(config.sleep_after_last)
    if config.procedure_flags is None:
        config.procedure_flags = {}
    return config
