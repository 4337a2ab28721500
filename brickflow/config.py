"""
Configuration management for brickflow.

Loads engine and logging settings from a YAML file. The path is taken from
the argument, else the BRICKFLOW_CONFIG environment variable, else
./brickflow.yaml. A missing default file means built-in defaults.

Example brickflow.yaml:

    engine:
      validate_input: true
      log_values: false
      default_template_engine: nunjucks
      autoescape: true
      fan_out_timeout_s: 10
      remote_allowlist:
        - "@brickflow/identity"
    logging:
      level: INFO
      format: pretty
      console: true
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from rich.console import Console
from rich.logging import RichHandler

from brickflow.dispatch import DEFAULT_REMOTE_ALLOWLIST
from brickflow.templates import DEFAULT_ENGINE

CONFIG_ENV_VAR = "BRICKFLOW_CONFIG"
DEFAULT_CONFIG_PATH = Path("brickflow.yaml")

LOG_FORMATS = ("structured", "pretty")


class ConfigError(Exception):
    """Configuration validation error."""
    pass


class EngineConfig:
    """Engine and logging configuration."""

    def __init__(self, data: Optional[Dict[str, Any]] = None, config_path: Optional[Path] = None):
        self.config_path = config_path
        self.raw_config = data or {}

        engine = self.raw_config.get("engine") or {}
        self.validate_input: bool = engine.get("validate_input", True)
        self.log_values: bool = engine.get("log_values", False)
        self.default_template_engine: str = engine.get("default_template_engine", DEFAULT_ENGINE)
        self.autoescape: bool = engine.get("autoescape", True)
        self.fan_out_timeout_s: Optional[float] = engine.get("fan_out_timeout_s")
        self.remote_allowlist: List[str] = engine.get(
            "remote_allowlist", sorted(DEFAULT_REMOTE_ALLOWLIST)
        )

        # Logging
        self.logging = self.raw_config.get("logging") or {}

    @classmethod
    def from_file(cls, config_path: Path) -> "EngineConfig":
        """Load configuration from a YAML file."""
        if not config_path.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, "r") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML syntax: {e}")

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration must be a mapping: {config_path}")

        config = cls(data, config_path=config_path)
        config.validate()
        return config

    def get_log_level(self) -> str:
        """Get logging level."""
        return str(self.logging.get("level", "INFO")).upper()

    def get_log_format(self) -> str:
        """Get log format (structured or pretty)."""
        return self.logging.get("format", "pretty")

    def should_log_to_console(self) -> bool:
        """Check if console logging is enabled."""
        return self.logging.get("console", True)

    def validate(self) -> None:
        """Validate configuration values."""
        if self.fan_out_timeout_s is not None:
            if not isinstance(self.fan_out_timeout_s, (int, float)) or self.fan_out_timeout_s <= 0:
                raise ConfigError(
                    f"engine.fan_out_timeout_s must be a positive number, got {self.fan_out_timeout_s!r}"
                )
        if not isinstance(self.remote_allowlist, list) or not all(
            isinstance(b, str) for b in self.remote_allowlist
        ):
            raise ConfigError("engine.remote_allowlist must be a list of brick ids")
        if self.get_log_format() not in LOG_FORMATS:
            raise ConfigError(
                f"logging.format must be one of {LOG_FORMATS}, got {self.get_log_format()!r}"
            )
        if not isinstance(logging.getLevelName(self.get_log_level()), int):
            raise ConfigError(f"Unknown logging.level: {self.get_log_level()}")

    def __repr__(self) -> str:
        return (
            f"EngineConfig(validate_input={self.validate_input}, "
            f"template_engine={self.default_template_engine}, path={self.config_path})"
        )


def load_config(config_path: Optional[Path] = None) -> EngineConfig:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Path to config file. Defaults to $BRICKFLOW_CONFIG, then
            ./brickflow.yaml

    Returns:
        EngineConfig instance. Defaults if no path was given and the default
        file does not exist

    Raises:
        ConfigError: If config is invalid, or an explicit path is missing
    """
    if config_path is not None:
        return EngineConfig.from_file(Path(config_path))

    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return EngineConfig.from_file(Path(env_path))

    if DEFAULT_CONFIG_PATH.exists():
        return EngineConfig.from_file(DEFAULT_CONFIG_PATH)
    return EngineConfig()


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "pretty",
    console_output: bool = True,
    log_file: Optional[Path] = None,
) -> logging.Logger:
    """
    Set up logging for the brickflow logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "structured" (JSON) or "pretty" (human-readable)
        console_output: Log to the console (stderr)
        log_file: Optional path to also log to a file

    Returns:
        Configured logger
    """
    logger = logging.getLogger("brickflow")
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers = []  # Clear existing handlers

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        if log_format == "structured":
            file_handler.setFormatter(StructuredFormatter())
        else:
            file_handler.setFormatter(
                logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            )
        logger.addHandler(file_handler)

    if console_output:
        if log_format == "pretty":
            # stdout is reserved for command output
            console_handler: logging.Handler = RichHandler(
                console=Console(stderr=True), rich_tracebacks=True, show_time=False
            )
        else:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(StructuredFormatter())
        logger.addHandler(console_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add extra fields if present
        for name in ("run_id", "brick_id", "instance_id", "mod_component_id"):
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)
