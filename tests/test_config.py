"""Tests for configuration loading and logging setup."""

import json
import logging
import sys
from pathlib import Path

import pytest
from rich.logging import RichHandler

from brickflow.config import (
    CONFIG_ENV_VAR,
    ConfigError,
    EngineConfig,
    StructuredFormatter,
    load_config,
    setup_logging,
)
from brickflow.reducer import ReduceOptions


def _write(path: Path, text: str) -> Path:
    path.write_text(text)
    return path


class TestEngineConfig:
    def test_defaults(self):
        config = EngineConfig()
        assert config.validate_input is True
        assert config.log_values is False
        assert config.default_template_engine == "nunjucks"
        assert config.fan_out_timeout_s is None
        assert config.remote_allowlist == ["@brickflow/identity"]
        assert config.get_log_level() == "INFO"
        assert config.get_log_format() == "pretty"
        assert config.should_log_to_console()

    def test_from_file(self, tmp_path):
        path = _write(tmp_path / "brickflow.yaml", (
            "engine:\n"
            "  validate_input: false\n"
            "  fan_out_timeout_s: 2.5\n"
            "  remote_allowlist: ['@acme/fetch']\n"
            "logging:\n"
            "  level: debug\n"
            "  format: structured\n"
        ))
        config = EngineConfig.from_file(path)
        assert config.validate_input is False
        assert config.fan_out_timeout_s == 2.5
        assert config.remote_allowlist == ["@acme/fetch"]
        assert config.get_log_level() == "DEBUG"
        assert config.config_path == path

    def test_empty_file(self, tmp_path):
        config = EngineConfig.from_file(_write(tmp_path / "c.yaml", ""))
        assert config.validate_input is True

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            EngineConfig.from_file(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigError, match="Invalid YAML"):
            EngineConfig.from_file(_write(tmp_path / "c.yaml", "engine: [unclosed"))

    def test_not_a_mapping(self, tmp_path):
        with pytest.raises(ConfigError, match="must be a mapping"):
            EngineConfig.from_file(_write(tmp_path / "c.yaml", "- a\n- b\n"))

    @pytest.mark.parametrize("text,match", [
        ("engine:\n  fan_out_timeout_s: 0\n", "fan_out_timeout_s"),
        ("engine:\n  remote_allowlist: '@acme/fetch'\n", "remote_allowlist"),
        ("logging:\n  format: xml\n", "logging.format"),
        ("logging:\n  level: LOUD\n", "Unknown logging.level"),
    ])
    def test_validation(self, tmp_path, text, match):
        with pytest.raises(ConfigError, match=match):
            EngineConfig.from_file(_write(tmp_path / "c.yaml", text))

    def test_reduce_options_from_config(self):
        config = EngineConfig({"engine": {"validate_input": False, "autoescape": False, "fan_out_timeout_s": 3}})
        options = ReduceOptions.from_config(config, "v1", headless=True)
        assert options.validate_input is False
        assert options.autoescape is False
        assert options.fan_out_timeout == 3
        assert options.headless is True
        assert options.explicit_render is False


class TestLoadConfig:
    def test_explicit_path(self, tmp_path):
        path = _write(tmp_path / "c.yaml", "engine:\n  log_values: true\n")
        assert load_config(path).log_values is True

    def test_env_var(self, tmp_path, monkeypatch):
        path = _write(tmp_path / "c.yaml", "engine:\n  log_values: true\n")
        monkeypatch.setenv(CONFIG_ENV_VAR, str(path))
        assert load_config().log_values is True

    def test_default_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        monkeypatch.chdir(tmp_path)
        _write(tmp_path / "brickflow.yaml", "engine:\n  autoescape: false\n")
        assert load_config().autoescape is False

    def test_no_file_means_defaults(self, tmp_path, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        monkeypatch.chdir(tmp_path)
        config = load_config()
        assert config.config_path is None
        assert config.validate_input is True


class TestLogging:
    def test_pretty(self):
        logger = setup_logging("DEBUG", "pretty")
        assert logger.name == "brickflow"
        assert logger.level == logging.DEBUG
        assert isinstance(logger.handlers[0], RichHandler)

    def test_structured_file(self, tmp_path):
        log_file = tmp_path / "logs" / "brickflow.log"
        logger = setup_logging("INFO", "structured", console_output=False, log_file=log_file)
        logger.getChild("reducer").info("Run started", extra={"run_id": "r-1"})
        for handler in logger.handlers:
            handler.flush()

        line = json.loads(log_file.read_text().splitlines()[0])
        assert line["message"] == "Run started"
        assert line["logger"] == "brickflow.reducer"
        assert line["run_id"] == "r-1"

    def test_structured_formatter_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("brickflow", logging.ERROR, __file__, 1, "failed", None, sys.exc_info())
        data = json.loads(StructuredFormatter().format(record))
        assert data["level"] == "ERROR"
        assert "RuntimeError: boom" in data["exception"]
