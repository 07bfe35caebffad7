"""Configuration management for Carrier."""

import json
import logging
import os
import shutil
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping

from pydantic import BaseModel, Field, field_validator

_UNSET = object()
_CLAUDE_CLI_CACHE: str | None | object = _UNSET
_LOG_LEVELS = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}
_LOG_RECORD_KEYS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
}

# Environment variable -> config field
_ENV_FIELDS = {
    "CARRIER_PATH": "carrier_path",
    "CARRIER_PROVIDER": "provider",
    "CARRIER_MODEL": "model",
    "CARRIER_TASK_TIMEOUT": "task_timeout",
    "CARRIER_LOG_LEVEL": "log_level",
    "CARRIER_LOG_FILE": "log_file",
    "CARRIER_API_URL": "api_url",
    "CARRIER_API_KEY": "api_key",
    "CARRIER_API_REPORTING": "api_reporting",
}


def find_claude_cli() -> str | None:
    """Auto-detect the Claude CLI path.

    Searches in order:
    1. CARRIER_CLAUDE_CLI environment override
    2. shutil.which('claude') - system PATH
    3. Common npm global locations

    Returns the path if found, None otherwise.
    """
    env_override = os.environ.get("CARRIER_CLAUDE_CLI")
    if env_override:
        return env_override

    global _CLAUDE_CLI_CACHE
    if _CLAUDE_CLI_CACHE is not _UNSET:
        return _CLAUDE_CLI_CACHE  # type: ignore[return-value]

    cli_path = shutil.which("claude")
    if cli_path:
        _CLAUDE_CLI_CACHE = cli_path
        return cli_path

    if sys.platform == "win32":
        candidates = [
            Path(os.environ.get("APPDATA", "")) / "npm" / "claude.cmd",
            Path.home() / "AppData" / "Roaming" / "npm" / "claude.cmd",
        ]
    else:
        candidates = [
            Path.home() / ".claude" / "local" / "claude",
            Path.home() / ".npm-global" / "bin" / "claude",
            Path("/usr/local/bin/claude"),
            Path("/opt/homebrew/bin/claude"),
            Path.home() / ".local" / "bin" / "claude",
        ]

    for candidate in candidates:
        if candidate.exists() and candidate.is_file():
            _CLAUDE_CLI_CACHE = str(candidate)
            return str(candidate)

    _CLAUDE_CLI_CACHE = None
    return None


def _parse_log_level(level: str) -> int:
    normalized = level.strip().lower()
    if normalized in _LOG_LEVELS:
        return _LOG_LEVELS[normalized]
    valid = ", ".join(sorted({k for k in _LOG_LEVELS if k != "warn"}))
    raise ValueError(f"Invalid log level: {level}. Valid: {valid}")


def _coerce_log_levels(levels: dict[str, str]) -> dict[str, str]:
    normalized: dict[str, str] = {}
    for name, level in levels.items():
        _parse_log_level(level)
        normalized[name] = level.strip().lower()
    return normalized


def _iter_log_levels(
    default_level: str,
    per_component: dict[str, str],
) -> Iterable[int]:
    yield _parse_log_level(default_level)
    for level in per_component.values():
        yield _parse_log_level(level)


class _StructuredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _LOG_RECORD_KEYS
        }
        for key, value in extras.items():
            if isinstance(value, (str, int, float, bool)) or value is None:
                payload[key] = value
            else:
                payload[key] = str(value)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack_info"] = record.stack_info
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(config: "CarrierConfig") -> None:
    """Configure structured logging for CLI usage."""
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    handler: logging.Handler
    if config.log_file:
        handler = logging.FileHandler(config.log_file)
    else:
        handler = logging.StreamHandler()
    handler.setLevel(logging.NOTSET)
    handler.setFormatter(_StructuredFormatter())
    root_logger.addHandler(handler)

    min_level = min(_iter_log_levels(config.log_level, config.log_levels))
    root_logger.setLevel(min_level)

    for name, level in config.log_levels.items():
        logging.getLogger(name).setLevel(_parse_log_level(level))


class CarrierConfig(BaseModel):
    """Main configuration for Carrier."""

    carrier_path: Path = Field(default=Path(".carrier"), description="Carrier root directory")
    provider: str = Field(default="claude", description="Execution provider name")
    model: str | None = Field(default=None, description="Model passed to the provider")
    cli_path: str | None = Field(default=None, description="Path to the provider CLI executable")
    task_timeout: float = Field(
        default=3600.0, gt=0, description="Foreground task wall-clock timeout (seconds)"
    )
    max_turns: int = Field(default=50, ge=1, description="Maximum agent turns per task")
    poll_interval: float = Field(
        default=0.25, gt=0, description="Stream follow poll interval (seconds)"
    )
    stop_grace_period: float = Field(
        default=2.0, ge=0, description="Seconds between SIGTERM and SIGKILL on stop"
    )
    lock_timeout: float = Field(
        default=10.0, gt=0, description="Seconds to wait for the registry lock"
    )
    log_level: str = Field(default="warning", description="Log level")
    log_levels: dict[str, str] = Field(
        default_factory=dict,
        description="Per-component log levels (e.g., {'carrier.process': 'debug'})",
    )
    log_file: str | None = Field(
        default=None,
        description="Optional log file path (structured JSON)",
    )

    # Remote reporting
    api_url: str | None = Field(default=None, description="Remote API base URL")
    api_key: str | None = Field(default=None, description="Remote API bearer token")
    api_reporting: bool = Field(default=False, description="Enable remote reporting")
    api_timeout: float = Field(default=10.0, gt=0, description="Remote API request timeout")

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        _parse_log_level(value)
        return value.strip().lower()

    @field_validator("log_levels")
    @classmethod
    def _validate_log_levels(cls, value: dict[str, str]) -> dict[str, str]:
        return _coerce_log_levels(value)

    @field_validator("provider")
    @classmethod
    def _validate_provider(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("provider must not be empty")
        return normalized

    @property
    def reporting_enabled(self) -> bool:
        return self.api_reporting and bool(self.api_url)

    @classmethod
    def default_path(cls) -> Path:
        """Get default config file path."""
        return Path.home() / ".config" / "carrier" / "config.toml"

    @classmethod
    def load(
        cls,
        path: str | Path | None = None,
        env: Mapping[str, str] | None = None,
        **overrides: Any,
    ) -> "CarrierConfig":
        """Load defaults, then the TOML file, then CARRIER_* variables, then overrides."""
        import tomllib

        env = os.environ if env is None else env
        data: dict[str, Any] = {}

        config_path = Path(path) if path else cls.default_path()
        if config_path.exists():
            with open(config_path, "rb") as f:
                data.update(tomllib.load(f))

        for var, field_name in _ENV_FIELDS.items():
            value = env.get(var)
            if value is None or value == "":
                continue
            if field_name == "api_reporting":
                data[field_name] = value.strip().lower() in ("1", "true", "yes", "on")
            else:
                data[field_name] = value

        data.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**data)
