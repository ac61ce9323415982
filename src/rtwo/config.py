"""Configuration loading and validation for the rtwo client."""

from __future__ import annotations

from copy import deepcopy
import logging
import os
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from platformdirs import user_config_path, user_data_path
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

from .exceptions import ConfigValidationError
from .models import RenderMode

import tomllib  # stdlib since Python 3.11 (project requires >=3.11)

LOGGER = logging.getLogger(__name__)

APP_NAME = "rtwo"

CONFIG_DIR = user_config_path(APP_NAME)
CONFIG_PATH = CONFIG_DIR / "rtwo.toml"
DATA_DIR = user_data_path(APP_NAME)

VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


def _require_string(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("Expected a string value.")
    normalized = value.strip()
    if not normalized:
        raise ValueError("String value must not be empty.")
    return normalized


class LoggingConfig(BaseModel):
    """Logging behavior and output destinations."""

    level: str = "INFO"
    structured: bool = False
    log_to_file: bool = True
    log_file_path: str = str(DATA_DIR / "rtwo.log")

    @field_validator("level", mode="before")
    @classmethod
    def _validate_level(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Logging level must be a string.")
        normalized = value.strip().upper()
        if normalized not in VALID_LOG_LEVELS:
            raise ValueError(f"Unsupported log level {normalized!r}.")
        return normalized

    @field_validator("log_file_path", mode="before")
    @classmethod
    def _validate_log_file_path(cls, value: Any) -> str:
        return _require_string(value)


class Config(BaseModel):
    """Root configuration model mirroring ``rtwo.toml``."""

    host: str = "localhost"
    port: int = Field(default=11434, ge=1, le=65535)
    model: str = "llama3:latest"
    verbose: bool = False
    color: bool = True
    save: bool = False
    stream: bool = False
    timeout: int = Field(default=120, ge=1, le=3600)
    database_path: str = str(DATA_DIR / "rtwo.db")
    logging: LoggingConfig = LoggingConfig()

    @field_validator("host", "model", "database_path", mode="before")
    @classmethod
    def _validate_required_string(cls, value: Any) -> str:
        return _require_string(value)


class SessionConfig(BaseModel):
    """Resolved, immutable settings for one interactive session."""

    model_config = ConfigDict(frozen=True)

    host: str
    port: int = Field(ge=1, le=65535)
    model: str
    verbose: bool = False
    color: bool = True
    save: bool = False
    render_mode: RenderMode = RenderMode.BATCH
    timeout: int = 120

    @property
    def base_url(self) -> str:
        """Server URL with scheme and port, e.g. ``http://localhost:11434``."""
        host = self.host
        if "://" not in host:
            # Bare IPv6 literals need brackets before a port can follow them.
            if host.count(":") > 1 and not host.startswith("["):
                host = f"[{host}]"
            host = f"http://{host}"
        parsed = urlparse(host)
        if parsed.port is not None:
            return host.rstrip("/")
        hostname = parsed.hostname or ""
        if ":" in hostname:
            hostname = f"[{hostname}]"
        return f"{parsed.scheme}://{hostname}:{self.port}"

    @property
    def address(self) -> str:
        """``host:port`` label used in listings and log messages."""
        return f"{self.host}:{self.port}"


DEFAULT_CONFIG: dict[str, Any] = Config().model_dump()


def ensure_config_dir(config_dir: Path | None = None) -> Path:
    """Ensure that the config directory exists and return its path."""
    directory = config_dir or CONFIG_DIR
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create config directory %s: %s", directory, exc)
    return directory


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override values onto base values."""
    merged: dict[str, Any] = deepcopy(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _enforce_private_permissions(path: Path) -> None:
    """Best-effort enforcement of private file permissions on POSIX systems."""
    if os.name != "posix" or not path.exists():
        return
    try:
        path.chmod(0o600)
    except OSError as exc:
        LOGGER.warning("Unable to enforce 0600 permissions for %s: %s", path, exc)


def _safe_default_config() -> dict[str, Any]:
    return deepcopy(DEFAULT_CONFIG)


def _validate_config(raw: dict[str, Any]) -> dict[str, Any]:
    """Validate merged config and fall back to safe defaults when possible."""
    try:
        return Config.model_validate(raw).model_dump()
    except ValidationError as exc:
        LOGGER.warning("Configuration validation failed, using safe defaults: %s", exc)
        return _safe_default_config()
    except Exception as exc:  # noqa: BLE001 - unexpected model construction failure.
        raise ConfigValidationError(f"Unable to validate configuration: {exc}") from exc


def load_config(config_path: Path | None = None) -> dict[str, Any]:
    """
    Load configuration from TOML, merge with defaults, and validate.

    The optional ``config_path`` argument is intended for tests and tooling.
    """
    target_path = config_path or CONFIG_PATH
    ensure_config_dir(target_path.parent)

    raw_data: dict[str, Any] = {}
    if target_path.exists():
        _enforce_private_permissions(target_path)
        try:
            raw_data = tomllib.loads(target_path.read_text(encoding="utf-8"))
        except (
            Exception
        ) as exc:  # noqa: BLE001 - we must not crash on invalid user config.
            LOGGER.warning("Failed to parse config at %s: %s", target_path, exc)
            raw_data = {}

    merged = _deep_merge(DEFAULT_CONFIG, raw_data)
    return _validate_config(merged)


def build_session_config(
    config: dict[str, Any],
    *,
    host: str | None = None,
    port: int | None = None,
    model: str | None = None,
    verbose: bool = False,
    color: bool = False,
    save: bool = False,
    stream: bool = False,
) -> SessionConfig:
    """Apply command-line overrides to a loaded config.

    Value options replace the configured value; boolean flags can only switch
    a feature on.
    """
    try:
        return SessionConfig(
            host=host or config["host"],
            port=port if port is not None else config["port"],
            model=model or config["model"],
            verbose=verbose or bool(config["verbose"]),
            color=color or bool(config["color"]),
            save=save or bool(config["save"]),
            render_mode=(
                RenderMode.STREAM
                if stream or bool(config["stream"])
                else RenderMode.BATCH
            ),
            timeout=int(config["timeout"]),
        )
    except ValidationError as exc:
        raise ConfigValidationError(f"Invalid session settings: {exc}") from exc
