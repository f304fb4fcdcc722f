"""Configuration loading and validation for the buildchat client."""

from __future__ import annotations

from copy import deepcopy
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import ConfigValidationError

import tomllib  # stdlib since Python 3.11 (project requires >=3.11)

if TYPE_CHECKING:
    from .client import ChatApiClient

LOGGER = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "buildchat"
CONFIG_PATH = CONFIG_DIR / "config.toml"

BASE_URL_ENV = "BUILDCHAT_API_BASE_URL"
VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


class ApiConfig(BaseModel):
    """Backend endpoint and transport settings."""

    base_url: str = "http://localhost:8000"
    timeout: int = Field(default=120, ge=1, le=3600)
    transport_mode: Literal["auto", "stream", "poll"] = "auto"

    @field_validator("base_url", mode="before")
    @classmethod
    def _validate_base_url(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("base_url must be a string.")
        normalized = value.strip().rstrip("/")
        parsed = urlparse(normalized)
        if parsed.scheme.lower() not in {"http", "https"}:
            raise ValueError("base_url must use http or https scheme.")
        if not parsed.hostname:
            raise ValueError("base_url must include a hostname.")
        return normalized

    @field_validator("transport_mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("transport_mode must be a string.")
        return value.strip().lower()


class PollingConfig(BaseModel):
    """Task polling cadence."""

    interval_seconds: float = Field(default=1.0, ge=0, le=60)
    max_attempts: int = Field(default=60, ge=1, le=100_000)


class LoggingConfig(BaseModel):
    """Logging behavior and output destinations."""

    level: str = "INFO"
    structured: bool = True
    log_to_file: bool = False
    log_file_path: str = "~/.local/state/buildchat/client.log"

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
        if not isinstance(value, str):
            raise ValueError("log_file_path must be a string.")
        normalized = value.strip()
        if not normalized:
            raise ValueError("log_file_path must not be empty.")
        return normalized


class Config(BaseModel):
    """Root configuration model for all sections."""

    api: ApiConfig = ApiConfig()
    polling: PollingConfig = PollingConfig()
    logging: LoggingConfig = LoggingConfig()


DEFAULT_CONFIG: dict[str, dict[str, Any]] = Config().model_dump()


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override values onto base values."""
    merged: dict[str, Any] = deepcopy(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _safe_default_config() -> dict[str, dict[str, Any]]:
    return deepcopy(DEFAULT_CONFIG)


def _validate_config(raw: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Validate merged config and fallback to safe defaults when possible."""
    try:
        return Config.model_validate(raw).model_dump()
    except ValidationError as exc:
        LOGGER.warning("Configuration validation failed, using safe defaults: %s", exc)
        return _safe_default_config()
    except Exception as exc:  # noqa: BLE001 - unexpected model construction failure.
        raise ConfigValidationError(f"Unable to validate configuration: {exc}") from exc


def _read_toml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as exc:
        LOGGER.warning("Failed to parse config at %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def load_config(
    config_path: Path | None = None,
    environ: dict[str, str] | None = None,
) -> dict[str, dict[str, Any]]:
    """Load configuration from defaults, optional TOML, then the environment.

    ``BUILDCHAT_API_BASE_URL`` overrides ``api.base_url`` when set. The
    ``config_path`` and ``environ`` arguments are intended for tests and tooling.
    """
    env = os.environ if environ is None else environ
    merged = _deep_merge(DEFAULT_CONFIG, _read_toml(config_path or CONFIG_PATH))

    base_url = env.get(BASE_URL_ENV, "").strip()
    if base_url:
        merged = _deep_merge(merged, {"api": {"base_url": base_url}})
    return _validate_config(merged)


def build_client(config: dict[str, dict[str, Any]]) -> ChatApiClient:
    """Construct a :class:`ChatApiClient` from a validated config dict."""
    from .client import ChatApiClient

    api = config["api"]
    return ChatApiClient(
        api["base_url"],
        timeout=float(api["timeout"]),
        transport_mode=api["transport_mode"],
    )
