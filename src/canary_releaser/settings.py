"""Runtime settings for the canary releaser."""

from __future__ import annotations

import logging
import os
import re
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator

LOGGER = logging.getLogger("canary_releaser.settings")

ENV_PREFIX = "GACR_"
DEFAULT_CONFIG_PATH = "~/gacr.conf"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: Any) -> Any:
    """Accept seconds as numbers or Go-style duration strings such as ``1m30s``."""
    if isinstance(value, bool) or not isinstance(value, str):
        return value
    text = value.strip()
    if not text:
        raise ValueError("duration must not be empty")
    try:
        return float(text)
    except ValueError:
        pass
    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total


Duration = Annotated[float, BeforeValidator(parse_duration), Field(ge=0)]


class RedisSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    host: str = "127.0.0.1"
    port: int = Field(default=6379, ge=1, le=65535)
    password: str = ""
    db: int = Field(default=1, ge=0)
    key_prefix: str = ""
    timeout: Duration = 5.0


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    repo: str = Field(pattern=r"^[^/\s]+/[^/\s]+$")
    github_token: str = ""
    github_api: str = "https://api.github.com"
    save_assets_path: str = "/usr/local/src"
    package_name_pattern: str = Field(min_length=1)
    include_prerelease: bool = False

    deploy_command: str = Field(min_length=1)
    rollback_command: str = ""
    healthcheck_command: str = Field(min_length=1)
    version_command: str = Field(min_length=1)

    healthcheck_interval: Duration = 60.0
    healthcheck_timeout: Duration = 30.0
    healthcheck_retries: int = Field(default=3, ge=1)
    canary_rollout_window: Duration = 300.0
    rollout_window: Duration = Field(default=60.0, gt=0)
    repository_polling_interval: Duration = Field(default=300.0, gt=0)
    deploy_timeout: Duration = 300.0

    canary_lock_ttl_multiplier: float = Field(default=2.0, gt=0)
    rollout_lock_ttl_multiplier: float = Field(default=1.0, gt=0)
    member_ttl_multiplier: float = Field(default=2.0, gt=0)

    store_backend: Literal["redis", "inmemory"] = "redis"
    redis: RedisSettings = Field(default_factory=RedisSettings)

    log_level: str = "info"
    slack_webhook_url: str = ""
    slack_channel: str = ""
    status_host: str = "0.0.0.0"
    status_port: int = Field(default=0, ge=0, le=65535)
    once: bool = False

    @field_validator("package_name_pattern")
    @classmethod
    def _compiles(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid package_name_pattern: {exc}") from exc
        return value

    @field_validator("log_level")
    @classmethod
    def _lower_level(cls, value: str) -> str:
        return value.lower()

    @property
    def key_prefix(self) -> str:
        return self.redis.key_prefix or self.repo

    @property
    def canary_lock_ttl(self) -> float:
        return self.canary_rollout_window * self.canary_lock_ttl_multiplier

    @property
    def rollout_lock_ttl(self) -> float:
        return self.rollout_window * self.rollout_lock_ttl_multiplier

    @property
    def member_ttl(self) -> float:
        return self.rollout_window * self.member_ttl_multiplier


def _read_config_file(config_path: str) -> dict[str, Any]:
    path = Path(config_path).expanduser().resolve()
    if not path.exists():
        LOGGER.warning("config file not found: %s", path)
        return {}
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ValueError(f"failed to read config {path}: {exc}") from exc


def _read_environment(environ: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name in Settings.model_fields:
        if name == "redis":
            continue
        raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is not None:
            values[name] = raw
    redis_values: dict[str, Any] = {}
    for name in RedisSettings.model_fields:
        raw = environ.get(f"{ENV_PREFIX}REDIS_{name.upper()}")
        if raw is not None:
            redis_values[name] = raw
    if redis_values:
        values["redis"] = redis_values
    return values


def _merge(base: dict[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _merge(dict(merged[key]), value)
        else:
            merged[key] = value
    return merged


def load_settings(
    config_path: str | None = DEFAULT_CONFIG_PATH,
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Resolve settings from the TOML file, ``GACR_*`` variables and overrides.

    Later sources win. ``None`` values in ``overrides`` are skipped so unset CLI
    flags never mask the file or the environment.
    """
    values: dict[str, Any] = {}
    if config_path:
        values = _merge(values, _read_config_file(config_path))
    values = _merge(values, _read_environment(os.environ if environ is None else environ))
    if overrides:
        values = _merge(values, overrides)
    return Settings.model_validate(values)
