"""Configuration loading, validation, and access."""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from supply_tracker.core.exceptions import ConfigError
from supply_tracker.core.models import StorageBackend, normalize_symbol


class ProviderConfig(BaseModel):
    """Market-data provider access and retry policy."""

    model_config = ConfigDict(frozen=True)

    base_url: str = "https://api.coingecko.com/api/v3"
    vs_currency: str = "usd"
    order: str = "market_cap_desc"
    per_page: int = 100
    listing_size: int = 250
    request_timeout: float = 10.0
    rate_limit_per_minute: int = 30
    max_attempts: int = 3
    default_retry_after: float = 15.0
    transient_backoff_seconds: float = 15.0
    api_key: str | None = None
    user_agent: str = "supply-tracker/0.1"

    @field_validator("base_url")
    @classmethod
    def base_url_must_be_http(cls, v: str) -> str:
        if not v.startswith(("https://", "http://")):
            raise ValueError("base_url must be an http(s) URL")
        return v.rstrip("/")

    @field_validator("per_page", "listing_size")
    @classmethod
    def page_size_within_provider_policy(cls, v: int) -> int:
        if v < 1 or v > 250:
            raise ValueError("page sizes must be between 1 and 250 (provider policy)")
        return v

    @field_validator("max_attempts", "rate_limit_per_minute")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @field_validator("request_timeout")
    @classmethod
    def timeout_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("request_timeout must be > 0")
        return v

    @field_validator("default_retry_after", "transient_backoff_seconds")
    @classmethod
    def delay_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("delays must be >= 0")
        return v


class IngestionConfig(BaseModel):
    """Collection-cycle policy: pagination, pacing, and backfill limits."""

    model_config = ConfigDict(frozen=True)

    page_count: int = 5
    page_delay_seconds: float = 15.0
    detail_delay_seconds: float = 10.0
    failure_delay_seconds: float = 5.0
    backfill_cap: int = 100
    schedule_interval_seconds: float = 3600.0
    priority_symbols: tuple[str, ...] = ("BTC", "ETH", "BNB", "SOL", "XRP")
    priority_fallback_ids: dict[str, str] = {
        "BTC": "bitcoin",
        "ETH": "ethereum",
        "BNB": "binancecoin",
        "SOL": "solana",
        "XRP": "ripple",
    }

    @field_validator("page_count")
    @classmethod
    def page_count_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("page_count must be >= 1")
        return v

    @field_validator("backfill_cap")
    @classmethod
    def backfill_cap_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("backfill_cap must be >= 0")
        return v

    @field_validator("schedule_interval_seconds")
    @classmethod
    def interval_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("schedule_interval_seconds must be > 0")
        return v

    @field_validator("page_delay_seconds", "detail_delay_seconds", "failure_delay_seconds")
    @classmethod
    def delay_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("delays must be >= 0")
        return v

    @field_validator("priority_symbols")
    @classmethod
    def priority_symbols_canonical(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(normalize_symbol(s) for s in v)

    @field_validator("priority_fallback_ids")
    @classmethod
    def fallback_keys_canonical(cls, v: dict[str, str]) -> dict[str, str]:
        return {normalize_symbol(k): ids for k, ids in v.items()}


class ChangesConfig(BaseModel):
    """Lookback windows and reference-acceptance thresholds."""

    model_config = ConfigDict(frozen=True)

    windows: dict[str, int] = {"1d": 1, "1w": 7, "1m": 30}
    acceptance_window_days: int = 7
    short_window_max_days: int = 7
    extrapolation_window_days: int = 30

    @field_validator("windows")
    @classmethod
    def windows_positive(cls, v: dict[str, int]) -> dict[str, int]:
        if not v:
            raise ValueError("at least one window is required")
        for name, days in v.items():
            if days < 1:
                raise ValueError(f"window {name!r} must be >= 1 day")
        return v

    @model_validator(mode="after")
    def snapshot_windows_present(self) -> ChangesConfig:
        missing = {"1d", "1w", "1m"} - set(self.windows)
        if missing:
            raise ValueError(f"windows must define {sorted(missing)}")
        return self


class StorageConfig(BaseModel):
    """Storage backend configuration."""

    model_config = ConfigDict(frozen=True)

    backend: StorageBackend = StorageBackend.SQLITE
    sqlite_path: str = "./data/supply_tracker.db"


class LoggingConfig(BaseModel):
    """Root log level for CLI runs."""

    model_config = ConfigDict(frozen=True)

    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def level_known(cls, v: str) -> str:
        v = v.upper()
        if v not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {v}")
        return v


class TrackerConfig(BaseModel):
    """Root configuration for the entire supply-tracker system."""

    model_config = ConfigDict(frozen=True)

    provider: ProviderConfig = ProviderConfig()
    ingestion: IngestionConfig = IngestionConfig()
    changes: ChangesConfig = ChangesConfig()
    storage: StorageConfig = StorageConfig()
    logging: LoggingConfig = LoggingConfig()


DEFAULT_CONFIG_FILE = "supply-tracker.yml"


def load_config(
    config_path: str | None = None,
    env_prefix: str = "SUPPLY_TRACKER_",
) -> TrackerConfig:
    """Build a TrackerConfig from defaults, a YAML file and the environment.

    Environment variables win over the file, the file wins over defaults.
    Nesting uses a double underscore and values are read as YAML scalars:
        SUPPLY_TRACKER_INGESTION__BACKFILL_CAP=20  ->  ingestion.backfill_cap = 20
        SUPPLY_TRACKER_INGESTION__PRIORITY_SYMBOLS="[BTC, ETH]"
    """
    try:
        path = _resolve_config_path(config_path, f"{env_prefix}CONFIG")
        file_values = _load_yaml(path) if path is not None else {}
        return TrackerConfig.model_validate(_deep_merge(file_values, _env_overrides(env_prefix)))
    except ConfigError:
        raise
    except (ValidationError, OSError) as e:
        raise ConfigError(str(e), context={"source": "load_config"}) from e


def _resolve_config_path(explicit: str | None, env_var: str) -> Path | None:
    """Explicit path, else the path in `env_var`, else ./supply-tracker.yml if present."""
    if explicit is not None:
        field, value = "config_path", explicit
    elif os.environ.get(env_var):
        field, value = env_var, os.environ[env_var]
    else:
        default = Path(DEFAULT_CONFIG_FILE)
        return default if default.is_file() else None

    path = Path(value)
    if not path.is_file():
        raise ConfigError(
            f"Config file not found: {value} (from {field})",
            context={"field": field, "value": value},
        )
    return path


def _load_yaml(path: Path) -> dict:
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Failed to parse YAML config: {e}",
            context={"field": "config_file", "value": str(path)},
        ) from e
    if not isinstance(data, dict):
        raise ConfigError(
            f"YAML config must be a mapping, got {type(data).__name__}",
            context={"field": "config_file", "value": str(path)},
        )
    return data


def _env_overrides(prefix: str) -> dict:
    """Nested dict of every `<prefix>SECTION__KEY` variable except the config path."""
    overrides: dict = {}
    for key, raw in os.environ.items():
        if not key.startswith(prefix) or key == f"{prefix}CONFIG":
            continue
        *sections, field = key[len(prefix) :].lower().split("__")
        if not field:
            continue
        node = overrides
        for section in sections:
            if not isinstance(node.get(section), dict):
                node[section] = {}
            node = node[section]
        node[field] = _parse_env_value(raw)
    return overrides


def _deep_merge(base: dict, overlay: dict) -> dict:
    """Copy of `base` with `overlay` applied; nested dicts merge key by key."""
    merged = dict(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _parse_env_value(raw: str):
    """Read an env value as a YAML scalar or flow list; fall back to the raw string."""
    if not raw.strip():
        return raw
    try:
        value = yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw
    # mappings and nulls are not meaningful as a single override
    if value is None or isinstance(value, dict):
        return raw
    return value
