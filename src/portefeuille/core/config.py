"""Configuration loading, validation, and access."""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from portefeuille.core.exceptions import ConfigError

CONFIG_ENV_VAR = "PORTEFEUILLE_CONFIG"
DEFAULT_CONFIG_FILES = ("portefeuille.yml", "portefeuille.yaml")
_SECRET_FIELDS = frozenset({"password"})

_DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/127.0.0.0 Safari/537.36"
)


class PricingConfig(BaseModel):
    """Price resolution settings."""

    model_config = ConfigDict(frozen=True)

    reference_currency: str = "EUR"
    spot_cache_seconds: int = 30
    conversion_cache_seconds: int = 60
    session_ttl_seconds: int = 1800

    @field_validator("reference_currency")
    @classmethod
    def currency_code(cls, v: str) -> str:
        code = v.strip().upper()
        if len(code) != 3 or not code.isalpha():
            raise ValueError(f"reference_currency must be a 3-letter code, got {v!r}")
        return code

    @field_validator("spot_cache_seconds", "session_ttl_seconds")
    @classmethod
    def positive_seconds(cls, v: int) -> int:
        if v < 1:
            raise ValueError("durations must be >= 1 second")
        return v

    @model_validator(mode="after")
    def conversion_outlives_spot(self) -> PricingConfig:
        if self.conversion_cache_seconds < self.spot_cache_seconds:
            raise ValueError(
                "conversion_cache_seconds must be >= spot_cache_seconds"
            )
        return self


class CacheConfig(BaseModel):
    """Shared (Redis) cache tier configuration."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    host: str = "localhost"
    port: int = 6379
    password: str | None = None
    db: int = 0
    price_ttl_seconds: int = 3600
    connect_timeout: float = 3.0

    @field_validator("price_ttl_seconds")
    @classmethod
    def ttl_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("price_ttl_seconds must be >= 1")
        return v


class UpstreamConfig(BaseModel):
    """HTTP access to the price providers."""

    model_config = ConfigDict(frozen=True)

    request_timeout: float = 30.0
    yahoo_rate_limit: int = 5
    binance_rate_limit: int = 10
    user_agent: str = _DEFAULT_USER_AGENT

    @field_validator("yahoo_rate_limit", "binance_rate_limit")
    @classmethod
    def rate_limit_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("rate limits must be >= 1 request/second")
        return v


class LedgerConfig(BaseModel):
    """Ledger reconciliation settings."""

    model_config = ConfigDict(frozen=True)

    pairing_window_seconds: int = 120

    @field_validator("pairing_window_seconds")
    @classmethod
    def window_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("pairing_window_seconds must be >= 1")
        return v


class StorageConfig(BaseModel):
    """Record store configuration."""

    model_config = ConfigDict(frozen=True)

    sqlite_path: str = "./data/portefeuille.db"


class PortefeuilleConfig(BaseModel):
    """Root configuration for the whole engine."""

    model_config = ConfigDict(frozen=True)

    pricing: PricingConfig = PricingConfig()
    cache: CacheConfig = CacheConfig()
    upstream: UpstreamConfig = UpstreamConfig()
    ledger: LedgerConfig = LedgerConfig()
    storage: StorageConfig = StorageConfig()


_SECTIONS: dict[str, type[BaseModel]] = {
    "pricing": PricingConfig,
    "cache": CacheConfig,
    "upstream": UpstreamConfig,
    "ledger": LedgerConfig,
    "storage": StorageConfig,
}


def load_config(
    config_path: str | None = None,
    env_prefix: str = "PORTEFEUILLE_",
) -> PortefeuilleConfig:
    """Load configuration from environment + YAML file + defaults.

    Resolution order (highest priority first):
    1. Environment variables naming a section and a field:
           PORTEFEUILLE_CACHE__PORT=6380  ->  cache.port = 6380
    2. YAML file: ``config_path``, else ``$PORTEFEUILLE_CONFIG``, else
       ``portefeuille.yml`` / ``portefeuille.yaml`` in the working directory
    3. Built-in defaults

    Environment values are passed through as strings and coerced by the
    models, so a numeric Redis password stays a string.

    Raises:
        ConfigError: Missing or unreadable file, unknown setting, or a
            value that fails validation.
    """
    path = _config_file(config_path)
    settings = _read_yaml(path) if path is not None else {}
    for (section, field), value in _env_overrides(env_prefix).items():
        current = settings.get(section)
        settings[section] = {**(current if isinstance(current, dict) else {}), field: value}

    try:
        return PortefeuilleConfig.model_validate(settings)
    except ValidationError as e:
        raise _invalid_setting(e) from e


def _config_file(explicit: str | None) -> Path | None:
    sources = (("config_path", explicit), (CONFIG_ENV_VAR, os.environ.get(CONFIG_ENV_VAR)))
    for origin, value in sources:
        if not value:
            continue
        path = Path(value)
        if not path.is_file():
            raise ConfigError(
                f"Config file not found: {value}",
                context={"field": origin, "value": value},
            )
        return path
    return next((p for p in map(Path, DEFAULT_CONFIG_FILES) if p.is_file()), None)


def _read_yaml(path: Path) -> dict:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(
            f"Cannot read config file {path}: {e}",
            context={"field": "config_file", "value": str(path)},
        ) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"{path} must be a mapping of sections, got {type(data).__name__}",
            context={"field": "config_file", "value": str(path)},
        )
    return data


def _env_overrides(prefix: str) -> dict[tuple[str, str], str]:
    """``(section, field) -> raw value`` for every prefixed variable.

    Raises:
        ConfigError: A variable names no known section or field.
    """
    overrides: dict[tuple[str, str], str] = {}
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        name = key[len(prefix) :].lower()
        if name == "config":
            continue
        section, _, field = name.partition("__")
        model = _SECTIONS.get(section)
        if model is None or field not in model.model_fields:
            raise ConfigError(
                f"Unknown setting {key}",
                context={"field": key, "value": _redact(field, value)},
            )
        overrides[(section, field)] = value
    return overrides


def _invalid_setting(error: ValidationError) -> ConfigError:
    first = error.errors()[0]
    loc = [str(part) for part in first["loc"]]
    field = ".".join(loc) or "config"
    value = _redact(loc[-1] if loc else "", first.get("input"))
    return ConfigError(
        f"Invalid setting {field}: {first['msg']}",
        context={"field": field, "value": value},
    )


def _redact(field: str, value: object) -> object:
    return "***" if field in _SECRET_FIELDS else value
