"""
authdb Configuration — Configuration providers and the authdb.yaml settings file.

Components never read ``os.environ`` directly. A single ConfigProvider is
built at startup (usually ``EnvironmentConfig.from_environ()`` layered over
the properties in authdb.yaml) and passed explicitly to the resolver.

Usage:
    from authdb.engine.config import build_config_provider, load_settings
    settings = load_settings()
    config = build_config_provider(settings)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Protocol, runtime_checkable

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from authdb.engine.errors import AuthDBConfigError

SETTINGS_FILE_NAME = "authdb.yaml"


# ---------------------------------------------------------------------------
# Configuration providers
# ---------------------------------------------------------------------------

@runtime_checkable
class ConfigProvider(Protocol):
    """Read-only key/value lookup (environment, properties file, ...)."""

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        ...


class MappingConfig:
    """ConfigProvider over a plain mapping. Values are coerced to str."""

    def __init__(self, values: Optional[Mapping[str, Any]] = None):
        self._values: Dict[str, str] = {
            str(k): str(v) for k, v in (values or {}).items() if v is not None
        }

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self._values.get(key, default)

    def keys(self) -> Iterable[str]:
        return self._values.keys()

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(keys={sorted(self._values)})"


class EnvironmentConfig(MappingConfig):
    """Snapshot of the process environment."""

    @classmethod
    def from_environ(cls, environ: Optional[Mapping[str, str]] = None) -> "EnvironmentConfig":
        return cls(dict(environ if environ is not None else os.environ))


class LayeredConfig:
    """
    Chain of providers; the first one returning a non-None value wins.

    Usage:
        config = LayeredConfig(EnvironmentConfig.from_environ(), file_properties)
    """

    def __init__(self, *providers: ConfigProvider):
        self._providers = [p for p in providers if p is not None]

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        for provider in self._providers:
            value = provider.get(key)
            if value is not None:
                return value
        return default

    @property
    def providers(self) -> list:
        return list(self._providers)


def _flatten(data: Mapping[str, Any], prefix: str = "") -> Dict[str, Any]:
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        name = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping):
            flat.update(_flatten(value, name))
        else:
            flat[name] = value
    return flat


def load_properties_file(path: str) -> MappingConfig:
    """
    Load a YAML mapping of configuration keys (DATABASE_URL, DB_HOST, ...).
    Nested mappings are flattened with ``.`` separators.
    """
    file_path = Path(path)
    if not file_path.exists():
        raise AuthDBConfigError(f"Properties file not found: {file_path}", key=str(file_path))
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise AuthDBConfigError(f"Invalid YAML in {file_path}: {e}", key=str(file_path)) from e
    if not isinstance(raw, Mapping):
        raise AuthDBConfigError(f"Properties file must contain a mapping: {file_path}")
    return MappingConfig(_flatten(raw))


# ---------------------------------------------------------------------------
# Pydantic models for authdb.yaml
# ---------------------------------------------------------------------------

class PoolTuning(BaseModel):
    """Explicit pool overrides; None means 'use the configurator default'."""
    max_pool_size: Optional[int] = Field(default=None, ge=1)
    min_idle: Optional[int] = Field(default=None, ge=0)
    connection_timeout_ms: Optional[int] = Field(default=None, gt=0)
    idle_timeout_ms: Optional[int] = Field(default=None, gt=0)
    max_lifetime_ms: Optional[int] = Field(default=None, gt=0)
    leak_detection_threshold_ms: Optional[int] = Field(default=None, gt=0)
    test_query: Optional[str] = None
    pool_name: Optional[str] = None

    def merged(self, overrides: "PoolTuning") -> "PoolTuning":
        """Return a copy with every non-None field of ``overrides`` applied."""
        return self.model_copy(update=overrides.model_dump(exclude_none=True))


class LoggingSettings(BaseModel):
    level: str = "INFO"
    format: str = "text"
    directory: Optional[str] = None

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v not in ("text", "json"):
            raise ValueError(f"logging format must be text/json, got '{v}'")
        return v

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown logging level '{v}'")
        return level


class HealthSettings(BaseModel):
    interval_seconds: int = Field(default=60, gt=0)
    timeout: int = Field(default=10, gt=0)


class ServiceSettings(BaseModel):
    """Root model for authdb.yaml."""
    name: str = "auth-backend"
    environment: str = "dev"
    logging: LoggingSettings = LoggingSettings()
    health: HealthSettings = HealthSettings()
    pool: PoolTuning = PoolTuning()
    properties: Dict[str, str] = Field(default_factory=dict)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        if v not in ("dev", "staging", "prod"):
            raise ValueError(f"environment must be dev/staging/prod, got '{v}'")
        return v


# ---------------------------------------------------------------------------
# Settings loading
# ---------------------------------------------------------------------------

_settings: Optional[ServiceSettings] = None


def _find_project_root() -> Path:
    """Find the project root by looking for authdb.yaml."""
    current = Path.cwd()
    for parent in [current, *current.parents]:
        if (parent / SETTINGS_FILE_NAME).exists():
            return parent
    return current


def load_settings(config_path: Optional[str] = None) -> ServiceSettings:
    """
    Load and validate authdb.yaml.

    Args:
        config_path: Explicit path to authdb.yaml. If None, auto-discovers.

    Returns:
        Validated ServiceSettings instance (defaults when no file exists).

    Raises:
        AuthDBConfigError: If the file exists but is invalid.
    """
    global _settings

    if config_path is None:
        config_path = str(_find_project_root() / SETTINGS_FILE_NAME)

    path = Path(config_path)
    if not path.exists():
        _settings = ServiceSettings()
        return _settings

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise AuthDBConfigError(f"Invalid YAML in {path}: {e}", key=str(path)) from e

    if not isinstance(raw, Mapping):
        raise AuthDBConfigError(f"Settings file must contain a mapping: {path}", key=str(path))

    # authdb.yaml may wrap its service section under "service:"
    service = raw.get("service") or {}
    properties = raw.get("properties") or {}
    for section, value in (("service", service), ("properties", properties)):
        if not isinstance(value, Mapping):
            raise AuthDBConfigError(
                f"Section '{section}' in {path} must be a mapping", key=section,
            )
    data = {
        "name": service.get("name", raw.get("name", "auth-backend")),
        "environment": service.get("environment", raw.get("environment", "dev")),
        "logging": raw.get("logging", {}),
        "health": raw.get("health", {}),
        "pool": raw.get("pool", {}),
        "properties": {
            str(k): str(v) for k, v in properties.items()
        },
    }

    try:
        _settings = ServiceSettings(**data)
    except ValidationError as e:
        raise AuthDBConfigError(
            f"Invalid settings in {path}: {e.error_count()} error(s)",
            key=str(path),
            validation_errors=e.errors(include_url=False),
        ) from e
    return _settings


def get_settings() -> ServiceSettings:
    """Get the currently loaded settings, loading if necessary."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def build_config_provider(
    settings: Optional[ServiceSettings] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> LayeredConfig:
    """Environment first, then the ``properties`` section of authdb.yaml."""
    settings = settings or get_settings()
    return LayeredConfig(
        EnvironmentConfig.from_environ(environ),
        MappingConfig(settings.properties),
    )


# ---------------------------------------------------------------------------
# Tuning overrides
# ---------------------------------------------------------------------------

TUNING_KEYS = {
    "DB_MAX_CONNECTIONS": "max_pool_size",
    "DB_MIN_CONNECTIONS": "min_idle",
}


def tuning_from_config(
    config: ConfigProvider,
    base: Optional[PoolTuning] = None,
) -> PoolTuning:
    """
    Read DB_MAX_CONNECTIONS / DB_MIN_CONNECTIONS from the provider and layer
    them over ``base`` (usually the ``pool`` section of authdb.yaml).

    Raises:
        AuthDBConfigError: If a present value is not an integer.
    """
    overrides: Dict[str, int] = {}
    for key, field_name in TUNING_KEYS.items():
        raw = config.get(key)
        if raw is None or not raw.strip():
            continue
        try:
            overrides[field_name] = int(raw.strip())
        except ValueError as e:
            raise AuthDBConfigError(f"{key} must be an integer, got '{raw}'", key=key) from e
    try:
        return (base or PoolTuning()).merged(PoolTuning(**overrides))
    except ValidationError as e:
        raise AuthDBConfigError(
            f"Invalid pool tuning: {e.error_count()} error(s)",
            validation_errors=e.errors(include_url=False),
        ) from e
