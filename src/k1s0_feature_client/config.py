"""Client configuration (pydantic BaseModel) and YAML loader."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from .exceptions import FeatureClientError, FeatureClientErrorCodes
from .models import FlagConfig, FlagRecord


class ClientSection(BaseModel):
    """Server connection settings."""

    publishable_key: str = Field(min_length=1)
    api_base_url: str = Field(min_length=1)
    request_timeout_seconds: float = Field(default=10.0, gt=0)


class FallbackConfigSection(BaseModel):
    """Fallback dynamic configuration for a flag."""

    key: str
    payload: Any = None


class FlagsSection(BaseModel):
    """Flag resolution settings."""

    timeout_ms: int = Field(default=4000, ge=0)
    stale_while_revalidate: bool = True
    freshness_ms: int = Field(default=60_000, ge=0)
    expire_ms: int = Field(default=30 * 24 * 60 * 60 * 1000, gt=0)
    cache_path: str | None = None
    offline: bool = False
    fallback_flags: dict[str, bool | FallbackConfigSection] = Field(default_factory=dict)

    def fallback_records(self) -> list[FlagRecord]:
        """Fallback flags as records; a config value implies enabled."""
        records: list[FlagRecord] = []
        for key, value in self.fallback_flags.items():
            if isinstance(value, FallbackConfigSection):
                records.append(
                    FlagRecord(
                        key=key,
                        is_enabled=True,
                        config=FlagConfig(key=value.key, payload=value.payload),
                    )
                )
            else:
                records.append(FlagRecord(key=key, is_enabled=value))
        return records


class RateLimitSection(BaseModel):
    """Outbound event rate limits."""

    events_per_minute: int = Field(default=1, ge=1)


class PromptsSection(BaseModel):
    """Feedback prompt settings."""

    enabled: bool = True
    completion_store_path: str | None = None


class LogSection(BaseModel):
    """Log settings."""

    level: str = "INFO"
    format: Literal["json", "text"] = "json"


class FeatureClientConfig(BaseModel):
    """Complete client configuration."""

    client: ClientSection
    flags: FlagsSection = Field(default_factory=FlagsSection)
    rate_limit: RateLimitSection = Field(default_factory=RateLimitSection)
    prompts: PromptsSection = Field(default_factory=PromptsSection)
    log: LogSection | None = None


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = dict(base)
    for key, value in override.items():
        if isinstance(result.get(key), dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise FeatureClientError(
            code=FeatureClientErrorCodes.CONFIG_ERROR,
            message=f"Failed to read config file: {path}",
            cause=e,
        ) from e
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise FeatureClientError(
            code=FeatureClientErrorCodes.CONFIG_ERROR,
            message=f"Failed to parse YAML: {path}",
            cause=e,
        ) from e
    if not isinstance(data, dict):
        raise FeatureClientError(
            code=FeatureClientErrorCodes.CONFIG_ERROR,
            message=f"Config root must be a mapping: {path}",
        )
    return data


def load_config(base_path: Path, env_path: Path | None = None) -> FeatureClientConfig:
    """Load the client configuration.

    base_path: base YAML file (required)
    env_path: environment overlay, deep-merged over the base when it exists
    """
    data = _read_yaml(base_path)
    if env_path is not None and env_path.exists():
        data = _deep_merge(data, _read_yaml(env_path))
    try:
        return FeatureClientConfig.model_validate(data)
    except ValidationError as e:
        raise FeatureClientError(
            code=FeatureClientErrorCodes.CONFIG_ERROR,
            message=f"Config validation failed: {e}",
            cause=e,
        ) from e
