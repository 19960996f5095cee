"""
Closed configuration types.

Unknown keys and invalid values are rejected when the model is built.
"""

from __future__ import annotations

import os
import typing as t

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from reqflow.exceptions import ConfigurationError
from reqflow.request import Priority, Verb

ENV_PREFIX = "REQFLOW_"


class OrchestratorConfig(BaseModel):
    """
    Orchestrator-wide settings. Durations are in seconds.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    base_url: str | None = None
    default_headers: dict[str, str] = Field(default_factory=dict)
    default_timeout: float = Field(default=30.0, gt=0)

    cache_enabled: bool = True
    cache_ttl: float = Field(default=60.0, gt=0)
    cache_max_entries: int = Field(default=500, ge=1)
    cache_sweep_interval: float | None = Field(default=60.0, gt=0)
    cacheable_verbs: frozenset[Verb] = frozenset({Verb.GET, Verb.HEAD})
    ignored_key_params: frozenset[str] = frozenset()

    batching_enabled: bool = True
    batch_endpoint: str | None = None
    batch_delay: float = Field(default=0.05, ge=0)
    batch_max_size: int = Field(default=10, ge=1)

    retry_enabled: bool = True
    max_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=0.3, ge=0)
    retry_max_delay: float = Field(default=10.0, ge=0)
    retry_jitter_ratio: float = Field(default=0.3, ge=0, le=1)

    max_concurrent: int = Field(default=6, ge=1)
    queue_timeout: float | None = Field(default=None, gt=0)

    @field_validator("base_url")
    @classmethod
    def _strip_base_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip().rstrip("/")
        return stripped or None

    @model_validator(mode="after")
    def _check_retry_bounds(self) -> "OrchestratorConfig":
        if self.retry_base_delay > self.retry_max_delay:
            raise ValueError("retry_base_delay must not exceed retry_max_delay")
        return self


class RequestOptions(BaseModel):
    """
    Per-request options recognized by the facade.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    priority: Priority = Priority.NORMAL
    ttl: float | None = Field(default=None, gt=0)
    skip_cache: bool = False
    skip_batch: bool = False
    skip_retry: bool = False
    max_attempts: int | None = Field(default=None, ge=1)
    timeout: float | None = Field(default=None, gt=0)
    batch_endpoint: str | None = None
    queue_timeout: float | None = Field(default=None, gt=0)
    headers: dict[str, str] = Field(default_factory=dict)


def build_config(config: OrchestratorConfig | None = None, **overrides: t.Any) -> OrchestratorConfig:
    """
    Resolve an orchestrator config from an optional base and overrides.

    Raises
    ------
    ConfigurationError
        If an override is unknown or invalid.
    """
    try:
        if config is None:
            return OrchestratorConfig(**overrides)
        if not overrides:
            return config
        return OrchestratorConfig(**{**config.model_dump(), **overrides})
    except ValidationError as error:
        raise ConfigurationError(f"Invalid orchestrator configuration: {error}") from error


def build_options(**options: t.Any) -> RequestOptions:
    """
    Validate facade options.

    Raises
    ------
    ConfigurationError
        If an option is unknown or invalid.
    """
    try:
        return RequestOptions(**options)
    except ValidationError as error:
        raise ConfigurationError(f"Invalid request options: {error}") from error


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def config_from_env(environ: t.Mapping[str, str] | None = None) -> OrchestratorConfig:
    """
    Build a config from ``REQFLOW_*`` environment variables.

    Parameters
    ----------
    environ : typing.Mapping[str, str] | None, optional
        Environment mapping. Defaults to ``os.environ``.

    Returns
    -------
    OrchestratorConfig
        Validated config. Unset variables keep their defaults.
    """
    environ = os.environ if environ is None else environ
    values: dict[str, t.Any] = {}
    for name in OrchestratorConfig.model_fields:
        raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is None or name == "default_headers":
            continue
        if name in {"cacheable_verbs", "ignored_key_params"}:
            values[name] = _split_list(raw.upper() if name == "cacheable_verbs" else raw)
        elif raw.strip().lower() in {"", "none"}:
            values[name] = None
        else:
            values[name] = raw
    return build_config(**values)
