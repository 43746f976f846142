"""Pydantic configuration models for the fact engine."""

import os
from pathlib import Path
from typing import Any, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator

from facts.errors import ConfigurationError
from facts.models import parse_retention
from facts.registry import parse_cadence

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def validate_cron(expr: str) -> str:
    """Validate a five-field cron expression."""
    try:
        parse_cadence(expr)
    except ConfigurationError as e:
        raise ValueError(str(e))
    return expr


def _expand_env(value: Optional[str]) -> Optional[str]:
    """Expand a ``${VAR}`` placeholder."""
    if value and value.startswith("${") and value.endswith("}"):
        return os.getenv(value[2:-1], "")
    return value


class PathsConfig(BaseModel):
    """File paths configuration."""

    db_path: Path = Path("~/.facts/facts.db")

    @model_validator(mode="after")
    def expand_paths(self):
        """Expand ~ in all paths."""
        self.db_path = self.db_path.expanduser()
        return self


class SchedulerConfig(BaseModel):
    """Scheduler and worker pool configuration."""

    timezone: str = "UTC"
    max_workers: int = Field(default=10, ge=1)
    default_timeout_seconds: float = Field(default=300.0, gt=0)
    misfire_grace_seconds: int = Field(default=60, ge=1)
    retention_sweep_cadence: Optional[str] = "17 * * * *"

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown time zone: {v!r}")
        return v

    @field_validator("retention_sweep_cadence")
    @classmethod
    def validate_sweep(cls, v: Optional[str]) -> Optional[str]:
        return validate_cron(v) if v else None


class CoordinationConfig(BaseModel):
    """Which instance runs retrievers.

    ``static`` trusts ``main_instance``; ``lease`` takes a per-retriever lease in the
    shared database so any number of instances can run side by side.
    """

    mode: Literal["static", "lease"] = "static"
    main_instance: bool = True
    instance_id: Optional[str] = None


class CatalogConfig(BaseModel):
    """Catalog collaborator configuration."""

    base_url: Optional[str] = None
    token: Optional[str] = None
    timeout_seconds: float = 30.0
    static_entities: list[dict] = Field(default_factory=list)

    @model_validator(mode="after")
    def expand_env_vars(self):
        """Expand ${VAR} pattern in token."""
        self.token = _expand_env(self.token)
        return self


class RetrieverOverride(BaseModel):
    """Per-retriever overrides applied on top of the registration."""

    enabled: bool = True
    cadence: Optional[str] = None
    retention: Optional[Any] = None
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    entity_filter: Optional[Any] = None

    @field_validator("cadence")
    @classmethod
    def validate_cadence(cls, v: Optional[str]) -> Optional[str]:
        return validate_cron(v) if v else None

    @field_validator("retention")
    @classmethod
    def validate_retention(cls, v: Any) -> Any:
        try:
            parse_retention(v)
        except ConfigurationError as e:
            raise ValueError(str(e))
        return v


class RetrieversConfig(BaseModel):
    """Which registrations to load, and how to adjust them."""

    builtin: bool = True
    modules: list[str] = Field(default_factory=list)
    overrides: dict[str, RetrieverOverride] = Field(default_factory=dict)


class RetryConfig(BaseModel):
    """Retry/backoff configuration."""

    max_attempts: int = 3
    min_wait: float = 2.0
    max_wait: float = 10.0


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    json_mode: bool = False

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v_upper = v.upper()
        if v_upper not in VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log level: {v}. Must be one of {VALID_LOG_LEVELS}")
        return v_upper


class FactsConfig(BaseModel):
    """Main configuration model."""

    paths: PathsConfig = Field(default_factory=PathsConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    coordination: CoordinationConfig = Field(default_factory=CoordinationConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    retrievers: RetrieversConfig = Field(default_factory=RetrieversConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    # Read-only settings handed to every handler via HandlerContext.config
    handler_config: dict = Field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "FactsConfig":
        """Create config from dict."""
        return cls.model_validate(data)
