"""Configuration system for the ingestion pipeline."""

from __future__ import annotations

import os
from collections.abc import Mapping, Sequence
from enum import Enum
from functools import lru_cache
from typing import Any

from pydantic import BaseModel, Field, SecretStr, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Deployment environments supported by the pipeline."""

    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class TelemetrySettings(BaseModel):
    """Configuration block for OpenTelemetry spans."""

    enabled: bool = Field(default=True, description="Emit spans around stages and graph phases")
    tracer_name: str = Field(default="enliterator.pipeline")


class LoggingSettings(BaseModel):
    """Structured logging configuration."""

    level: str = Field(default="INFO", description="Log level for application output")
    scrub_fields: Sequence[str] = Field(
        default_factory=lambda: ["password", "api_key", "token", "secret", "authorization"],
        description="Fields that should be redacted in logs",
    )


class MetricsSettings(BaseModel):
    """Prometheus metrics configuration."""

    enabled: bool = True
    port: int = Field(default=9108, ge=0, le=65535, description="Port for the metrics exporter")


class Neo4jSettings(BaseModel):
    """Graph database connection and retry configuration."""

    uri: str = Field(default="bolt://localhost:7687")
    username: str = Field(default="neo4j")
    password: SecretStr = Field(default=SecretStr("neo4j"))
    database_prefix: str = Field(
        default="enliterator-",
        description="Prefix of the per-batch database name",
    )
    per_batch_databases: bool = Field(
        default=True,
        description="Create one database per batch; disable for single-database servers",
    )
    max_retries: int = Field(default=3, ge=1)
    retry_base_seconds: float = Field(default=0.5, gt=0)
    retry_max_seconds: float = Field(default=8.0, gt=0)
    schema_settle_seconds: int = Field(
        default=30,
        ge=0,
        description="Seconds to wait for new indexes to come online after the schema phase",
    )


class TriageSettings(BaseModel):
    """Rights triage thresholds."""

    min_confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    failed_ratio: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Batch is triage_failed when failed items exceed this share",
    )
    needs_review_ratio: float = Field(
        default=0.8,
        ge=0.0,
        le=1.0,
        description="Batch needs review when quarantined items exceed this share",
    )


class GraphSettings(BaseModel):
    """Graph assembly behaviour."""

    min_nodes_for_density_check: int = Field(default=3, ge=1)


class EmbeddingSettings(BaseModel):
    """Embedding provider and batch monitor configuration."""

    base_url: str = Field(default="https://api.openai.com/v1")
    api_key: SecretStr | None = Field(default=None)
    model: str = Field(default="text-embedding-3-small")
    dimensions: int = Field(default=1536, gt=0)
    completion_window: str = Field(default="24h")
    timeout_seconds: float = Field(default=60.0, gt=0)
    max_requests_per_job: int = Field(default=50_000, ge=1)
    validating_delay_seconds: float = Field(default=60.0, gt=0)
    business_hours_interval_seconds: float = Field(default=15 * 60, gt=0)
    off_hours_interval_seconds: float = Field(default=30 * 60, gt=0)
    business_hours_start: int = Field(default=7, ge=0, le=23)
    business_hours_end: int = Field(
        default=20,
        ge=1,
        le=24,
        description="First hour (exclusive) after the business window",
    )
    max_poll_failures: int = Field(default=5, ge=1)
    retry_base_seconds: float = Field(default=30.0, gt=0)
    http_retries: int = Field(default=3, ge=1)

    @model_validator(mode="after")
    def _validate_window(self) -> EmbeddingSettings:
        if self.business_hours_start >= self.business_hours_end:
            raise ValueError("business_hours_start must precede business_hours_end")
        return self


class WorkerSettings(BaseModel):
    """Worker pool configuration."""

    max_workers: int = Field(default=4, ge=1)
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    busy_retry_seconds: float = Field(default=5.0, gt=0)


class AppSettings(BaseSettings):
    """Top-level application settings."""

    environment: Environment = Environment.DEV
    debug: bool = False
    service_name: str = "enliterator"
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    neo4j: Neo4jSettings = Field(default_factory=Neo4jSettings)
    triage: TriageSettings = Field(default_factory=TriageSettings)
    graph: GraphSettings = Field(default_factory=GraphSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)

    model_config = SettingsConfigDict(env_prefix="EK_", env_nested_delimiter="__")


ENVIRONMENT_DEFAULTS: Mapping[Environment, dict[str, Any]] = {
    Environment.DEV: {
        "debug": True,
        "logging": {"level": "DEBUG"},
        "worker": {"max_workers": 2},
    },
    Environment.STAGING: {
        "metrics": {"enabled": True},
    },
    Environment.PROD: {
        "worker": {"max_workers": 8},
        "neo4j": {"max_retries": 5},
    },
}


def _deep_update(target: dict[str, Any], updates: Mapping[str, Any]) -> dict[str, Any]:
    for key, value in updates.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            target[key] = _deep_update(dict(current), value)
        else:
            target[key] = value
    return target


def load_settings(environment: str | None = None) -> AppSettings:
    """Load application settings with environment specific defaults applied.

    Environment defaults only fill values that were not provided explicitly
    through ``EK_`` variables.
    """
    env_value = (environment or os.getenv("EK_ENVIRONMENT", "dev")).lower()
    env = Environment(env_value)
    try:
        base_settings = AppSettings()
    except ValidationError as err:
        raise RuntimeError(f"Invalid configuration: {err}") from err
    explicit = base_settings.model_dump(exclude_unset=True)
    merged = _deep_update(AppSettings.model_construct().model_dump(), ENVIRONMENT_DEFAULTS.get(env, {}))
    merged = _deep_update(merged, explicit)
    merged["environment"] = env
    return AppSettings.model_validate(merged)


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Cached accessor used by production code."""
    return load_settings()


__all__ = [
    "AppSettings",
    "EmbeddingSettings",
    "Environment",
    "GraphSettings",
    "LoggingSettings",
    "MetricsSettings",
    "Neo4jSettings",
    "TelemetrySettings",
    "TriageSettings",
    "WorkerSettings",
    "get_settings",
    "load_settings",
]
