"""Lightweight configuration package exports."""

from __future__ import annotations

from .settings import (
    AppSettings,
    EmbeddingSettings,
    Environment,
    GraphSettings,
    LoggingSettings,
    MetricsSettings,
    Neo4jSettings,
    TelemetrySettings,
    TriageSettings,
    WorkerSettings,
    get_settings,
    load_settings,
)

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
