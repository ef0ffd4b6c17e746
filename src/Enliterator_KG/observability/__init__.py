"""Observability helpers: Prometheus metrics and OpenTelemetry spans."""

from .tracing import pipeline_span

__all__ = ["pipeline_span"]
