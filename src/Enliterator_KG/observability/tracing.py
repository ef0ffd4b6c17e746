"""OpenTelemetry span helpers for stage execution and graph phases.

Spans are created through the global tracer provider; without a configured
SDK the OpenTelemetry API returns non-recording spans. Exceptions raised in
the block are recorded on the span and mark it as errored.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace

tracer = trace.get_tracer("Enliterator_KG.pipeline")


@contextmanager
def pipeline_span(name: str, **attributes: Any) -> Iterator[trace.Span]:
    with tracer.start_as_current_span(name) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f"enliterator.{key}", value)
        yield span


__all__ = ["pipeline_span", "tracer"]
