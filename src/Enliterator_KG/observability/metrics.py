"""Prometheus metrics for the ingestion pipeline.

Key Responsibilities:
    - Define Prometheus metrics for stage execution, graph assembly and the
      embedding batch monitor
    - Provide small helper functions so call-sites never touch label plumbing

Collaborators:
    - Upstream: Stage runner, batch controller, graph assembly engine,
      embedding monitor and fallback
    - Downstream: Prometheus scrape endpoint started by the worker CLI

Thread Safety:
    - Thread-safe: prometheus_client metric operations are atomic
"""

# ==============================================================================
# IMPORTS
# ==============================================================================

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, start_http_server

# ==============================================================================
# METRIC DEFINITIONS
# ==============================================================================

STAGE_ITEMS_TOTAL = Counter(
    "enliterator_stage_items_total",
    "Items processed by the stage runner",
    ["stage", "outcome"],
)

STAGE_DURATION_SECONDS = Histogram(
    "enliterator_stage_duration_seconds",
    "Wall clock duration of a stage run over one batch",
    ["stage"],
    buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0, 3600.0],
)

BATCH_TRANSITIONS_TOTAL = Counter(
    "enliterator_batch_transitions_total",
    "Batch status transitions written by the controller",
    ["status"],
)

ACTIVE_BATCHES = Gauge(
    "enliterator_active_batches",
    "Batches currently holding the per-batch work lock",
)

GRAPH_WRITES_TOTAL = Counter(
    "enliterator_graph_writes_total",
    "Nodes and edges written during graph assembly",
    ["kind"],
)

GRAPH_MAINTENANCE_TOTAL = Counter(
    "enliterator_graph_maintenance_total",
    "Nodes merged or removed by graph maintenance passes",
    ["operation"],
)

EMBEDDING_POLLS_TOTAL = Counter(
    "enliterator_embedding_polls_total",
    "Embedding batch job status checks by observed status",
    ["status"],
)

EMBEDDING_ITEMS_TOTAL = Counter(
    "enliterator_embedding_items_total",
    "Embeddings stored by source",
    ["source"],
)

QUALITY_WARNINGS_TOTAL = Counter(
    "enliterator_quality_warnings_total",
    "Non-blocking quality warnings recorded on batches",
    ["code"],
)

# ==============================================================================
# HELPERS
# ==============================================================================


def record_stage_item(stage: str, outcome: str) -> None:
    STAGE_ITEMS_TOTAL.labels(stage=stage, outcome=outcome).inc()


def observe_stage_duration(stage: str, duration_seconds: float) -> None:
    STAGE_DURATION_SECONDS.labels(stage=stage).observe(max(duration_seconds, 0.0))


def record_batch_transition(status: str) -> None:
    BATCH_TRANSITIONS_TOTAL.labels(status=status).inc()


def record_graph_writes(*, nodes: int = 0, edges: int = 0) -> None:
    if nodes:
        GRAPH_WRITES_TOTAL.labels(kind="node").inc(nodes)
    if edges:
        GRAPH_WRITES_TOTAL.labels(kind="edge").inc(edges)


def record_graph_maintenance(operation: str, count: int) -> None:
    if count:
        GRAPH_MAINTENANCE_TOTAL.labels(operation=operation).inc(count)


def record_embedding_poll(status: str) -> None:
    EMBEDDING_POLLS_TOTAL.labels(status=status).inc()


def record_embeddings_stored(source: str, count: int = 1) -> None:
    if count:
        EMBEDDING_ITEMS_TOTAL.labels(source=source).inc(count)


def record_quality_warning(code: str) -> None:
    QUALITY_WARNINGS_TOTAL.labels(code=code).inc()


def start_metrics_server(port: int) -> None:
    """Expose the default registry over HTTP for Prometheus scraping."""
    start_http_server(port)


__all__ = [
    "ACTIVE_BATCHES",
    "observe_stage_duration",
    "record_batch_transition",
    "record_embedding_poll",
    "record_embeddings_stored",
    "record_graph_maintenance",
    "record_graph_writes",
    "record_quality_warning",
    "record_stage_item",
    "start_metrics_server",
]
