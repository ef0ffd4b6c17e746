"""Asynchronous embedding of graph-assembled items."""

from .builder import EmbeddingBatchBuilder
from .fallback import FallbackSummary, SynchronousFallback
from .monitor import CheckOutcome, EmbeddingBatchMonitor
from .provider import (
    BatchJobStatus,
    EmbeddingProvider,
    EmbeddingRequest,
    OpenAIEmbeddingProvider,
    parse_error_ids,
    parse_output_lines,
)

__all__ = [
    "BatchJobStatus",
    "CheckOutcome",
    "EmbeddingBatchBuilder",
    "EmbeddingBatchMonitor",
    "EmbeddingProvider",
    "EmbeddingRequest",
    "FallbackSummary",
    "OpenAIEmbeddingProvider",
    "SynchronousFallback",
    "parse_error_ids",
    "parse_output_lines",
]
