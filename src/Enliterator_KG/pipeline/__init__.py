"""Batch pipeline: item state machine, stage runner and batch controller.

Only the data model, errors and store are exported here. ``stages`` and
``controller`` depend on the graph schema and are imported from their
modules directly to keep ``Enliterator_KG.kg`` free of import cycles.
"""

from __future__ import annotations

from .errors import (
    BatchBusyError,
    InfrastructureError,
    InvariantViolation,
    PipelineError,
    StageOrderError,
    StoreError,
)
from .models import Batch, BatchStatus, Item, ItemStage, PipelineStage, StageStatus
from .store import InMemoryPipelineStore, PipelineStore

__all__ = [
    "Batch",
    "BatchBusyError",
    "BatchStatus",
    "InMemoryPipelineStore",
    "InfrastructureError",
    "InvariantViolation",
    "Item",
    "ItemStage",
    "PipelineError",
    "PipelineStage",
    "PipelineStore",
    "StageOrderError",
    "StageStatus",
    "StoreError",
]
