"""Error taxonomy of the ingestion pipeline.

Three classes of failure are raised:

* invariant violations abort the stage and mark the batch failed,
* infrastructure errors are retried and surface as batch failure once the
  retry budget is exhausted,
* a busy batch is requeued by the worker.

Item-level failures are recorded on the item and never raised past the
stage; quality warnings are recorded on the batch.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True, frozen=True)
class ErrorReport:
    """Operator-facing description of a failure, stored on the failed batch."""

    title: str
    status: int
    code: str
    detail: str | None = None
    instance: str | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"title": self.title, "status": self.status, "code": self.code}
        if self.detail is not None:
            payload["detail"] = self.detail
        if self.instance is not None:
            payload["instance"] = self.instance
        if self.extra:
            payload["extra"] = dict(self.extra)
        return payload


class PipelineError(RuntimeError):
    """Base class for all pipeline errors; ``report`` is what operators see."""

    status: int = 500
    code: str = "pipeline_error"

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        detail: str | None = None,
        instance: str | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.report = ErrorReport(
            title=message,
            status=status if status is not None else self.status,
            code=self.code,
            detail=detail,
            instance=instance,
            extra=dict(extra or {}),
        )


# ==============================================================================
# INVARIANT VIOLATIONS
# ==============================================================================


class InvariantViolation(PipelineError):
    """Fatal for the running stage: the batch is marked failed."""

    code = "invariant_violation"


class StageInvariantError(InvariantViolation):
    """A stage had eligible items but processed none of them."""


class MissingRightsError(InvariantViolation):
    """A graph-eligible fact could not be resolved to any rights record."""

    code = "missing_rights"


class ItemTransitionError(InvariantViolation):
    """An item state change was requested that the state machine forbids."""


class StageOrderError(InvariantViolation):
    """A stage was requested before its predecessor succeeded for the batch."""

    status = 409
    code = "stage_order"


class StoreError(InvariantViolation):
    """A store row was missing or a compare-and-set precondition failed."""

    status = 404
    code = "store"


# ==============================================================================
# INFRASTRUCTURE
# ==============================================================================


class InfrastructureError(PipelineError):
    """An external system was unavailable; the operation may be retried."""

    status = 503
    code = "infrastructure"


class GraphStoreUnavailableError(InfrastructureError):
    """The graph database could not be reached or rejected a transaction."""


class EmbeddingProviderError(InfrastructureError):
    """The embedding provider returned an error or an unusable payload."""


# ==============================================================================
# CONCURRENCY
# ==============================================================================


class BatchBusyError(PipelineError):
    """Another unit of work currently holds the batch."""

    status = 409
    code = "batch_busy"


__all__ = [
    "BatchBusyError",
    "EmbeddingProviderError",
    "ErrorReport",
    "GraphStoreUnavailableError",
    "InfrastructureError",
    "InvariantViolation",
    "ItemTransitionError",
    "MissingRightsError",
    "PipelineError",
    "StageInvariantError",
    "StageOrderError",
    "StoreError",
]
