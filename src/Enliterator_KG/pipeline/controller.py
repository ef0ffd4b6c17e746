"""Batch controller: stage ordering, per-batch exclusion and operator actions.

Key Responsibilities:
    - Create batches and ingest their sources idempotently
    - Enforce the strict stage order of a batch and hold a per-batch lock so
      that at most one unit of work runs for a batch at a time
    - Record fatal stage errors on the batch and re-raise them
    - Drive a batch through consecutive stages until it pauses, needs
      review, waits on embeddings or completes
    - Serve status views, logs, pause/resume and failed-item retries

Collaborators:
    - Upstream: CLI, pipeline worker task handlers, embedding monitor callback
    - Downstream: :class:`StageRunner`, external stage handlers, pipeline store

Side Effects:
    - Batch status transitions, operator logs, Prometheus gauges and spans

Thread Safety:
    - Thread-safe: per-batch locks are created under a guard lock and taken
      without blocking; contention raises :class:`BatchBusyError`
"""

from __future__ import annotations

# ==============================================================================
# IMPORTS
# ==============================================================================
import threading
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

import structlog

from Enliterator_KG.observability.metrics import ACTIVE_BATCHES
from Enliterator_KG.observability.tracing import pipeline_span
from Enliterator_KG.utils.logging import bind_pipeline_context

from .collaborators import ExternalStageHandler, ExternalStageOutcome, StageContext
from .errors import BatchBusyError, PipelineError, StageOrderError, StoreError
from .models import Batch, BatchStatus, ItemStage, LogEntry, LogLevel, PipelineStage
from .stages import StageReport, StageRunner, stage_counts
from .store import PipelineStore

logger = structlog.get_logger(__name__)

REVIEW_APPROVED = "review_approved"
NO_PUBLISHABLE_ITEMS = "no_publishable_items"


# ==============================================================================
# VIEWS AND INPUTS
# ==============================================================================


@dataclass(slots=True, frozen=True)
class IngestSource:
    pointer: str
    content: str | None = None
    media_type: str = "text/plain"
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class IngestReport:
    created: int
    existing: int
    item_ids: tuple[str, ...]


@dataclass(slots=True, frozen=True)
class BatchStatusView:
    """Operator-facing summary of one batch."""

    batch_id: str
    name: str
    stage: PipelineStage | None
    status: BatchStatus
    counts: Mapping[str, Mapping[str, int]]
    literacy_score: float | None
    quality_warnings: tuple[dict[str, Any], ...]
    paused: bool
    failed_stage: PipelineStage | None = None
    error: Mapping[str, Any] | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "name": self.name,
            "stage": self.stage.value if self.stage else None,
            "status": self.status.value,
            "counts": {key: dict(value) for key, value in self.counts.items()},
            "literacy_score": self.literacy_score,
            "quality_warnings": [dict(warning) for warning in self.quality_warnings],
            "paused": self.paused,
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
            "error": dict(self.error) if self.error else None,
        }


class NoopStageHandler:
    """Completes a stage that has no handler configured."""

    def run(self, batch: Batch, context: StageContext) -> ExternalStageOutcome:
        return ExternalStageOutcome(metrics={"handler": "noop"})


# ==============================================================================
# CONTROLLER
# ==============================================================================


class BatchController:
    """Owns the lifecycle of every batch.

    Example:
        >>> controller = BatchController(store, runner)
        >>> batch = controller.create_batch("field notes")
        >>> controller.ingest(batch.id, [IngestSource("a.txt", "Coffee shops host ideas")])
        >>> controller.run(batch.id)
    """

    def __init__(
        self,
        store: PipelineStore,
        runner: StageRunner,
        *,
        handlers: Mapping[PipelineStage, ExternalStageHandler] | None = None,
        actor_id: str = "system",
    ) -> None:
        self.store = store
        self.runner = runner
        self.handlers = dict(handlers or {})
        self.actor_id = actor_id
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    # ------------------------------------------------------------------
    # Exclusion
    # ------------------------------------------------------------------
    @contextmanager
    def _batch_lock(self, batch_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(batch_id, threading.Lock())
        if not lock.acquire(blocking=False):
            raise BatchBusyError(f"Batch {batch_id} is busy", instance=f"batch/{batch_id}")
        ACTIVE_BATCHES.inc()
        try:
            yield
        finally:
            ACTIVE_BATCHES.dec()
            lock.release()

    def _context(self, batch_id: str, stage: PipelineStage, context: StageContext | None) -> StageContext:
        if context is not None:
            return context
        return StageContext(
            batch_id=batch_id,
            stage=stage,
            actor_id=self.actor_id,
            correlation_id=uuid.uuid4().hex,
        )

    # ------------------------------------------------------------------
    # Batches and intake
    # ------------------------------------------------------------------
    def create_batch(self, name: str, *, metadata: Mapping[str, Any] | None = None) -> Batch:
        batch = self.store.create_batch(name, metadata=metadata)
        self.store.append_log(batch.id, "pipeline", f"Batch '{name}' created")
        return batch

    def ingest(self, batch_id: str, sources: Iterable[IngestSource]) -> IngestReport:
        """Run the intake stage over ``sources``; re-ingesting the same content is a no-op."""
        stage = PipelineStage.INTAKE
        sources = list(sources)
        with self._batch_lock(batch_id):
            batch = self.store.get_batch(batch_id)
            self._check_order(batch, stage, rerun=True)
            context = self._context(batch_id, stage, None)
            with self._unit_of_work(batch, stage, context):
                created = 0
                item_ids: list[str] = []
                for source in sources:
                    item, was_created = self.store.idempotent_create_item(
                        batch_id,
                        pointer=source.pointer,
                        content=source.content,
                        media_type=source.media_type,
                        source_metadata=source.metadata,
                    )
                    created += int(was_created)
                    item_ids.append(item.id)
                report = IngestReport(created, len(sources) - created, tuple(item_ids))
                self.store.transition_batch(
                    batch_id,
                    stage.completed,
                    expected=stage.in_progress,
                    reason=f"ingested {created} new items",
                    statistics={stage.value: {"created": created, "existing": report.existing}},
                )
        self.store.append_log(
            batch_id, stage.log_label, f"Intake created {created} items, {report.existing} already known"
        )
        return report

    # ------------------------------------------------------------------
    # Stage execution
    # ------------------------------------------------------------------
    def _check_order(self, batch: Batch, stage: PipelineStage, *, rerun: bool = False) -> None:
        if batch.paused:
            raise StageOrderError(f"Batch {batch.id} is paused", instance=f"batch/{batch.id}")
        allowed = {stage.in_progress, stage.failed}
        if rerun:
            allowed.add(stage.completed)
        allowed.add(stage.previous.completed if stage.previous else BatchStatus.PENDING)
        if stage is PipelineStage.LEXICON and batch.metadata.get(REVIEW_APPROVED):
            allowed.add(BatchStatus.TRIAGE_NEEDS_REVIEW)
        if batch.status not in allowed:
            raise StageOrderError(
                f"Cannot start {stage.value} while batch {batch.id} is {batch.status.value}",
                instance=f"batch/{batch.id}",
                extra={"allowed": sorted(status.value for status in allowed)},
            )

    @contextmanager
    def _unit_of_work(self, batch: Batch, stage: PipelineStage, context: StageContext) -> Iterator[None]:
        with bind_pipeline_context(
            batch_id=batch.id,
            actor_id=context.actor_id,
            correlation_id=context.correlation_id,
            stage=stage.value,
        ), pipeline_span("pipeline.advance", batch_id=batch.id, stage=stage.value):
            if batch.status is not stage.in_progress:
                self.store.transition_batch(
                    batch.id, stage.in_progress, expected=batch.status, reason=f"{stage.value} started"
                )
            self.store.append_log(batch.id, "pipeline", f"Stage {stage.number} ({stage.value}) started")
            logger.info("pipeline.batch.stage_started", stage=stage.value)
            try:
                yield
            except Exception as exc:
                self._record_failure(batch.id, stage, exc)
                raise

    def advance(
        self,
        batch_id: str,
        stage: PipelineStage,
        context: StageContext | None = None,
    ) -> StageReport | ExternalStageOutcome:
        """Run exactly one stage for a batch.

        Raises:
            BatchBusyError: Another unit of work holds the batch.
            StageOrderError: The batch is not ready for ``stage``.
        """
        with self._batch_lock(batch_id):
            batch = self.store.get_batch(batch_id)
            self._check_order(batch, stage)
            context = self._context(batch_id, stage, context)
            with self._unit_of_work(batch, stage, context):
                if self.runner.handles(stage):
                    result: StageReport | ExternalStageOutcome = self.runner.advance(batch_id, stage, context)
                else:
                    result = self._run_external(batch_id, stage, context)
            self._after_stage(batch_id, stage)
            return result

    def _run_external(self, batch_id: str, stage: PipelineStage, context: StageContext) -> ExternalStageOutcome:
        handler = self.handlers.get(stage) or NoopStageHandler()
        outcome = handler.run(self.store.get_batch(batch_id), context)
        if outcome.literacy_score is not None:
            self.store.update_batch(batch_id, literacy_score=outcome.literacy_score)
        self.store.transition_batch(
            batch_id,
            stage.completed,
            expected=stage.in_progress,
            reason=f"{stage.value} handler finished",
            statistics={stage.value: dict(outcome.metrics)},
        )
        self.store.append_log(batch_id, stage.log_label, f"Finished {stage.value}")
        return outcome

    def _after_stage(self, batch_id: str, stage: PipelineStage) -> None:
        batch = self.store.get_batch(batch_id)
        if batch.status.is_failure:
            self.store.update_batch(batch_id, failed_stage=stage)
            self.store.append_log(
                batch_id, "errors", f"Stage {stage.value} finished as {batch.status.value}", level=LogLevel.ERROR
            )
            return
        if batch.failed_stage is not None or batch.error is not None:
            self.store.update_batch(batch_id, failed_stage=None, error=None)
        if stage is PipelineStage.RIGHTS:
            records = self.store.list_rights_records(batch_id)
            if records and not any(record.publishability for record in records):
                self.store.add_quality_warning(
                    batch_id,
                    NO_PUBLISHABLE_ITEMS,
                    "No item in the batch carries publishable rights",
                    rights_records=len(records),
                )
        if stage is PipelineStage.NAVIGATOR and batch.status is BatchStatus.NAVIGATOR_COMPLETED:
            self.store.transition_batch(
                batch_id, BatchStatus.COMPLETED, expected=BatchStatus.NAVIGATOR_COMPLETED, reason="pipeline complete"
            )
            self.store.append_log(batch_id, "pipeline", "Pipeline completed")

    def _record_failure(self, batch_id: str, stage: PipelineStage, exc: Exception) -> None:
        if isinstance(exc, PipelineError):
            problem = exc.report.as_dict()
        else:
            problem = {"title": type(exc).__name__, "status": 500, "detail": str(exc)}
        try:
            self.store.transition_batch(batch_id, stage.failed, reason=str(exc))
        except StoreError as store_exc:
            logger.error("pipeline.batch.failure_not_recorded", stage=stage.value, error=str(store_exc))
        self.store.update_batch(batch_id, failed_stage=stage, error=problem)
        self.store.append_log(
            batch_id,
            "errors",
            f"Stage {stage.number} ({stage.value}) failed: {exc}",
            level=LogLevel.ERROR,
            error_type=type(exc).__name__,
        )
        logger.error(
            "pipeline.batch.stage_failed",
            stage=stage.value,
            error=str(exc),
            error_type=type(exc).__name__,
        )

    # ------------------------------------------------------------------
    # Driving a batch
    # ------------------------------------------------------------------
    def next_stage(self, batch: Batch) -> PipelineStage | None:
        """Stage ``run`` would start next, ``None`` when the batch must wait."""
        status = batch.status
        if status is BatchStatus.PENDING:
            return PipelineStage.INTAKE
        if status is BatchStatus.TRIAGE_NEEDS_REVIEW:
            return PipelineStage.LEXICON if batch.metadata.get(REVIEW_APPROVED) else None
        stage = status.stage
        if stage is not None and status is stage.completed:
            return stage.next
        return None

    def run(self, batch_id: str) -> BatchStatus:
        """Advance stage after stage; returns the status the batch stopped at."""
        while True:
            batch = self.store.get_batch(batch_id)
            if batch.paused:
                logger.info("pipeline.batch.run_paused", batch_id=batch_id)
                return batch.status
            stage = self.next_stage(batch)
            if stage is None:
                return batch.status
            result = self.advance(batch_id, stage)
            batch = self.store.get_batch(batch_id)
            if batch.status is BatchStatus.TRIAGE_NEEDS_REVIEW and not batch.metadata.get(REVIEW_APPROVED):
                self.pause(batch_id, reason="triage needs review")
                return batch.status
            if isinstance(result, StageReport) and result.deferred:
                self.store.append_log(batch_id, "pipeline", f"Waiting on asynchronous {stage.value} work")
                return batch.status

    def on_embeddings_complete(self, batch_id: str) -> BatchStatus:
        batch = self.store.get_batch(batch_id)
        if batch.status is not BatchStatus.EMBEDDINGS_COMPLETED:
            logger.warning("pipeline.batch.unexpected_embeddings_callback", batch_id=batch_id, status=batch.status.value)
            return batch.status
        return self.run(batch_id)

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------
    def pause(self, batch_id: str, *, reason: str | None = None) -> BatchStatusView:
        self.store.update_batch(batch_id, paused=True)
        self.store.append_log(batch_id, "pipeline", f"Batch paused{': ' + reason if reason else ''}")
        logger.info("pipeline.batch.paused", batch_id=batch_id, reason=reason)
        return self.get_batch_status(batch_id)

    def resume(self, batch_id: str) -> BatchStatus:
        """Clear the pause, release stale claims and re-enter the recorded stage."""
        with self._batch_lock(batch_id):
            batch = self.store.update_batch(batch_id, paused=False)
            stage = batch.failed_stage or batch.status.stage
            reenter: PipelineStage | None = None
            if batch.status is BatchStatus.TRIAGE_NEEDS_REVIEW:
                self.store.update_batch(batch_id, metadata={REVIEW_APPROVED: True})
            elif stage is not None and batch.status in (stage.in_progress, stage.failed):
                reenter = stage
                if stage.item_stage is not None and not self._awaiting_embeddings(batch_id, stage):
                    released = self.store.release_claims(batch_id, stage.item_stage, reason="released on resume")
                    self.store.append_log(
                        batch_id, "pipeline", f"Released {released} stale {stage.value} claims on resume"
                    )
                elif stage.item_stage is not None and not self._has_pending(batch_id, stage.item_stage):
                    reenter = None
                    if batch.status is stage.failed:
                        self.store.transition_batch(
                            batch_id, stage.in_progress, expected=stage.failed, reason="waiting on embedding jobs"
                        )
            self.store.append_log(batch_id, "pipeline", "Batch resumed")
            logger.info("pipeline.batch.resumed", batch_id=batch_id, stage=stage.value if stage else None)
        if reenter is not None:
            self.advance(batch_id, reenter)
        return self.run(batch_id)

    def _awaiting_embeddings(self, batch_id: str, stage: PipelineStage) -> bool:
        if stage is not PipelineStage.EMBEDDINGS:
            return False
        return any(not job.is_terminal for job in self.store.list_embedding_jobs(batch_id))

    def _has_pending(self, batch_id: str, item_stage: ItemStage) -> bool:
        return any(item.is_eligible(item_stage) for item in self.store.list_items(batch_id))

    def retry_failed_items(self, batch_id: str, stage: PipelineStage) -> int:
        """Return failed items of ``stage`` to pending for another attempt."""
        if stage.item_stage is None:
            raise StageOrderError(f"Stage {stage.value} does not track items")
        reset = self.store.reset_failed(batch_id, stage.item_stage)
        self.store.append_log(batch_id, "pipeline", f"Reset {reset} failed {stage.value} items to pending")
        return reset

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    def get_batch_status(self, batch_id: str) -> BatchStatusView:
        batch = self.store.get_batch(batch_id)
        items = self.store.list_items(batch_id)
        return BatchStatusView(
            batch_id=batch.id,
            name=batch.name,
            stage=batch.status.stage,
            status=batch.status,
            counts={item_stage.value: stage_counts(items, item_stage) for item_stage in ItemStage},
            literacy_score=batch.literacy_score,
            quality_warnings=tuple(batch.quality_warnings),
            paused=batch.paused,
            failed_stage=batch.failed_stage,
            error=batch.error,
        )

    def list_logs(self, batch_id: str, *, label: str | None = None) -> list[LogEntry]:
        return self.store.list_logs(batch_id, label=label)


__all__ = [
    "BatchController",
    "BatchStatusView",
    "IngestReport",
    "IngestSource",
    "NoopStageHandler",
    "REVIEW_APPROVED",
]
