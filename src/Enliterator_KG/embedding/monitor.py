"""Embedding batch job monitor.

Each check looks at one provider job and either schedules the next check on
the delayed task queue or settles the job:

========================  ===================================================
Provider status           Action
========================  ===================================================
``validating``            recheck after ``validating_delay_seconds``
``in_progress``,          recheck after the business-hours interval between
``finalizing``            ``business_hours_start`` and ``business_hours_end``
                          local time, the off-hours interval otherwise
``completed``,            store the vectors of the output file, then send the
``failed``, ``expired``   ids of the error file to the synchronous fallback;
                          ids missing from both files are failed. Without an
                          error file every unresolved id falls back
``cancelled``             mark the job's waiting items failed, no recovery
anything else             log and recheck
========================  ===================================================

Provider errors while checking a job or downloading its result files are
retried with exponential backoff until ``max_poll_failures``; after that the
batch is marked ``embeddings_failed``.
Once every job of a batch is terminal and no item is still waiting, the batch
moves to ``embeddings_completed``.
"""

from __future__ import annotations

# ==============================================================================
# IMPORTS
# ==============================================================================
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog

from Enliterator_KG.config.settings import EmbeddingSettings
from Enliterator_KG.observability.metrics import record_embedding_poll, record_embeddings_stored
from Enliterator_KG.observability.tracing import pipeline_span
from Enliterator_KG.orchestration.queue import FALLBACK_TASK, MONITOR_TASK, DelayedTaskQueue
from Enliterator_KG.orchestration.worker import RetryPolicy
from Enliterator_KG.pipeline.errors import EmbeddingProviderError, StoreError
from Enliterator_KG.pipeline.models import (
    BatchStatus,
    EmbeddingJobRef,
    EmbeddingJobStatus,
    EmbeddingSource,
    ItemStage,
    LogLevel,
    PipelineStage,
    StageStatus,
    StoredEmbedding,
)
from Enliterator_KG.pipeline.stages import stage_counts
from Enliterator_KG.pipeline.store import PipelineStore
from Enliterator_KG.utils.identifiers import item_id_from_custom_id

from .builder import LOG_LABEL, settle_item
from .fallback import FallbackSummary, SynchronousFallback
from .provider import BatchJobStatus, EmbeddingProvider, parse_error_ids, parse_output_lines

logger = structlog.get_logger(__name__)

MISSING_FROM_OUTPUT = "missing from batch output"

_FILE_STATUSES = frozenset(
    status.value
    for status in (EmbeddingJobStatus.COMPLETED, EmbeddingJobStatus.FAILED, EmbeddingJobStatus.EXPIRED)
)


@dataclass(slots=True, frozen=True)
class CheckOutcome:
    """What one check observed and when the job is looked at again."""

    job_ref_id: str
    status: str
    next_check_seconds: float | None = None
    fallback_ids: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class _JobFiles:
    output: str | None = None
    errors: str | None = None


# ==============================================================================
# MONITOR
# ==============================================================================


class EmbeddingBatchMonitor:
    """Polls provider jobs through delayed queue tasks.

    Example:
        >>> monitor = EmbeddingBatchMonitor(store, provider, queue, fallback, settings.embedding)
        >>> outcome = monitor.check("ejob-000001")
        >>> outcome.next_check_seconds
        60.0
    """

    def __init__(
        self,
        store: PipelineStore,
        provider: EmbeddingProvider,
        queue: DelayedTaskQueue,
        fallback: SynchronousFallback,
        settings: EmbeddingSettings | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
        on_batch_complete: Callable[[str], None] | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.queue = queue
        self.fallback = fallback
        self.settings = settings or EmbeddingSettings()
        self.clock = clock or datetime.now
        self.on_batch_complete = on_batch_complete
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=self.settings.max_poll_failures,
            base_delay_seconds=self.settings.retry_base_seconds,
        )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def poll_interval(self, moment: datetime | None = None) -> float:
        hour = (moment or self.clock()).hour
        if self.settings.business_hours_start <= hour < self.settings.business_hours_end:
            return self.settings.business_hours_interval_seconds
        return self.settings.off_hours_interval_seconds

    def _schedule(self, ref: EmbeddingJobRef, delay: float) -> None:
        self.queue.publish(
            MONITOR_TASK,
            {"job_ref_id": ref.id, "batch_id": ref.batch_id},
            delay=delay,
            key=ref.batch_id,
        )

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------
    def check(self, job_ref_id: str) -> CheckOutcome:
        ref = self.store.get_embedding_job(job_ref_id)
        if ref.is_terminal:
            logger.debug("embedding.monitor.already_terminal", job_ref_id=job_ref_id, status=ref.status.value)
            return CheckOutcome(job_ref_id, ref.status.value)

        with pipeline_span("embedding.check", batch_id=ref.batch_id, job_ref_id=job_ref_id):
            try:
                remote = self.provider.get_batch(ref.provider_job_id)
                files = self._download(remote)
            except EmbeddingProviderError as exc:
                return self._poll_failed(ref, exc)

            record_embedding_poll(remote.status)
            if ref.poll_failures:
                ref = self.store.update_embedding_job(ref.id, poll_failures=0)
            logger.info(
                "embedding.monitor.checked",
                batch_id=ref.batch_id,
                job_ref_id=ref.id,
                provider_job_id=ref.provider_job_id,
                status=remote.status,
            )
            try:
                status = EmbeddingJobStatus(remote.status)
            except ValueError:
                delay = self.poll_interval()
                logger.warning("embedding.monitor.unknown_status", job_ref_id=ref.id, status=remote.status)
                self._schedule(ref, delay)
                return CheckOutcome(ref.id, remote.status, delay)

            if status is EmbeddingJobStatus.VALIDATING:
                delay = self.settings.validating_delay_seconds
            elif status in (EmbeddingJobStatus.IN_PROGRESS, EmbeddingJobStatus.FINALIZING):
                delay = self.poll_interval()
            elif status is EmbeddingJobStatus.CANCELLED:
                return self._cancelled(ref)
            else:
                return self._settle(ref, remote, status, files)

            self.store.update_embedding_job(ref.id, status=status)
            self._schedule(ref, delay)
            return CheckOutcome(ref.id, status.value, delay)

    def _download(self, remote: BatchJobStatus) -> _JobFiles:
        """Fetch result files of a settled job before anything is written."""
        if remote.status not in _FILE_STATUSES:
            return _JobFiles()
        return _JobFiles(
            output=self.provider.download_file(remote.output_file_id) if remote.output_file_id else None,
            errors=self.provider.download_file(remote.error_file_id) if remote.error_file_id else None,
        )

    def _poll_failed(self, ref: EmbeddingJobRef, exc: EmbeddingProviderError) -> CheckOutcome:
        failures = ref.poll_failures + 1
        record_embedding_poll("error")
        if self.retry_policy.exhausted(failures):
            self.store.update_embedding_job(ref.id, poll_failures=failures, status=EmbeddingJobStatus.FAILED)
            self._fail_batch(ref.batch_id, exc, job_ref_id=ref.id)
            return CheckOutcome(ref.id, EmbeddingJobStatus.FAILED.value)
        delay = self.retry_policy.delay(failures)
        self.store.update_embedding_job(ref.id, poll_failures=failures)
        logger.warning(
            "embedding.monitor.poll_failed",
            job_ref_id=ref.id,
            failures=failures,
            retry_in=round(delay, 2),
            error=str(exc),
        )
        self._schedule(ref, delay)
        return CheckOutcome(ref.id, "poll_error", delay)

    # ------------------------------------------------------------------
    # Terminal statuses
    # ------------------------------------------------------------------
    def _store_output(self, ref: EmbeddingJobRef, content: str | None) -> tuple[list[str], list[str]]:
        """Store the vectors of an output file; returns (resolved, failed) custom ids."""
        if not content:
            return [], []
        results, failed = parse_output_lines(content)
        expected = set(ref.custom_ids)
        resolved: list[str] = []
        for result in results:
            if result.custom_id not in expected:
                logger.warning("embedding.monitor.unexpected_custom_id", custom_id=result.custom_id)
                continue
            item = self.store.get_item(item_id_from_custom_id(result.custom_id))
            self.store.put_embedding(
                StoredEmbedding(
                    content_hash=item.content_hash,
                    vector=result.vector,
                    model=self.provider.model,
                    source=EmbeddingSource.BATCH,
                    item_id=item.id,
                )
            )
            settle_item(self.store, item.id, StageStatus.SUCCESS, metadata={"source": EmbeddingSource.BATCH.value})
            resolved.append(result.custom_id)
        record_embeddings_stored(EmbeddingSource.BATCH.value, len(resolved))
        return resolved, [custom_id for custom_id in failed if custom_id in expected]

    def _settle(
        self,
        ref: EmbeddingJobRef,
        remote: BatchJobStatus,
        status: EmbeddingJobStatus,
        files: _JobFiles,
    ) -> CheckOutcome:
        """Store recovered vectors and route the remaining requests.

        With an error file only the ids it names, plus requests the output
        file reports as failed, go to the synchronous fallback; ids missing
        from both files are failed. Without an error file every unresolved id
        falls back.
        """
        resolved, failed = self._store_output(ref, files.output)
        if files.errors is not None:
            failed.extend(parse_error_ids(files.errors))
            fallback_ids = _pending(failed, resolved)
            missing = _pending(ref.custom_ids, [*resolved, *fallback_ids])
        else:
            fallback_ids = _pending([*failed, *ref.custom_ids], resolved)
            missing = ()
        for custom_id in missing:
            settle_item(self.store, item_id_from_custom_id(custom_id), StageStatus.FAILED, reason=MISSING_FROM_OUTPUT)
        self.store.update_embedding_job(
            ref.id,
            status=status,
            output_file_id=remote.output_file_id,
            error_file_id=remote.error_file_id,
            resolved_custom_ids=resolved,
        )
        level = LogLevel.INFO if status is EmbeddingJobStatus.COMPLETED else LogLevel.WARNING
        self.store.append_log(
            ref.batch_id,
            LOG_LABEL,
            f"Embedding job {ref.provider_job_id} {status.value}: {len(resolved)} embedded, "
            f"{len(fallback_ids)} sent to fallback",
            level=level,
        )
        if missing:
            logger.warning("embedding.monitor.missing_from_output", job_ref_id=ref.id, count=len(missing))
            self.store.append_log(
                ref.batch_id,
                "errors",
                f"Embedding job {ref.provider_job_id}: {len(missing)} requests {MISSING_FROM_OUTPUT}",
                level=LogLevel.ERROR,
            )
        self._enqueue_fallback(ref, fallback_ids)
        self.maybe_complete_batch(ref.batch_id)
        return CheckOutcome(ref.id, status.value, fallback_ids=fallback_ids)

    def _cancelled(self, ref: EmbeddingJobRef) -> CheckOutcome:
        failed = 0
        for custom_id in ref.custom_ids:
            item_id = item_id_from_custom_id(custom_id)
            failed += settle_item(self.store, item_id, StageStatus.FAILED, reason="embedding job cancelled")
        self.store.update_embedding_job(ref.id, status=EmbeddingJobStatus.CANCELLED)
        self.store.append_log(
            ref.batch_id,
            "errors",
            f"Embedding job {ref.provider_job_id} was cancelled; {failed} items marked failed",
            level=LogLevel.ERROR,
        )
        self.maybe_complete_batch(ref.batch_id)
        return CheckOutcome(ref.id, EmbeddingJobStatus.CANCELLED.value)

    def _enqueue_fallback(self, ref: EmbeddingJobRef, custom_ids: tuple[str, ...]) -> None:
        if not custom_ids:
            return
        self.queue.publish(
            FALLBACK_TASK,
            {"batch_id": ref.batch_id, "job_ref_id": ref.id, "custom_ids": list(custom_ids)},
            key=ref.batch_id,
        )

    # ------------------------------------------------------------------
    # Batch level
    # ------------------------------------------------------------------
    def run_fallback(self, batch_id: str, custom_ids: Iterable[str]) -> FallbackSummary:
        summary = self.fallback.run(batch_id, custom_ids)
        self.maybe_complete_batch(batch_id)
        return summary

    def maybe_complete_batch(self, batch_id: str) -> bool:
        """Move the batch to ``embeddings_completed`` once nothing is outstanding."""
        jobs = self.store.list_embedding_jobs(batch_id)
        if any(not job.is_terminal for job in jobs):
            return False
        items = self.store.list_items(batch_id)
        if any(item.status_for(ItemStage.EMBEDDING) is StageStatus.IN_PROGRESS for item in items):
            return False
        counts = stage_counts(items, ItemStage.EMBEDDING)
        statistics: dict[str, Any] = {
            **counts,
            "jobs": len(jobs),
            "jobs_by_status": _count_statuses(jobs),
        }
        try:
            self.store.transition_batch(
                batch_id,
                BatchStatus.EMBEDDINGS_COMPLETED,
                expected=BatchStatus.EMBEDDINGS_IN_PROGRESS,
                reason="all embedding jobs settled",
                statistics={PipelineStage.EMBEDDINGS.value: statistics},
            )
        except StoreError:
            # Another check settled the batch first.
            return False
        self.store.append_log(
            batch_id,
            LOG_LABEL,
            f"Embeddings completed: {counts.get(StageStatus.SUCCESS.value, 0)} embedded, "
            f"{counts.get(StageStatus.FAILED.value, 0)} failed",
        )
        logger.info("embedding.monitor.batch_completed", batch_id=batch_id, **counts)
        if self.on_batch_complete is not None:
            self.on_batch_complete(batch_id)
        return True

    def _fail_batch(self, batch_id: str, exc: EmbeddingProviderError, *, job_ref_id: str) -> None:
        try:
            self.store.transition_batch(
                batch_id,
                BatchStatus.EMBEDDINGS_FAILED,
                expected=BatchStatus.EMBEDDINGS_IN_PROGRESS,
                reason=f"embedding provider unreachable: {exc}",
            )
        except StoreError:
            logger.warning("embedding.monitor.batch_not_in_progress", batch_id=batch_id)
            return
        self.store.update_batch(
            batch_id,
            failed_stage=PipelineStage.EMBEDDINGS,
            error={**exc.report.as_dict(), "job_ref_id": job_ref_id},
        )
        self.store.append_log(
            batch_id,
            "errors",
            f"Embedding monitor gave up on job {job_ref_id} after "
            f"{self.retry_policy.max_attempts} failed checks: {exc}",
            level=LogLevel.ERROR,
        )
        logger.error("embedding.monitor.gave_up", batch_id=batch_id, job_ref_id=job_ref_id, error=str(exc))


def _pending(candidates: Iterable[str], resolved: Iterable[str]) -> tuple[str, ...]:
    done = set(resolved)
    return tuple(custom_id for custom_id in dict.fromkeys(candidates) if custom_id not in done)


def _count_statuses(jobs: Iterable[EmbeddingJobRef]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for job in jobs:
        counts[job.status.value] = counts.get(job.status.value, 0) + 1
    return counts


__all__ = ["CheckOutcome", "EmbeddingBatchMonitor"]
