"""Embedding batch builder.

Turns the items handed over by the embeddings stage into provider batch jobs.
Items whose content hash already has a stored embedding are settled
immediately; the rest are chunked into jobs of at most
``max_requests_per_job`` requests. The first monitor check of each job is
scheduled on the delayed task queue.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

import structlog

from Enliterator_KG.config.settings import EmbeddingSettings
from Enliterator_KG.observability.tracing import pipeline_span
from Enliterator_KG.orchestration.queue import MONITOR_TASK, DelayedTaskQueue
from Enliterator_KG.pipeline.collaborators import StageContext
from Enliterator_KG.pipeline.errors import EmbeddingProviderError
from Enliterator_KG.pipeline.models import EmbeddingSource, Item, ItemStage, LogLevel, PipelineStage, StageStatus
from Enliterator_KG.pipeline.store import PipelineStore
from Enliterator_KG.utils.identifiers import custom_id_for, item_id_from_custom_id

from .provider import EmbeddingProvider, EmbeddingRequest

logger = structlog.get_logger(__name__)

LOG_LABEL = PipelineStage.EMBEDDINGS.log_label


def settle_item(
    store: PipelineStore,
    item_id: str,
    status: StageStatus,
    *,
    reason: str | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> bool:
    """Resolve a claimed embedding item; items already resolved are left alone."""
    item = store.get_item(item_id)
    if item.status_for(ItemStage.EMBEDDING) is not StageStatus.IN_PROGRESS:
        return False
    store.transition_item(
        item_id,
        ItemStage.EMBEDDING,
        status,
        expected=StageStatus.IN_PROGRESS,
        reason=reason,
        metadata=metadata,
    )
    return True


def embedding_text(item: Item) -> str:
    return item.text.strip() or item.pointer


class EmbeddingBatchBuilder:
    def __init__(
        self,
        store: PipelineStore,
        provider: EmbeddingProvider,
        queue: DelayedTaskQueue,
        settings: EmbeddingSettings | None = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.queue = queue
        self.settings = settings or EmbeddingSettings()

    def submit(self, batch_id: str, items: Sequence[Item], context: StageContext) -> dict[str, Any]:
        """Submit provider jobs for ``items``; returns counts for stage statistics."""
        requests: list[EmbeddingRequest] = []
        reused = 0
        for item in items:
            existing = self.store.get_embedding(item.content_hash)
            if existing is not None:
                settle_item(
                    self.store,
                    item.id,
                    StageStatus.SUCCESS,
                    metadata={"source": existing.source.value, "reused": True},
                )
                reused += 1
                continue
            requests.append(EmbeddingRequest(custom_id_for(item.id), embedding_text(item)))

        size = self.settings.max_requests_per_job
        job_ids: list[str] = []
        with pipeline_span("embedding.submit", batch_id=batch_id, requests=len(requests)):
            for offset in range(0, len(requests), size):
                chunk = requests[offset : offset + size]
                try:
                    provider_job_id, input_file_id = self.provider.submit_batch(chunk)
                except EmbeddingProviderError:
                    self._release_unsubmitted(batch_id, requests[offset:], job_ids)
                    raise
                ref = self.store.add_embedding_job(
                    batch_id,
                    provider_job_id=provider_job_id,
                    custom_ids=[request.custom_id for request in chunk],
                    input_file_id=input_file_id,
                )
                self.queue.publish(
                    MONITOR_TASK,
                    {"job_ref_id": ref.id, "batch_id": batch_id},
                    delay=self.settings.validating_delay_seconds,
                    key=batch_id,
                )
                job_ids.append(ref.id)

        summary = {"jobs": len(job_ids), "submitted": len(requests), "already_embedded": reused}
        self.store.append_log(
            batch_id,
            LOG_LABEL,
            f"Submitted {len(requests)} embedding requests in {len(job_ids)} jobs; "
            f"{reused} items already embedded",
            job_ref_ids=job_ids,
        )
        logger.info(
            "embedding.batch.submitted",
            batch_id=batch_id,
            correlation_id=context.correlation_id,
            source=EmbeddingSource.BATCH.value,
            **summary,
        )
        return summary

    def _release_unsubmitted(
        self, batch_id: str, unsubmitted: Sequence[EmbeddingRequest], job_ids: Sequence[str]
    ) -> None:
        """Return items no job was created for to pending so a resume resubmits them.

        Items of jobs already created stay claimed and are settled by the monitor.
        """
        released = 0
        for request in unsubmitted:
            released += settle_item(
                self.store,
                item_id_from_custom_id(request.custom_id),
                StageStatus.PENDING,
                reason="embedding submission failed",
            )
        self.store.append_log(
            batch_id,
            "errors",
            f"Embedding submission failed after {len(job_ids)} jobs; {released} items returned to pending",
            level=LogLevel.ERROR,
            job_ref_ids=list(job_ids),
        )
        logger.warning(
            "embedding.batch.submit_failed",
            batch_id=batch_id,
            jobs=len(job_ids),
            released=released,
        )


__all__ = ["EmbeddingBatchBuilder", "embedding_text", "settle_item"]
