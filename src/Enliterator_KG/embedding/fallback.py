"""Synchronous fallback for embedding requests a batch job did not resolve.

Items are embedded one at a time through the provider's synchronous
endpoint. Items that are no longer waiting on an embedding, or whose content
hash already has a stored vector, are not sent again, so running the
fallback twice for the same ids is a no-op.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

import structlog

from Enliterator_KG.observability.metrics import record_embeddings_stored
from Enliterator_KG.pipeline.errors import EmbeddingProviderError, StoreError
from Enliterator_KG.pipeline.models import (
    EmbeddingSource,
    ItemStage,
    LogLevel,
    StageStatus,
    StoredEmbedding,
)
from Enliterator_KG.pipeline.store import PipelineStore
from Enliterator_KG.utils.identifiers import item_id_from_custom_id

from .builder import LOG_LABEL, embedding_text, settle_item
from .provider import EmbeddingProvider

logger = structlog.get_logger(__name__)

FALLBACK_WARNING = "fallback_embeddings_used"


@dataclass(slots=True)
class FallbackSummary:
    embedded: list[str] = field(default_factory=list)
    reused: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def settled(self) -> int:
        return len(self.embedded) + len(self.reused) + len(self.failed)


class SynchronousFallback:
    def __init__(self, store: PipelineStore, provider: EmbeddingProvider) -> None:
        self.store = store
        self.provider = provider

    def run(self, batch_id: str, custom_ids: Iterable[str]) -> FallbackSummary:
        summary = FallbackSummary()
        for custom_id in dict.fromkeys(custom_ids):
            try:
                item_id = item_id_from_custom_id(custom_id)
                item = self.store.get_item(item_id)
            except (ValueError, StoreError) as exc:
                logger.warning("embedding.fallback.unknown_custom_id", custom_id=custom_id, error=str(exc))
                summary.skipped.append(custom_id)
                continue
            if item.status_for(ItemStage.EMBEDDING) is not StageStatus.IN_PROGRESS:
                summary.skipped.append(item_id)
                continue
            if self.store.get_embedding(item.content_hash) is not None:
                settle_item(self.store, item_id, StageStatus.SUCCESS, metadata={"reused": True})
                summary.reused.append(item_id)
                continue
            try:
                vector = self.provider.embed_one(embedding_text(item))
            except EmbeddingProviderError as exc:
                settle_item(self.store, item_id, StageStatus.FAILED, reason=f"fallback embedding failed: {exc}")
                self.store.append_log(
                    batch_id,
                    "errors",
                    f"Fallback embedding failed for item {item_id}: {exc}",
                    level=LogLevel.ERROR,
                    item_id=item_id,
                )
                summary.failed.append(item_id)
                continue
            self.store.put_embedding(
                StoredEmbedding(
                    content_hash=item.content_hash,
                    vector=vector,
                    model=self.provider.model,
                    source=EmbeddingSource.SYNCHRONOUS_FALLBACK,
                    item_id=item_id,
                )
            )
            settle_item(
                self.store,
                item_id,
                StageStatus.SUCCESS,
                metadata={"source": EmbeddingSource.SYNCHRONOUS_FALLBACK.value},
            )
            summary.embedded.append(item_id)

        record_embeddings_stored(EmbeddingSource.SYNCHRONOUS_FALLBACK.value, len(summary.embedded))
        if summary.embedded:
            self.store.add_quality_warning(
                batch_id,
                FALLBACK_WARNING,
                f"{len(summary.embedded)} items were embedded through the synchronous fallback",
                count=len(summary.embedded),
            )
        if summary.settled:
            self.store.append_log(
                batch_id,
                LOG_LABEL,
                f"Fallback embedded {len(summary.embedded)}, reused {len(summary.reused)}, "
                f"failed {len(summary.failed)}",
            )
        logger.info(
            "embedding.fallback.completed",
            batch_id=batch_id,
            embedded=len(summary.embedded),
            reused=len(summary.reused),
            failed=len(summary.failed),
            skipped=len(summary.skipped),
        )
        return summary


__all__ = ["FALLBACK_WARNING", "FallbackSummary", "SynchronousFallback"]
