"""Stage runner and per-stage definitions for the item-tracked stages.

Key Responsibilities:
    - Select the items of a batch that are eligible for a stage
    - Claim each item, invoke the stage collaborator and record the outcome
    - Write a single batch status transition with the stage aggregates

Collaborators:
    - Upstream: :class:`~Enliterator_KG.pipeline.controller.BatchController`
    - Downstream: extraction collaborators, the graph assembly engine and the
      embedding batch builder

Side Effects:
    - Item transitions, rights records, lexicon entries and pool facts in the
      pipeline store
    - Prometheus counters and OpenTelemetry spans per stage

Thread Safety:
    - One ``advance`` call per batch at a time; the batch controller enforces
      this with its per-batch lock. Items are processed sequentially so that
      creation order, and therefore dedup order, is deterministic.
"""

from __future__ import annotations

# ==============================================================================
# IMPORTS
# ==============================================================================
import time
from collections import Counter
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, ClassVar, Protocol

import structlog

from Enliterator_KG.config.settings import TriageSettings
from Enliterator_KG.kg.schema import POOL_LABELS
from Enliterator_KG.kg.verbs import VERB_GLOSSARY
from Enliterator_KG.observability.metrics import observe_stage_duration, record_stage_item
from Enliterator_KG.observability.tracing import pipeline_span
from Enliterator_KG.utils.identifiers import canonical_key

from .collaborators import (
    EntityExtractor,
    EntityFact,
    LexiconExtractor,
    RelationExtractor,
    RightsInferencer,
    StageContext,
)
from .errors import InvariantViolation, StageInvariantError, StageOrderError
from .models import (
    QUARANTINE_FLAG,
    Batch,
    BatchStatus,
    Failed,
    Item,
    ItemStage,
    LogLevel,
    PipelineStage,
    Skipped,
    StageResult,
    StageStatus,
    Success,
)
from .rights import batch_fallback_rights_id, resolve_rights_id, rights_fields
from .store import PipelineStore

logger = structlog.get_logger(__name__)


# ==============================================================================
# REPORTS
# ==============================================================================


@dataclass(slots=True)
class StageReport:
    """Outcome of one ``advance`` call."""

    stage: PipelineStage
    eligible: int
    processed: int
    outcomes: dict[str, int] = field(default_factory=dict)
    statistics: dict[str, Any] = field(default_factory=dict)
    batch_status: BatchStatus | None = None
    duration_seconds: float = 0.0

    @property
    def deferred(self) -> bool:
        """True when items were handed to an asynchronous path."""
        return self.batch_status is None


def stage_counts(items: Sequence[Item], item_stage: ItemStage) -> dict[str, int]:
    """Aggregate the derived status of ``item_stage`` over a batch."""
    counts: Counter[str] = Counter()
    for item in items:
        status = item.status_for(item_stage)
        counts[status.value if status else "not_reached"] += 1
        if item_stage is ItemStage.TRIAGE and item.quarantined:
            counts[QUARANTINE_FLAG] += 1
    counts["total"] = len(items)
    return dict(counts)


# ==============================================================================
# STAGE DEFINITIONS
# ==============================================================================


class StageDefinition:
    """Hooks a stage implements; the runner owns selection and bookkeeping."""

    stage: ClassVar[PipelineStage]

    @property
    def item_stage(self) -> ItemStage:
        item_stage = self.stage.item_stage
        assert item_stage is not None, f"{self.stage.value} is not an item-tracked stage"
        return item_stage

    def begin(self, batch: Batch, eligible: Sequence[Item], context: StageContext) -> None:
        """Called once before any item is processed."""

    def process(self, item: Item, context: StageContext) -> StageResult | None:
        """Process one claimed item; ``None`` defers the outcome to :meth:`finish`."""
        raise NotImplementedError

    def finish(self, batch: Batch, deferred: Sequence[Item], context: StageContext) -> None:
        """Called once after all items; resolves deferred items."""

    def batch_status(self, batch: Batch, counts: Mapping[str, int]) -> BatchStatus | None:
        return self.stage.completed

    def statistics(self) -> dict[str, Any]:
        return {}


class RightsStage(StageDefinition):
    """Rights triage: attach a rights record to every item or quarantine it."""

    stage = PipelineStage.RIGHTS

    def __init__(self, store: PipelineStore, inferencer: RightsInferencer, settings: TriageSettings) -> None:
        self.store = store
        self.inferencer = inferencer
        self.settings = settings

    def process(self, item: Item, context: StageContext) -> StageResult:
        if not item.text.strip():
            return Skipped("no content")
        result = self.inferencer.extract(item.text, context)
        if not result.success or not result.facts:
            return Failed(result.error or "rights inference returned no signal")
        signal = result.facts[0]
        quarantined = signal.confidence < self.settings.min_confidence
        record = self.store.create_rights_record(
            item.batch_id, **rights_fields(item, signal, quarantined=quarantined)
        )
        self.store.set_item_rights(item.id, record.id)
        metadata = {
            "rights_id": record.id,
            "confidence": signal.confidence,
            "publishable": record.publishability,
            "training_eligible": record.training_eligibility,
        }
        if quarantined:
            logger.warning(
                "pipeline.rights.quarantined",
                item_id=item.id,
                confidence=signal.confidence,
            )
            return Skipped(
                f"Low confidence rights inference: {signal.confidence}",
                metadata={**metadata, QUARANTINE_FLAG: True},
            )
        return Success(metadata=metadata)

    def batch_status(self, batch: Batch, counts: Mapping[str, int]) -> BatchStatus:
        completed = counts.get(StageStatus.SUCCESS.value, 0)
        quarantined = counts.get(QUARANTINE_FLAG, 0)
        failed = counts.get(StageStatus.FAILED.value, 0)
        total = completed + quarantined + failed
        if failed > total * self.settings.failed_ratio:
            return BatchStatus.TRIAGE_FAILED
        if quarantined > total * self.settings.needs_review_ratio:
            return BatchStatus.TRIAGE_NEEDS_REVIEW
        return BatchStatus.TRIAGE_COMPLETED


class LexiconStage(StageDefinition):
    """Term extraction with normalisation and dedup into lexicon entries."""

    stage = PipelineStage.LEXICON

    def __init__(self, store: PipelineStore, extractor: LexiconExtractor) -> None:
        self.store = store
        self.extractor = extractor
        self._fallback_rights_id: str | None = None
        self._term_counts: dict[str, int] = {}
        self._stats: Counter[str] = Counter()

    def begin(self, batch: Batch, eligible: Sequence[Item], context: StageContext) -> None:
        self._fallback_rights_id = batch_fallback_rights_id(
            self.store.list_items(batch.id), self.store.list_rights_records(batch.id)
        )
        self._term_counts = {}
        self._stats = Counter()

    def process(self, item: Item, context: StageContext) -> StageResult:
        result = self.extractor.extract(item.text, context)
        if not result.success:
            return Failed(result.error or "term extraction failed")
        created = 0
        seen = 0
        for fact in result.facts:
            key = canonical_key(fact.term)
            if not key:
                continue
            seen += 1
            rights_id = resolve_rights_id(item, self._fallback_rights_id, subject=f"term '{fact.term}'")
            _, was_created = self.store.upsert_lexicon_entry(
                item.batch_id,
                term=fact.term.strip(),
                canonical_key=key,
                rights_id=rights_id,
                item_id=item.id,
                definition=fact.definition,
                pool_association=fact.pool_association,
            )
            created += int(was_created)
        self._term_counts[item.id] = seen
        self._stats["terms_seen"] += seen
        self._stats["terms_created"] += created
        return Success(metadata={"terms": seen, "new_terms": created})

    def finish(self, batch: Batch, deferred: Sequence[Item], context: StageContext) -> None:
        for item_id, terms in self._term_counts.items():
            if terms:
                continue
            self.store.transition_item(
                item_id,
                ItemStage.POOL,
                StageStatus.SKIPPED,
                reason="no lexicon terms",
            )
            self._stats["pool_skipped"] += 1

    def statistics(self) -> dict[str, Any]:
        return dict(self._stats)


class PoolsStage(StageDefinition):
    """Entity then relation extraction, relations resolved within the item."""

    stage = PipelineStage.POOLS

    def __init__(
        self,
        store: PipelineStore,
        entity_extractor: EntityExtractor,
        relation_extractor: RelationExtractor,
    ) -> None:
        self.store = store
        self.entity_extractor = entity_extractor
        self.relation_extractor = relation_extractor
        self._fallback_rights_id: str | None = None
        self._stats: Counter[str] = Counter()

    def begin(self, batch: Batch, eligible: Sequence[Item], context: StageContext) -> None:
        self._fallback_rights_id = batch_fallback_rights_id(
            self.store.list_items(batch.id), self.store.list_rights_records(batch.id)
        )
        self._stats = Counter()

    def process(self, item: Item, context: StageContext) -> StageResult:
        result = self.entity_extractor.extract(item.text, context)
        if not result.success:
            return Failed(result.error or "entity extraction failed")
        rights_id = resolve_rights_id(item, self._fallback_rights_id, subject=f"item {item.id} entities")
        resolved: dict[tuple[str, str], str] = {}
        accepted: list[EntityFact] = []
        for fact in result.facts:
            key = canonical_key(fact.name)
            if fact.pool not in POOL_LABELS or not key:
                self._stats["entities_dropped"] += 1
                continue
            if (fact.pool, key) in resolved:
                continue
            entity = self.store.add_entity(
                item.batch_id,
                item_id=item.id,
                pool=fact.pool,
                label=POOL_LABELS[fact.pool],
                canonical_key=key,
                rights_id=rights_id,
                repr_text=fact.repr_text or fact.name,
                attributes={"name": fact.name, **dict(fact.attributes)},
            )
            resolved[(fact.pool, key)] = entity.id
            accepted.append(fact)
        self._stats["entities"] += len(resolved)

        metadata: dict[str, Any] = {"entities": len(resolved), "relations": 0}
        if not accepted:
            return Success(metadata=metadata)
        relations = self.relation_extractor.extract(item.text, context, accepted)
        if not relations.success:
            # Entities stand on their own; the missing edges surface in integrity checks.
            metadata["relation_error"] = relations.error
            return Success(metadata=metadata)
        for fact in relations.facts:
            source_id = resolved.get((fact.source_pool, canonical_key(fact.source_name)))
            target_id = resolved.get((fact.target_pool, canonical_key(fact.target_name)))
            if fact.verb not in VERB_GLOSSARY or source_id is None or target_id is None:
                self._stats["relations_dropped"] += 1
                continue
            self.store.add_relation(
                item.batch_id,
                item_id=item.id,
                verb=fact.verb,
                source_entity_id=source_id,
                target_entity_id=target_id,
                rights_id=rights_id,
            )
            metadata["relations"] += 1
        self._stats["relations"] += metadata["relations"]
        return Success(metadata=metadata)

    def statistics(self) -> dict[str, Any]:
        return dict(self._stats)


class GraphAssembler(Protocol):
    def assemble(self, batch_id: str, context: StageContext) -> Mapping[str, Any]: ...


class GraphStage(StageDefinition):
    """Claims graph-eligible items and assembles the batch graph once."""

    stage = PipelineStage.GRAPH

    def __init__(self, store: PipelineStore, engine: GraphAssembler) -> None:
        self.store = store
        self.engine = engine
        self._summary: dict[str, Any] = {}

    def process(self, item: Item, context: StageContext) -> None:
        return None

    def finish(self, batch: Batch, deferred: Sequence[Item], context: StageContext) -> None:
        self._summary = {}
        if not deferred:
            return
        try:
            self._summary = dict(self.engine.assemble(batch.id, context))
        except Exception:
            released = self.store.release_claims(batch.id, ItemStage.GRAPH, reason="graph assembly failed")
            logger.warning("pipeline.graph.claims_released", batch_id=batch.id, count=released)
            raise
        for item in deferred:
            self.store.transition_item(item.id, ItemStage.GRAPH, StageStatus.SUCCESS)

    def statistics(self) -> dict[str, Any]:
        return dict(self._summary)


class EmbeddingSubmitter(Protocol):
    def submit(self, batch_id: str, items: Sequence[Item], context: StageContext) -> Mapping[str, Any]: ...


class EmbeddingStage(StageDefinition):
    """Hands graph-assembled items to the asynchronous embedding path."""

    stage = PipelineStage.EMBEDDINGS

    def __init__(self, builder: EmbeddingSubmitter) -> None:
        self.builder = builder
        self._submission: dict[str, Any] = {}

    def process(self, item: Item, context: StageContext) -> None:
        return None

    def finish(self, batch: Batch, deferred: Sequence[Item], context: StageContext) -> None:
        self._submission = dict(self.builder.submit(batch.id, deferred, context)) if deferred else {}

    def batch_status(self, batch: Batch, counts: Mapping[str, int]) -> BatchStatus | None:
        if self._submission.get("jobs"):
            return None
        return self.stage.completed

    def statistics(self) -> dict[str, Any]:
        return dict(self._submission)


# ==============================================================================
# STAGE RUNNER
# ==============================================================================


class StageRunner:
    """Runs one item-tracked stage over one batch.

    Example:
        >>> runner = StageRunner(store, [RightsStage(store, inferencer, settings.triage)])
        >>> report = runner.advance(batch.id, PipelineStage.RIGHTS, context)
    """

    def __init__(self, store: PipelineStore, definitions: Sequence[StageDefinition]) -> None:
        self.store = store
        self._definitions = {definition.stage: definition for definition in definitions}

    def handles(self, stage: PipelineStage) -> bool:
        return stage in self._definitions

    def advance(self, batch_id: str, stage: PipelineStage, context: StageContext) -> StageReport:
        definition = self._definitions.get(stage)
        if definition is None:
            raise StageOrderError(f"Stage {stage.value} is not run by the stage runner")
        item_stage = definition.item_stage
        started = time.perf_counter()
        batch = self.store.get_batch(batch_id)

        with pipeline_span("pipeline.stage", batch_id=batch_id, stage=stage.value):
            eligible = [item for item in self.store.list_items(batch_id) if item.is_eligible(item_stage)]
            logger.info("pipeline.stage.started", batch_id=batch_id, stage=stage.value, eligible=len(eligible))
            self.store.append_log(
                batch_id, stage.log_label, f"Starting {stage.value} for {len(eligible)} items"
            )
            definition.begin(batch, eligible, context)

            outcomes: Counter[str] = Counter()
            deferred: list[Item] = []
            processed = 0
            for candidate in eligible:
                claimed = self.store.claim_item(candidate.id, item_stage)
                if claimed is None:
                    logger.debug("pipeline.stage.claim_lost", item_id=candidate.id, stage=stage.value)
                    continue
                processed += 1
                result = self._process_item(definition, claimed, context.for_item(claimed.id))
                if result is None:
                    deferred.append(claimed)
                    continue
                self._record(claimed, item_stage, result)
                outcomes[result.status.value] += 1
                record_stage_item(stage.value, result.status.value)

            definition.finish(batch, deferred, context)

            if eligible and processed == 0:
                message = (
                    f"{stage.value} found {len(eligible)} eligible items but processed none; "
                    "item status and selection are out of sync"
                )
                self.store.append_log(batch_id, "errors", message, level=LogLevel.ERROR)
                raise StageInvariantError(message, instance=f"batch/{batch_id}")

            counts = stage_counts(self.store.list_items(batch_id), item_stage)
            statistics = {**counts, **definition.statistics()}
            status = definition.batch_status(batch, counts)
            if status is not None:
                self.store.transition_batch(
                    batch_id,
                    status,
                    expected=stage.in_progress,
                    reason=f"{stage.value} processed {processed} items",
                    statistics={stage.value: statistics},
                )
            else:
                self.store.update_batch(batch_id, metadata={f"{stage.value}_statistics": statistics})

        duration = time.perf_counter() - started
        observe_stage_duration(stage.value, duration)
        self.store.append_log(
            batch_id,
            stage.log_label,
            f"Finished {stage.value}: " + ", ".join(f"{k}={v}" for k, v in sorted(outcomes.items())),
            **{"processed": processed, "deferred": len(deferred)},
        )
        logger.info(
            "pipeline.stage.finished",
            batch_id=batch_id,
            stage=stage.value,
            processed=processed,
            deferred=len(deferred),
            batch_status=status.value if status else None,
        )
        return StageReport(
            stage=stage,
            eligible=len(eligible),
            processed=processed,
            outcomes=dict(outcomes),
            statistics=statistics,
            batch_status=status,
            duration_seconds=duration,
        )

    def _process_item(
        self, definition: StageDefinition, item: Item, context: StageContext
    ) -> StageResult | None:
        try:
            return definition.process(item, context)
        except InvariantViolation:
            raise
        except Exception as exc:
            logger.warning(
                "pipeline.stage.item_failed",
                item_id=item.id,
                stage=definition.stage.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            self.store.append_log(
                item.batch_id,
                "errors",
                f"{definition.stage.value} failed for item {item.id}: {exc}",
                level=LogLevel.ERROR,
                item_id=item.id,
            )
            return Failed(str(exc) or type(exc).__name__, metadata={"error_type": type(exc).__name__})

    def _record(self, item: Item, item_stage: ItemStage, result: StageResult) -> None:
        reason = None if isinstance(result, Success) else result.reason
        self.store.transition_item(
            item.id,
            item_stage,
            result.status,
            expected=StageStatus.IN_PROGRESS,
            reason=reason,
            metadata=result.metadata,
        )


__all__ = [
    "EmbeddingStage",
    "GraphStage",
    "LexiconStage",
    "PoolsStage",
    "RightsStage",
    "StageDefinition",
    "StageReport",
    "StageRunner",
    "stage_counts",
]
