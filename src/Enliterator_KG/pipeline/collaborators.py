"""Narrow interfaces to the collaborators that do the actual extraction.

Rights inference, term extraction, entity and relation extraction are treated
as external services. Each one receives the item content plus an explicit
:class:`StageContext` and answers with an :class:`ExtractionResult`. The
stage runner never looks inside the facts beyond the keys documented on the
fact dataclasses below.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, Protocol, TypeVar

from .models import Batch, PipelineStage

FactT = TypeVar("FactT")
FactT_co = TypeVar("FactT_co", covariant=True)


# ==============================================================================
# CONTEXT AND RESULTS
# ==============================================================================


@dataclass(frozen=True, slots=True)
class StageContext:
    """Explicit unit-of-work context passed to every collaborator call."""

    batch_id: str
    stage: PipelineStage
    actor_id: str | None = None
    correlation_id: str | None = None
    item_id: str | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def for_item(self, item_id: str) -> StageContext:
        return StageContext(
            batch_id=self.batch_id,
            stage=self.stage,
            actor_id=self.actor_id,
            correlation_id=self.correlation_id,
            item_id=item_id,
            extra=self.extra,
        )


@dataclass(frozen=True, slots=True)
class ExtractionResult(Generic[FactT]):
    success: bool
    facts: Sequence[FactT] = ()
    error: str | None = None

    @classmethod
    def ok(cls, facts: Sequence[FactT]) -> ExtractionResult[FactT]:
        return cls(success=True, facts=tuple(facts))

    @classmethod
    def failure(cls, error: str) -> ExtractionResult[FactT]:
        return cls(success=False, error=error)


# ==============================================================================
# FACTS
# ==============================================================================


@dataclass(frozen=True, slots=True)
class RightsSignal:
    """Inferred rights for one item.

    ``consent`` and ``license`` are free-form signals normalised by
    :mod:`Enliterator_KG.pipeline.rights`.
    """

    confidence: float
    consent: str | None = None
    license: str | None = None
    owner: str | None = None
    method: str | None = None
    source_type: str | None = None
    attribution: str | None = None
    allow_public_display: bool = False
    allow_training: bool = False
    signals: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class TermFact:
    term: str
    definition: str | None = None
    pool_association: str | None = None


@dataclass(frozen=True, slots=True)
class EntityFact:
    pool: str
    name: str
    repr_text: str = ""
    attributes: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class RelationFact:
    """Relation between two entities of the same item, by pool and name."""

    verb: str
    source_pool: str
    source_name: str
    target_pool: str
    target_name: str


# ==============================================================================
# COLLABORATOR PROTOCOLS
# ==============================================================================


class Extractor(Protocol[FactT_co]):
    def extract(self, content: str, context: StageContext) -> ExtractionResult[FactT_co]: ...


class RightsInferencer(Extractor[RightsSignal], Protocol):
    """Infers a single rights signal per item."""


class LexiconExtractor(Extractor[TermFact], Protocol):
    """Extracts canonical terms from item content."""


class EntityExtractor(Extractor[EntityFact], Protocol):
    """Extracts pool entities from item content."""


class RelationExtractor(Protocol):
    def extract(
        self,
        content: str,
        context: StageContext,
        entities: Sequence[EntityFact] = (),
    ) -> ExtractionResult[RelationFact]: ...


@dataclass(frozen=True, slots=True)
class ExternalStageOutcome:
    metrics: Mapping[str, Any] = field(default_factory=dict)
    literacy_score: float | None = None


class ExternalStageHandler(Protocol):
    """Handler for stages implemented outside this package (intake, scoring, ...)."""

    def run(self, batch: Batch, context: StageContext) -> ExternalStageOutcome: ...


__all__ = [
    "EntityExtractor",
    "EntityFact",
    "ExternalStageHandler",
    "ExternalStageOutcome",
    "ExtractionResult",
    "Extractor",
    "LexiconExtractor",
    "RelationExtractor",
    "RelationFact",
    "RightsInferencer",
    "RightsSignal",
    "StageContext",
    "TermFact",
]
