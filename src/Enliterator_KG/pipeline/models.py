"""Data model of the ingestion pipeline.

This module defines the batch and item records, the stage vocabularies and
the per-item state machine. Every item carries one ``(stage, status)`` pair
plus an append-only transition log. The five per-stage statuses an operator
sees are derived from that pair, so an item can never be ``success`` at a
stage whose predecessor did not succeed.

Example:
    >>> item = Item(id="i-1", batch_id="b-1", content_hash="abc", pointer="a.txt")
    >>> _ = item.apply(ItemStage.TRIAGE, StageStatus.IN_PROGRESS)
    >>> _ = item.apply(ItemStage.TRIAGE, StageStatus.SUCCESS)
    >>> item.status_for(ItemStage.LEXICON) is None
    True
"""

from __future__ import annotations

# ==============================================================================
# IMPORTS
# ==============================================================================
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .errors import ItemTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ==============================================================================
# STAGE VOCABULARIES
# ==============================================================================


class ItemStage(str, Enum):
    """Stages tracked per item, in pipeline order."""

    TRIAGE = "triage"
    LEXICON = "lexicon"
    POOL = "pool"
    GRAPH = "graph"
    EMBEDDING = "embedding"

    @property
    def position(self) -> int:
        return _ITEM_STAGE_ORDER.index(self)

    @property
    def previous(self) -> ItemStage | None:
        index = self.position
        return _ITEM_STAGE_ORDER[index - 1] if index else None

    @property
    def success_token(self) -> str:
        """Stage-specific word shown to operators for a successful item."""
        return _SUCCESS_TOKENS[self]


_ITEM_STAGE_ORDER: tuple[ItemStage, ...] = tuple(ItemStage)
_SUCCESS_TOKENS = {
    ItemStage.TRIAGE: "completed",
    ItemStage.LEXICON: "extracted",
    ItemStage.POOL: "extracted",
    ItemStage.GRAPH: "assembled",
    ItemStage.EMBEDDING: "embedded",
}


class StageStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class PipelineStage(str, Enum):
    """The nine batch-level stages in execution order."""

    INTAKE = "intake"
    RIGHTS = "rights"
    LEXICON = "lexicon"
    POOLS = "pools"
    GRAPH = "graph"
    EMBEDDINGS = "embeddings"
    SCORING = "scoring"
    DELIVERABLES = "deliverables"
    NAVIGATOR = "navigator"

    @property
    def number(self) -> int:
        return _PIPELINE_ORDER.index(self) + 1

    @property
    def prefix(self) -> str:
        """Batch status prefix used for this stage."""
        return _STATUS_PREFIXES[self]

    @property
    def item_stage(self) -> ItemStage | None:
        return _ITEM_STAGES.get(self)

    @property
    def previous(self) -> PipelineStage | None:
        index = _PIPELINE_ORDER.index(self)
        return _PIPELINE_ORDER[index - 1] if index else None

    @property
    def next(self) -> PipelineStage | None:
        index = _PIPELINE_ORDER.index(self)
        return _PIPELINE_ORDER[index + 1] if index + 1 < len(_PIPELINE_ORDER) else None

    def status(self, phase: str) -> BatchStatus:
        """Return the batch status ``<prefix>_<phase>`` for this stage."""
        return BatchStatus(f"{self.prefix}_{phase}")

    @property
    def in_progress(self) -> BatchStatus:
        return self.status("in_progress")

    @property
    def completed(self) -> BatchStatus:
        return self.status("completed")

    @property
    def failed(self) -> BatchStatus:
        return self.status("failed")

    @property
    def log_label(self) -> str:
        return f"stage_{self.number}"


_PIPELINE_ORDER: tuple[PipelineStage, ...] = tuple(PipelineStage)
_STATUS_PREFIXES = {
    PipelineStage.INTAKE: "intake",
    PipelineStage.RIGHTS: "triage",
    PipelineStage.LEXICON: "lexicon",
    PipelineStage.POOLS: "pool_filling",
    PipelineStage.GRAPH: "graph_assembly",
    PipelineStage.EMBEDDINGS: "embeddings",
    PipelineStage.SCORING: "scoring",
    PipelineStage.DELIVERABLES: "deliverables",
    PipelineStage.NAVIGATOR: "navigator",
}
_ITEM_STAGES = {
    PipelineStage.RIGHTS: ItemStage.TRIAGE,
    PipelineStage.LEXICON: ItemStage.LEXICON,
    PipelineStage.POOLS: ItemStage.POOL,
    PipelineStage.GRAPH: ItemStage.GRAPH,
    PipelineStage.EMBEDDINGS: ItemStage.EMBEDDING,
}


class BatchStatus(str, Enum):
    """Batch lifecycle values, one triple per stage plus review and terminal."""

    PENDING = "pending"
    INTAKE_IN_PROGRESS = "intake_in_progress"
    INTAKE_COMPLETED = "intake_completed"
    INTAKE_FAILED = "intake_failed"
    TRIAGE_IN_PROGRESS = "triage_in_progress"
    TRIAGE_COMPLETED = "triage_completed"
    TRIAGE_NEEDS_REVIEW = "triage_needs_review"
    TRIAGE_FAILED = "triage_failed"
    LEXICON_IN_PROGRESS = "lexicon_in_progress"
    LEXICON_COMPLETED = "lexicon_completed"
    LEXICON_FAILED = "lexicon_failed"
    POOL_FILLING_IN_PROGRESS = "pool_filling_in_progress"
    POOL_FILLING_COMPLETED = "pool_filling_completed"
    POOL_FILLING_FAILED = "pool_filling_failed"
    GRAPH_ASSEMBLY_IN_PROGRESS = "graph_assembly_in_progress"
    GRAPH_ASSEMBLY_COMPLETED = "graph_assembly_completed"
    GRAPH_ASSEMBLY_FAILED = "graph_assembly_failed"
    EMBEDDINGS_IN_PROGRESS = "embeddings_in_progress"
    EMBEDDINGS_COMPLETED = "embeddings_completed"
    EMBEDDINGS_FAILED = "embeddings_failed"
    SCORING_IN_PROGRESS = "scoring_in_progress"
    SCORING_COMPLETED = "scoring_completed"
    SCORING_FAILED = "scoring_failed"
    DELIVERABLES_IN_PROGRESS = "deliverables_in_progress"
    DELIVERABLES_COMPLETED = "deliverables_completed"
    DELIVERABLES_FAILED = "deliverables_failed"
    NAVIGATOR_IN_PROGRESS = "navigator_in_progress"
    NAVIGATOR_COMPLETED = "navigator_completed"
    NAVIGATOR_FAILED = "navigator_failed"
    COMPLETED = "completed"

    @property
    def stage(self) -> PipelineStage | None:
        """Pipeline stage this status belongs to, ``None`` for pending/completed."""
        for stage in _PIPELINE_ORDER:
            if self.value.startswith(f"{stage.prefix}_"):
                return stage
        return None

    @property
    def is_failure(self) -> bool:
        return self.value.endswith("_failed")


# ==============================================================================
# STAGE RESULTS
# ==============================================================================


@dataclass(frozen=True, slots=True)
class Success:
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> StageStatus:
        return StageStatus.SUCCESS


@dataclass(frozen=True, slots=True)
class Failed:
    reason: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> StageStatus:
        return StageStatus.FAILED


@dataclass(frozen=True, slots=True)
class Skipped:
    reason: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> StageStatus:
        return StageStatus.SKIPPED


StageResult = Success | Failed | Skipped


# ==============================================================================
# ITEM STATE MACHINE
# ==============================================================================

WITHIN_STAGE_TRANSITIONS: dict[StageStatus, frozenset[StageStatus]] = {
    StageStatus.PENDING: frozenset({StageStatus.IN_PROGRESS, StageStatus.SKIPPED}),
    StageStatus.IN_PROGRESS: frozenset(
        {StageStatus.SUCCESS, StageStatus.FAILED, StageStatus.SKIPPED, StageStatus.PENDING}
    ),
    StageStatus.FAILED: frozenset({StageStatus.PENDING}),
    StageStatus.SUCCESS: frozenset(),
    StageStatus.SKIPPED: frozenset(),
}
STAGE_ENTRY_STATUSES = frozenset({StageStatus.PENDING, StageStatus.IN_PROGRESS, StageStatus.SKIPPED})
QUARANTINE_FLAG = "quarantined"


@dataclass(frozen=True, slots=True)
class ItemTransition:
    stage: ItemStage
    from_status: StageStatus | None
    to_status: StageStatus
    reason: str | None = None
    at: datetime = field(default_factory=utcnow)


@dataclass
class Item:
    """A single ingested unit of content and its pipeline progress.

    Attributes:
        id: Store assigned identifier.
        batch_id: Owning batch.
        content_hash: sha256 of the content, unique across the store.
        pointer: Where the content came from (path, URL, ...).
        content: Inline text, when the source provided it.
        stage: Current tracked stage, ``None`` until triage starts.
        status: Status at ``stage``.
        rights_id: Rights record attached at triage.
        metadata: Per-stage metadata blobs keyed by stage value.
        history: Every transition applied to the item, oldest first.
    """

    id: str
    batch_id: str
    content_hash: str
    pointer: str
    content: str | None = None
    media_type: str = "text/plain"
    source_metadata: dict[str, Any] = field(default_factory=dict)
    stage: ItemStage | None = None
    status: StageStatus | None = None
    rights_id: str | None = None
    metadata: dict[str, dict[str, Any]] = field(default_factory=dict)
    history: list[ItemTransition] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def status_for(self, stage: ItemStage) -> StageStatus | None:
        """Return the derived status of ``stage``; ``None`` when not reached."""
        if self.stage is None:
            return None
        if stage.position < self.stage.position:
            return StageStatus.SUCCESS
        if stage is self.stage:
            return self.status
        return None

    def is_eligible(self, stage: ItemStage) -> bool:
        """Selection predicate: upstream succeeded and this stage is still open."""
        upstream = stage.previous
        if upstream is not None and self.status_for(upstream) is not StageStatus.SUCCESS:
            return False
        return self.status_for(stage) in (None, StageStatus.PENDING)

    @property
    def quarantined(self) -> bool:
        return bool(self.metadata.get(ItemStage.TRIAGE.value, {}).get(QUARANTINE_FLAG))

    @property
    def text(self) -> str:
        return self.content if self.content is not None else ""

    def check_transition(self, stage: ItemStage, status: StageStatus) -> None:
        if stage is self.stage:
            current_status = self.status or StageStatus.PENDING
            if status not in WITHIN_STAGE_TRANSITIONS[current_status]:
                raise ItemTransitionError(
                    f"Item {self.id} cannot move {stage.value} from {current_status.value} to {status.value}",
                    instance=f"item/{self.id}",
                )
            return
        if stage.previous is not self.stage:
            current = self.stage.value if self.stage else "none"
            raise ItemTransitionError(
                f"Item {self.id} cannot enter {stage.value} from stage {current}",
                instance=f"item/{self.id}",
            )
        if self.stage is not None and self.status is not StageStatus.SUCCESS:
            raise ItemTransitionError(
                f"Item {self.id} cannot enter {stage.value} before {self.stage.value} succeeded",
                instance=f"item/{self.id}",
            )
        if status not in STAGE_ENTRY_STATUSES:
            raise ItemTransitionError(
                f"Item {self.id} cannot enter {stage.value} as {status.value}",
                instance=f"item/{self.id}",
            )

    def apply(
        self,
        stage: ItemStage,
        status: StageStatus,
        *,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
        at: datetime | None = None,
    ) -> ItemTransition:
        """Validate and apply a transition, recording it in the history."""
        self.check_transition(stage, status)
        from_status = self.status if stage is self.stage else None
        transition = ItemTransition(
            stage=stage,
            from_status=from_status,
            to_status=status,
            reason=reason,
            at=at or utcnow(),
        )
        self.stage = stage
        self.status = status
        self.history.append(transition)
        self.updated_at = transition.at
        blob = self.metadata.setdefault(stage.value, {})
        if metadata:
            blob.update(metadata)
        if status is StageStatus.FAILED:
            blob["error"] = reason
        elif status is StageStatus.SKIPPED:
            blob["skip_reason"] = reason
        return transition

    def display_status(self, stage: ItemStage) -> str | None:
        status = self.status_for(stage)
        if status is StageStatus.SUCCESS:
            return stage.success_token
        if status is StageStatus.SKIPPED and stage is ItemStage.TRIAGE and self.quarantined:
            return QUARANTINE_FLAG
        return status.value if status else None

    def snapshot(self) -> Item:
        return replace(
            self,
            source_metadata=dict(self.source_metadata),
            metadata={key: dict(value) for key, value in self.metadata.items()},
            history=list(self.history),
        )


# ==============================================================================
# BATCH
# ==============================================================================


@dataclass(frozen=True, slots=True)
class BatchTransition:
    from_status: BatchStatus
    to_status: BatchStatus
    reason: str | None = None
    at: datetime = field(default_factory=utcnow)


@dataclass
class Batch:
    """A named group of items moving through the pipeline together."""

    id: str
    name: str
    status: BatchStatus = BatchStatus.PENDING
    statistics: dict[str, dict[str, Any]] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    literacy_score: float | None = None
    paused: bool = False
    failed_stage: PipelineStage | None = None
    error: dict[str, Any] | None = None
    history: list[BatchTransition] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def quality_warnings(self) -> list[dict[str, Any]]:
        return list(self.metadata.get("quality_warnings", []))

    @property
    def stage(self) -> PipelineStage | None:
        return self.status.stage

    def snapshot(self) -> Batch:
        return replace(
            self,
            statistics={key: dict(value) for key, value in self.statistics.items()},
            metadata=_copy_metadata(self.metadata),
            error=dict(self.error) if self.error else None,
            history=list(self.history),
        )


def _copy_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    copied: dict[str, Any] = {}
    for key, value in metadata.items():
        if isinstance(value, dict):
            copied[key] = dict(value)
        elif isinstance(value, list):
            copied[key] = list(value)
        else:
            copied[key] = value
    return copied


# ==============================================================================
# RIGHTS AND POOL FACTS
# ==============================================================================


class ConsentStatus(str, Enum):
    UNKNOWN = "unknown"
    EXPLICIT = "explicit_consent"
    IMPLICIT = "implicit_consent"
    NO_CONSENT = "no_consent"
    WITHDRAWN = "withdrawn"


class LicenseType(str, Enum):
    UNSPECIFIED = "unspecified"
    CC0 = "cc0"
    CC_BY = "cc_by"
    CC_BY_SA = "cc_by_sa"
    CC_BY_NC = "cc_by_nc"
    CC_BY_NC_SA = "cc_by_nc_sa"
    CC_BY_ND = "cc_by_nd"
    CC_BY_NC_ND = "cc_by_nc_nd"
    PROPRIETARY = "proprietary"
    PUBLIC_DOMAIN = "public_domain"
    FAIR_USE = "fair_use"
    CUSTOM = "custom"


@dataclass
class RightsRecord:
    id: str
    batch_id: str
    source_ids: list[str]
    collection_method: str
    consent_status: ConsentStatus
    license_type: LicenseType
    source_owner: str = "unknown"
    publishability: bool = False
    training_eligibility: bool = False
    quarantined: bool = False
    custom_terms: dict[str, Any] = field(default_factory=dict)
    valid_time_start: datetime = field(default_factory=utcnow)


@dataclass
class LexiconEntry:
    id: str
    batch_id: str
    term: str
    canonical_key: str
    rights_id: str
    surface_forms: list[str] = field(default_factory=list)
    definition: str | None = None
    pool_association: str | None = None
    source_item_ids: list[str] = field(default_factory=list)


@dataclass
class PoolEntity:
    """A pool fact extracted from one item; becomes one graph node."""

    id: str
    batch_id: str
    item_id: str
    pool: str
    label: str
    canonical_key: str
    rights_id: str
    repr_text: str = ""
    attributes: dict[str, Any] = field(default_factory=dict)
    seq: int = 0


@dataclass
class PoolRelation:
    id: str
    batch_id: str
    item_id: str
    verb: str
    source_entity_id: str
    target_entity_id: str
    rights_id: str


# ==============================================================================
# EMBEDDINGS
# ==============================================================================


class EmbeddingJobStatus(str, Enum):
    VALIDATING = "validating"
    IN_PROGRESS = "in_progress"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset(
    {
        EmbeddingJobStatus.COMPLETED,
        EmbeddingJobStatus.FAILED,
        EmbeddingJobStatus.EXPIRED,
        EmbeddingJobStatus.CANCELLED,
    }
)


@dataclass
class EmbeddingJobRef:
    """Handle to one provider-side embedding batch job."""

    id: str
    batch_id: str
    provider_job_id: str
    custom_ids: list[str]
    status: EmbeddingJobStatus = EmbeddingJobStatus.VALIDATING
    input_file_id: str | None = None
    output_file_id: str | None = None
    error_file_id: str | None = None
    poll_failures: int = 0
    resolved_custom_ids: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    terminal_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def snapshot(self) -> EmbeddingJobRef:
        return replace(
            self,
            custom_ids=list(self.custom_ids),
            resolved_custom_ids=list(self.resolved_custom_ids),
        )


class EmbeddingSource(str, Enum):
    BATCH = "batch"
    SYNCHRONOUS_FALLBACK = "synchronous_fallback"


@dataclass(frozen=True, slots=True)
class StoredEmbedding:
    content_hash: str
    vector: tuple[float, ...]
    model: str
    source: EmbeddingSource
    item_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)


# ==============================================================================
# OPERATOR LOGS
# ==============================================================================


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class LogEntry:
    batch_id: str
    label: str
    level: LogLevel
    message: str
    context: dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=utcnow)


__all__ = [
    "Batch",
    "BatchStatus",
    "BatchTransition",
    "ConsentStatus",
    "EmbeddingJobRef",
    "EmbeddingJobStatus",
    "EmbeddingSource",
    "Failed",
    "Item",
    "ItemStage",
    "ItemTransition",
    "LexiconEntry",
    "LicenseType",
    "LogEntry",
    "LogLevel",
    "PipelineStage",
    "PoolEntity",
    "PoolRelation",
    "QUARANTINE_FLAG",
    "RightsRecord",
    "Skipped",
    "StageResult",
    "StageStatus",
    "StoredEmbedding",
    "Success",
    "TERMINAL_JOB_STATUSES",
    "utcnow",
]
