"""Pipeline store tracking batches, items and their pool facts.

The store is the single source of truth for pipeline progress. Every mutation
is an atomic update of one row keyed by id, and item state changes go through
the item state machine so that illegal transitions are rejected at the store
boundary rather than by convention in each stage.

The store supports:
- Idempotent item creation keyed by content hash
- Compare-and-set claims so a stage never processes an item twice
- Rights records, lexicon entries, pool entities and relations
- Stored embeddings keyed by content hash and embedding job references
- Operator facing batch logs

Thread Safety:
    ``InMemoryPipelineStore`` guards every operation with a re-entrant lock.
    Returned records are snapshots; mutating them does not change the store.

Example:
    >>> store = InMemoryPipelineStore()
    >>> batch = store.create_batch("field notes")
    >>> item, created = store.idempotent_create_item(batch.id, pointer="a.txt", content="hello")
    >>> created
    True
"""

from __future__ import annotations

# ==============================================================================
# IMPORTS
# ==============================================================================
import itertools
import threading
from collections.abc import Iterable, Mapping
from dataclasses import replace
from typing import Any, Protocol

import structlog

from Enliterator_KG.observability.metrics import record_batch_transition, record_quality_warning
from Enliterator_KG.utils.identifiers import content_hash as hash_content

from .errors import StoreError
from .models import (
    Batch,
    BatchStatus,
    BatchTransition,
    EmbeddingJobRef,
    Item,
    ItemStage,
    LexiconEntry,
    LogEntry,
    LogLevel,
    PoolEntity,
    PoolRelation,
    RightsRecord,
    StageStatus,
    StoredEmbedding,
    utcnow,
)

logger = structlog.get_logger(__name__)

_UNSET: Any = object()


# ==============================================================================
# STORE PROTOCOL
# ==============================================================================


class PipelineStore(Protocol):
    """Persistence seam used by the controller, stage runner and monitor."""

    def create_batch(self, name: str, *, metadata: Mapping[str, Any] | None = None) -> Batch: ...

    def get_batch(self, batch_id: str) -> Batch: ...

    def list_batches(self) -> list[Batch]: ...

    def transition_batch(
        self,
        batch_id: str,
        status: BatchStatus,
        *,
        expected: BatchStatus | Iterable[BatchStatus] | None = None,
        reason: str | None = None,
        statistics: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> Batch: ...

    def update_batch(self, batch_id: str, **changes: Any) -> Batch: ...

    def add_quality_warning(self, batch_id: str, code: str, message: str, **details: Any) -> Batch: ...

    def idempotent_create_item(
        self,
        batch_id: str,
        *,
        pointer: str,
        content: str | None = None,
        media_type: str = "text/plain",
        source_metadata: Mapping[str, Any] | None = None,
    ) -> tuple[Item, bool]: ...

    def get_item(self, item_id: str) -> Item: ...

    def find_item_by_hash(self, digest: str) -> Item | None: ...

    def list_items(self, batch_id: str) -> list[Item]: ...

    def transition_item(
        self,
        item_id: str,
        stage: ItemStage,
        status: StageStatus,
        *,
        expected: StageStatus | None = _UNSET,
        reason: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> Item: ...

    def claim_item(self, item_id: str, stage: ItemStage) -> Item | None: ...

    def release_claims(self, batch_id: str, stage: ItemStage, *, reason: str = ...) -> int: ...

    def reset_failed(self, batch_id: str, stage: ItemStage) -> int: ...

    def set_item_rights(self, item_id: str, rights_id: str) -> Item: ...

    def create_rights_record(self, batch_id: str, **fields: Any) -> RightsRecord: ...

    def get_rights_record(self, rights_id: str) -> RightsRecord: ...

    def list_rights_records(self, batch_id: str) -> list[RightsRecord]: ...

    def find_lexicon_entry(self, batch_id: str, canonical_key: str) -> LexiconEntry | None: ...

    def upsert_lexicon_entry(
        self,
        batch_id: str,
        *,
        term: str,
        canonical_key: str,
        rights_id: str,
        item_id: str,
        definition: str | None = None,
        pool_association: str | None = None,
    ) -> tuple[LexiconEntry, bool]: ...

    def list_lexicon_entries(self, batch_id: str) -> list[LexiconEntry]: ...

    def add_entity(self, batch_id: str, **fields: Any) -> PoolEntity: ...

    def list_entities(self, batch_id: str, *, item_id: str | None = None) -> list[PoolEntity]: ...

    def add_relation(self, batch_id: str, **fields: Any) -> PoolRelation: ...

    def list_relations(self, batch_id: str) -> list[PoolRelation]: ...

    def put_embedding(self, embedding: StoredEmbedding) -> bool: ...

    def get_embedding(self, digest: str) -> StoredEmbedding | None: ...

    def add_embedding_job(
        self,
        batch_id: str,
        *,
        provider_job_id: str,
        custom_ids: Iterable[str],
        input_file_id: str | None = None,
    ) -> EmbeddingJobRef: ...

    def get_embedding_job(self, job_id: str) -> EmbeddingJobRef: ...

    def update_embedding_job(self, job_id: str, **changes: Any) -> EmbeddingJobRef: ...

    def list_embedding_jobs(self, batch_id: str) -> list[EmbeddingJobRef]: ...

    def append_log(
        self, batch_id: str, label: str, message: str, *, level: LogLevel = LogLevel.INFO, **context: Any
    ) -> LogEntry: ...

    def list_logs(self, batch_id: str, *, label: str | None = None) -> list[LogEntry]: ...


# ==============================================================================
# IN-MEMORY IMPLEMENTATION
# ==============================================================================


class InMemoryPipelineStore:
    """In-memory store with idempotency helpers and atomic row updates.

    Performance:
        O(1) lookups by id or content hash. Listing operations are O(n) in
        the number of rows of the requested kind.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._counters: dict[str, itertools.count[int]] = {}
        self._batches: dict[str, Batch] = {}
        self._items: dict[str, Item] = {}
        self._items_by_hash: dict[str, str] = {}
        self._rights: dict[str, RightsRecord] = {}
        self._lexicon: dict[str, LexiconEntry] = {}
        self._lexicon_keys: dict[tuple[str, str], str] = {}
        self._entities: dict[str, PoolEntity] = {}
        self._relations: dict[str, PoolRelation] = {}
        self._embeddings: dict[str, StoredEmbedding] = {}
        self._jobs: dict[str, EmbeddingJobRef] = {}
        self._logs: list[LogEntry] = []
        self._entity_seq = itertools.count(1)

    def _next_id(self, prefix: str) -> str:
        counter = self._counters.setdefault(prefix, itertools.count(1))
        return f"{prefix}-{next(counter):06d}"

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------
    def create_batch(self, name: str, *, metadata: Mapping[str, Any] | None = None) -> Batch:
        with self._lock:
            batch = Batch(id=self._next_id("batch"), name=name, metadata=dict(metadata or {}))
            self._batches[batch.id] = batch
            logger.info("pipeline.store.batch_created", batch_id=batch.id, name=name)
            return batch.snapshot()

    def _batch(self, batch_id: str) -> Batch:
        try:
            return self._batches[batch_id]
        except KeyError as exc:
            raise StoreError(f"Batch {batch_id} not found", instance=f"batch/{batch_id}") from exc

    def get_batch(self, batch_id: str) -> Batch:
        with self._lock:
            return self._batch(batch_id).snapshot()

    def list_batches(self) -> list[Batch]:
        with self._lock:
            return [batch.snapshot() for batch in self._batches.values()]

    def transition_batch(
        self,
        batch_id: str,
        status: BatchStatus,
        *,
        expected: BatchStatus | Iterable[BatchStatus] | None = None,
        reason: str | None = None,
        statistics: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> Batch:
        """Move the batch to ``status``, optionally guarded by ``expected``."""
        with self._lock:
            batch = self._batch(batch_id)
            if expected is not None:
                allowed = {expected} if isinstance(expected, BatchStatus) else set(expected)
                if batch.status not in allowed:
                    raise StoreError(
                        f"Batch {batch_id} is {batch.status.value}, expected one of "
                        f"{sorted(s.value for s in allowed)}",
                        status=409,
                        instance=f"batch/{batch_id}",
                    )
            now = utcnow()
            batch.history.append(
                BatchTransition(from_status=batch.status, to_status=status, reason=reason, at=now)
            )
            batch.status = status
            batch.updated_at = now
            for key, values in (statistics or {}).items():
                batch.statistics[key] = dict(values)
            record_batch_transition(status.value)
            logger.debug(
                "pipeline.store.batch_transition",
                batch_id=batch_id,
                status=status.value,
                reason=reason,
            )
            return batch.snapshot()

    def update_batch(self, batch_id: str, **changes: Any) -> Batch:
        """Apply non-status changes: metadata keys, paused, literacy score, error."""
        with self._lock:
            batch = self._batch(batch_id)
            metadata = changes.pop("metadata", None)
            if metadata:
                batch.metadata.update(metadata)
            for key, value in changes.items():
                if key not in {"paused", "literacy_score", "failed_stage", "error", "name"}:
                    raise StoreError(f"Unsupported batch field '{key}'", status=400)
                setattr(batch, key, value)
            batch.updated_at = utcnow()
            return batch.snapshot()

    def add_quality_warning(self, batch_id: str, code: str, message: str, **details: Any) -> Batch:
        with self._lock:
            batch = self._batch(batch_id)
            warnings = batch.metadata.setdefault("quality_warnings", [])
            warnings.append({"code": code, "message": message, "at": utcnow().isoformat(), **details})
            record_quality_warning(code)
            logger.warning("pipeline.batch.quality_warning", batch_id=batch_id, code=code, **details)
            batch.updated_at = utcnow()
            return batch.snapshot()

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------
    def idempotent_create_item(
        self,
        batch_id: str,
        *,
        pointer: str,
        content: str | None = None,
        media_type: str = "text/plain",
        source_metadata: Mapping[str, Any] | None = None,
    ) -> tuple[Item, bool]:
        """Create an item unless one with the same content hash already exists.

        Returns:
            The stored item and whether it was created by this call.
        """
        digest = hash_content(content if content is not None else pointer)
        with self._lock:
            self._batch(batch_id)
            existing_id = self._items_by_hash.get(digest)
            if existing_id is not None:
                return self._items[existing_id].snapshot(), False
            item = Item(
                id=self._next_id("itm"),
                batch_id=batch_id,
                content_hash=digest,
                pointer=pointer,
                content=content,
                media_type=media_type,
                source_metadata=dict(source_metadata or {}),
            )
            self._items[item.id] = item
            self._items_by_hash[digest] = item.id
            return item.snapshot(), True

    def _item(self, item_id: str) -> Item:
        try:
            return self._items[item_id]
        except KeyError as exc:
            raise StoreError(f"Item {item_id} not found", instance=f"item/{item_id}") from exc

    def get_item(self, item_id: str) -> Item:
        with self._lock:
            return self._item(item_id).snapshot()

    def find_item_by_hash(self, digest: str) -> Item | None:
        with self._lock:
            item_id = self._items_by_hash.get(digest)
            return self._items[item_id].snapshot() if item_id else None

    def list_items(self, batch_id: str) -> list[Item]:
        with self._lock:
            return [item.snapshot() for item in self._items.values() if item.batch_id == batch_id]

    def transition_item(
        self,
        item_id: str,
        stage: ItemStage,
        status: StageStatus,
        *,
        expected: StageStatus | None = _UNSET,
        reason: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> Item:
        """Apply one state-machine transition to an item.

        ``expected`` guards the derived status of ``stage`` before the change;
        pass ``None`` to require that the item has not reached the stage yet.
        """
        with self._lock:
            item = self._item(item_id)
            if expected is not _UNSET and item.status_for(stage) is not expected:
                current = item.status_for(stage)
                raise StoreError(
                    f"Item {item_id} {stage.value} status is "
                    f"{current.value if current else 'absent'}",
                    status=409,
                    instance=f"item/{item_id}",
                )
            item.apply(stage, status, reason=reason, metadata=dict(metadata or {}))
            return item.snapshot()

    def claim_item(self, item_id: str, stage: ItemStage) -> Item | None:
        """Atomically move an eligible item to ``in_progress`` at ``stage``.

        Returns ``None`` when the item is no longer eligible, for example
        because a concurrent run already claimed or finished it.
        """
        with self._lock:
            item = self._item(item_id)
            if not item.is_eligible(stage):
                return None
            item.apply(stage, StageStatus.IN_PROGRESS)
            return item.snapshot()

    def release_claims(self, batch_id: str, stage: ItemStage, *, reason: str = "claim released") -> int:
        """Return stale ``in_progress`` items of ``stage`` to ``pending``."""
        released = 0
        with self._lock:
            for item in self._items.values():
                if item.batch_id != batch_id:
                    continue
                if item.stage is stage and item.status is StageStatus.IN_PROGRESS:
                    item.apply(stage, StageStatus.PENDING, reason=reason)
                    released += 1
        if released:
            logger.info(
                "pipeline.store.claims_released",
                batch_id=batch_id,
                stage=stage.value,
                count=released,
            )
        return released

    def reset_failed(self, batch_id: str, stage: ItemStage) -> int:
        """Return failed items of ``stage`` to ``pending`` for another attempt."""
        reset = 0
        with self._lock:
            for item in self._items.values():
                if item.batch_id == batch_id and item.stage is stage and item.status is StageStatus.FAILED:
                    item.apply(stage, StageStatus.PENDING, reason="operator retry")
                    reset += 1
        return reset

    def set_item_rights(self, item_id: str, rights_id: str) -> Item:
        with self._lock:
            item = self._item(item_id)
            item.rights_id = rights_id
            return item.snapshot()

    # ------------------------------------------------------------------
    # Rights
    # ------------------------------------------------------------------
    def create_rights_record(self, batch_id: str, **fields: Any) -> RightsRecord:
        with self._lock:
            record = RightsRecord(id=self._next_id("rights"), batch_id=batch_id, **fields)
            self._rights[record.id] = record
            return replace(record)

    def get_rights_record(self, rights_id: str) -> RightsRecord:
        with self._lock:
            try:
                return replace(self._rights[rights_id])
            except KeyError as exc:
                raise StoreError(f"Rights record {rights_id} not found") from exc

    def list_rights_records(self, batch_id: str) -> list[RightsRecord]:
        with self._lock:
            return [replace(record) for record in self._rights.values() if record.batch_id == batch_id]

    # ------------------------------------------------------------------
    # Lexicon
    # ------------------------------------------------------------------
    def find_lexicon_entry(self, batch_id: str, canonical_key: str) -> LexiconEntry | None:
        with self._lock:
            entry_id = self._lexicon_keys.get((batch_id, canonical_key))
            return replace(self._lexicon[entry_id]) if entry_id else None

    def upsert_lexicon_entry(
        self,
        batch_id: str,
        *,
        term: str,
        canonical_key: str,
        rights_id: str,
        item_id: str,
        definition: str | None = None,
        pool_association: str | None = None,
    ) -> tuple[LexiconEntry, bool]:
        """Insert a lexicon entry or fold the surface form into the existing one."""
        with self._lock:
            entry_id = self._lexicon_keys.get((batch_id, canonical_key))
            if entry_id is not None:
                entry = self._lexicon[entry_id]
                if term not in entry.surface_forms:
                    entry.surface_forms.append(term)
                if item_id not in entry.source_item_ids:
                    entry.source_item_ids.append(item_id)
                if entry.definition is None and definition:
                    entry.definition = definition
                return replace(entry), False
            entry = LexiconEntry(
                id=self._next_id("lex"),
                batch_id=batch_id,
                term=term,
                canonical_key=canonical_key,
                rights_id=rights_id,
                surface_forms=[term],
                definition=definition,
                pool_association=pool_association,
                source_item_ids=[item_id],
            )
            self._lexicon[entry.id] = entry
            self._lexicon_keys[(batch_id, canonical_key)] = entry.id
            return replace(entry), True

    def list_lexicon_entries(self, batch_id: str) -> list[LexiconEntry]:
        with self._lock:
            return [replace(entry) for entry in self._lexicon.values() if entry.batch_id == batch_id]

    # ------------------------------------------------------------------
    # Pool facts
    # ------------------------------------------------------------------
    def add_entity(self, batch_id: str, **fields: Any) -> PoolEntity:
        with self._lock:
            entity = PoolEntity(
                id=self._next_id("ent"),
                batch_id=batch_id,
                seq=next(self._entity_seq),
                **fields,
            )
            self._entities[entity.id] = entity
            return replace(entity)

    def list_entities(self, batch_id: str, *, item_id: str | None = None) -> list[PoolEntity]:
        with self._lock:
            return [
                replace(entity)
                for entity in self._entities.values()
                if entity.batch_id == batch_id and (item_id is None or entity.item_id == item_id)
            ]

    def add_relation(self, batch_id: str, **fields: Any) -> PoolRelation:
        with self._lock:
            relation = PoolRelation(id=self._next_id("rel"), batch_id=batch_id, **fields)
            self._relations[relation.id] = relation
            return replace(relation)

    def list_relations(self, batch_id: str) -> list[PoolRelation]:
        with self._lock:
            return [replace(rel) for rel in self._relations.values() if rel.batch_id == batch_id]

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------
    def put_embedding(self, embedding: StoredEmbedding) -> bool:
        """Store an embedding unless one already exists for the content hash."""
        with self._lock:
            if embedding.content_hash in self._embeddings:
                return False
            self._embeddings[embedding.content_hash] = embedding
            return True

    def get_embedding(self, digest: str) -> StoredEmbedding | None:
        with self._lock:
            return self._embeddings.get(digest)

    def add_embedding_job(
        self,
        batch_id: str,
        *,
        provider_job_id: str,
        custom_ids: Iterable[str],
        input_file_id: str | None = None,
    ) -> EmbeddingJobRef:
        with self._lock:
            ref = EmbeddingJobRef(
                id=self._next_id("ejob"),
                batch_id=batch_id,
                provider_job_id=provider_job_id,
                custom_ids=list(custom_ids),
                input_file_id=input_file_id,
            )
            self._jobs[ref.id] = ref
            return ref.snapshot()

    def get_embedding_job(self, job_id: str) -> EmbeddingJobRef:
        with self._lock:
            try:
                return self._jobs[job_id].snapshot()
            except KeyError as exc:
                raise StoreError(f"Embedding job {job_id} not found") from exc

    def update_embedding_job(self, job_id: str, **changes: Any) -> EmbeddingJobRef:
        with self._lock:
            try:
                ref = self._jobs[job_id]
            except KeyError as exc:
                raise StoreError(f"Embedding job {job_id} not found") from exc
            for key, value in changes.items():
                if not hasattr(ref, key):
                    raise StoreError(f"Unsupported embedding job field '{key}'", status=400)
                setattr(ref, key, value)
            if ref.is_terminal and ref.terminal_at is None:
                ref.terminal_at = utcnow()
            return ref.snapshot()

    def list_embedding_jobs(self, batch_id: str) -> list[EmbeddingJobRef]:
        with self._lock:
            return [ref.snapshot() for ref in self._jobs.values() if ref.batch_id == batch_id]

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------
    def append_log(
        self,
        batch_id: str,
        label: str,
        message: str,
        *,
        level: LogLevel = LogLevel.INFO,
        **context: Any,
    ) -> LogEntry:
        entry = LogEntry(batch_id=batch_id, label=label, level=level, message=message, context=context)
        with self._lock:
            self._logs.append(entry)
        return entry

    def list_logs(self, batch_id: str, *, label: str | None = None) -> list[LogEntry]:
        with self._lock:
            return [
                entry
                for entry in self._logs
                if entry.batch_id == batch_id and (label is None or entry.label == label)
            ]


__all__ = ["InMemoryPipelineStore", "PipelineStore"]
