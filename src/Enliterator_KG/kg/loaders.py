"""Node and edge loaders for the data phase of graph assembly.

A :class:`LoadPlan` snapshots everything the batch contributes to its graph
from the pipeline store. :class:`NodeLoader` writes rights records first,
then lexicon entries, then pool entities ordered by (label, canonical key,
seq). :class:`EdgeLoader` runs after every node exists: relation edges are
restricted to the verb glossary and only ever MATCH their endpoints, so an
edge can never introduce a node.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from Enliterator_KG.pipeline.errors import MissingRightsError
from Enliterator_KG.pipeline.models import (
    ItemStage,
    LexiconEntry,
    PoolEntity,
    PoolRelation,
    RightsRecord,
    StageStatus,
)
from Enliterator_KG.pipeline.store import PipelineStore

from .backend import GraphWriter
from .schema import LEXICON_LABEL, RIGHTS_LABEL, RIGHTS_RELATIONSHIP
from .verbs import VERB_GLOSSARY

logger = structlog.get_logger(__name__)

_SCALAR = (str, int, float, bool)
_LOADABLE = {StageStatus.IN_PROGRESS, StageStatus.SUCCESS}


@dataclass(slots=True)
class LoadPlan:
    batch_id: str
    rights: list[RightsRecord]
    lexicon: list[LexiconEntry]
    entities: list[PoolEntity]
    relations: list[PoolRelation]

    @classmethod
    def from_store(cls, store: PipelineStore, batch_id: str) -> LoadPlan:
        """Collect the graph-eligible facts of a batch.

        Only entities of items claimed for (or done with) the graph stage are
        loaded. Every loaded fact must point at an existing rights record.
        """
        loadable = {
            item.id for item in store.list_items(batch_id) if item.status_for(ItemStage.GRAPH) in _LOADABLE
        }
        entities = sorted(
            (entity for entity in store.list_entities(batch_id) if entity.item_id in loadable),
            key=lambda entity: (entity.label, entity.canonical_key, entity.seq),
        )
        entity_ids = {entity.id for entity in entities}
        relations = sorted(
            (
                relation
                for relation in store.list_relations(batch_id)
                if relation.source_entity_id in entity_ids or relation.target_entity_id in entity_ids
            ),
            key=lambda relation: relation.id,
        )
        lexicon = sorted(store.list_lexicon_entries(batch_id), key=lambda entry: entry.id)
        records = {record.id: record for record in store.list_rights_records(batch_id)}
        referenced = {entity.rights_id for entity in entities} | {entry.rights_id for entry in lexicon}
        missing = sorted(rights_id for rights_id in referenced if rights_id not in records)
        if missing:
            raise MissingRightsError(
                f"Graph facts of batch {batch_id} reference unknown rights records",
                extra={"rights_ids": missing},
            )
        rights = [records[rights_id] for rights_id in sorted(referenced)]
        return cls(batch_id, rights, lexicon, entities, relations)


@dataclass(slots=True)
class LoadSummary:
    nodes: Counter[str] = field(default_factory=Counter)
    edges: Counter[str] = field(default_factory=Counter)
    skipped: Counter[str] = field(default_factory=Counter)

    def as_dict(self) -> dict[str, Any]:
        return {
            "nodes_written": sum(self.nodes.values()),
            "edges_written": sum(self.edges.values()),
            "nodes_by_label": dict(self.nodes),
            "edges_by_type": dict(self.edges),
            "edges_skipped": dict(self.skipped),
        }


def _rights_properties(record: RightsRecord) -> dict[str, Any]:
    return {
        "publishability": record.publishability,
        "training_eligibility": record.training_eligibility,
        "consent_status": record.consent_status.value,
        "license_type": record.license_type.value,
        "source_owner": record.source_owner,
        "collection_method": record.collection_method,
        "quarantined": record.quarantined,
        "valid_time_start": record.valid_time_start.isoformat(),
    }


def _entity_properties(entity: PoolEntity) -> dict[str, Any]:
    attributes = {key: value for key, value in entity.attributes.items() if isinstance(value, _SCALAR)}
    return {
        **attributes,
        "canonical_key": entity.canonical_key,
        "repr_text": entity.repr_text,
        "rights_id": entity.rights_id,
        "rights_ids": [entity.rights_id],
        "pool": entity.pool,
        "item_id": entity.item_id,
        "seq": entity.seq,
        "batch_id": entity.batch_id,
    }


class NodeLoader:
    def __init__(self, plan: LoadPlan) -> None:
        self.plan = plan

    def load(self, writer: GraphWriter, summary: LoadSummary) -> None:
        for record in self.plan.rights:
            writer.merge_node(RIGHTS_LABEL, record.id, _rights_properties(record))
            summary.nodes[RIGHTS_LABEL] += 1
        for entry in self.plan.lexicon:
            writer.merge_node(
                LEXICON_LABEL,
                entry.id,
                {
                    "term": entry.term,
                    "canonical_key": entry.canonical_key,
                    "canonical_description": entry.definition or entry.term,
                    "surface_forms": list(entry.surface_forms),
                    "pool_association": entry.pool_association,
                    "rights_id": entry.rights_id,
                },
            )
            summary.nodes[LEXICON_LABEL] += 1
        for entity in self.plan.entities:
            writer.merge_node(entity.label, entity.id, _entity_properties(entity))
            summary.nodes[entity.label] += 1


class EdgeLoader:
    def __init__(self, plan: LoadPlan) -> None:
        self.plan = plan
        self._entities: Mapping[str, PoolEntity] = {entity.id: entity for entity in plan.entities}

    def _link(
        self,
        writer: GraphWriter,
        summary: LoadSummary,
        source: tuple[str, str],
        rel_type: str,
        target: tuple[str, str],
        properties: Mapping[str, Any] | None = None,
    ) -> bool:
        if writer.merge_edge(source[0], source[1], rel_type, target[0], target[1], properties):
            summary.edges[rel_type] += 1
            return True
        summary.skipped["endpoint_not_written"] += 1
        return False

    def load(self, writer: GraphWriter, summary: LoadSummary) -> None:
        for entity in self.plan.entities:
            self._link(
                writer, summary, (entity.label, entity.id), RIGHTS_RELATIONSHIP, (RIGHTS_LABEL, entity.rights_id)
            )
        for entry in self.plan.lexicon:
            self._link(
                writer, summary, (LEXICON_LABEL, entry.id), RIGHTS_RELATIONSHIP, (RIGHTS_LABEL, entry.rights_id)
            )
        for relation in self.plan.relations:
            self._load_relation(writer, summary, relation)

    def _load_relation(self, writer: GraphWriter, summary: LoadSummary, relation: PoolRelation) -> None:
        spec = VERB_GLOSSARY.get(relation.verb)
        if spec is None or spec.structural:
            summary.skipped["unknown_verb"] += 1
            return
        source = self._entities.get(relation.source_entity_id)
        target = self._entities.get(relation.target_entity_id)
        if source is None or target is None:
            summary.skipped["missing_endpoint"] += 1
            return
        if not spec.accepts(source.label, target.label):
            logger.debug(
                "kg.loader.label_mismatch",
                verb=relation.verb,
                source_label=source.label,
                target_label=target.label,
            )
            summary.skipped["label_mismatch"] += 1
            return
        properties = {"verb": relation.verb, "rights_id": relation.rights_id, "relation_id": relation.id}
        written = self._link(
            writer, summary, (source.label, source.id), spec.relationship_type, (target.label, target.id), properties
        )
        reverse = spec.reverse_relationship_type
        if written and reverse:
            self._link(
                writer,
                summary,
                (target.label, target.id),
                reverse,
                (source.label, source.id),
                {**properties, "reverse_of": spec.relationship_type},
            )


def load_batch(writer: GraphWriter, plan: LoadPlan) -> LoadSummary:
    """Write all nodes, then all edges, inside the caller's transaction."""
    summary = LoadSummary()
    NodeLoader(plan).load(writer, summary)
    EdgeLoader(plan).load(writer, summary)
    logger.info("kg.loader.loaded", batch_id=plan.batch_id, **summary.as_dict())
    return summary


__all__ = ["EdgeLoader", "LoadPlan", "LoadSummary", "NodeLoader", "load_batch"]
