"""Graph maintenance passes run after loading.

Deduplication merges nodes sharing (label, canonical key) into the node with
the lowest sequence number. Orphan removal deletes nodes without any
relationship unless their label may legitimately stand alone. Integrity
verification reads the resulting counts back and decides whether the graph
is acceptable.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import structlog

from Enliterator_KG.config.settings import GraphSettings
from Enliterator_KG.pipeline.errors import MissingRightsError

from .backend import GraphStats, GraphWriter
from .schema import CAN_BE_ISOLATED, CONTENT_LABELS, LEXICON_LABEL
from .verbs import known_relationship_types, structural_relationship_types

logger = structlog.get_logger(__name__)

LOW_RELATIONSHIP_DENSITY = "low_relationship_density"


@dataclass(slots=True)
class DedupSummary:
    groups: int = 0
    merged: int = 0
    edges_moved: int = 0


class Deduplicator:
    def __init__(self, labels: Iterable[str] | None = None) -> None:
        self.labels = sorted(labels if labels is not None else CONTENT_LABELS | {LEXICON_LABEL})

    def run(self, writer: GraphWriter) -> DedupSummary:
        summary = DedupSummary()
        for label in self.labels:
            for key, node_ids in writer.duplicate_groups(label):
                keep_id, *duplicates = node_ids
                summary.groups += 1
                for remove_id in duplicates:
                    summary.edges_moved += writer.merge_into(label, keep_id, remove_id)
                    summary.merged += 1
                logger.debug("kg.dedup.merged", label=label, key=key, kept=keep_id, removed=duplicates)
        return summary


class OrphanRemover:
    def __init__(self, isolatable: Iterable[str] = CAN_BE_ISOLATED) -> None:
        self.isolatable = frozenset(isolatable)

    def run(self, writer: GraphWriter) -> list[tuple[str, str]]:
        removed = writer.delete_orphans(self.isolatable)
        if removed:
            logger.info("kg.orphans.removed", count=len(removed), labels=sorted({label for _, label in removed}))
        return removed


@dataclass(slots=True)
class IntegrityReport:
    node_counts: dict[str, int]
    edge_counts: dict[str, int]
    content_nodes: int
    domain_edges: int
    unknown_relationship_types: list[str] = field(default_factory=list)
    warnings: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "node_counts": dict(self.node_counts),
            "edge_counts": dict(self.edge_counts),
            "content_nodes": self.content_nodes,
            "domain_edges": self.domain_edges,
            "unknown_relationship_types": list(self.unknown_relationship_types),
            "warnings": [warning["code"] for warning in self.warnings],
        }


class IntegrityVerifier:
    """Checks a freshly assembled graph.

    Raises:
        MissingRightsError: A content node lacks a rights pointer or its
            ``HAS_RIGHTS`` edge.
    """

    def __init__(self, settings: GraphSettings | None = None) -> None:
        self.settings = settings or GraphSettings()

    def verify(self, stats: GraphStats) -> IntegrityReport:
        if stats.nodes_missing_rights:
            raise MissingRightsError(
                f"{len(stats.nodes_missing_rights)} graph nodes have no rights record",
                extra={"node_ids": stats.nodes_missing_rights[:20]},
            )
        domain_edges = stats.domain_edges(structural_relationship_types())
        report = IntegrityReport(
            node_counts=dict(stats.node_counts),
            edge_counts=dict(stats.edge_counts),
            content_nodes=stats.content_nodes,
            domain_edges=domain_edges,
            unknown_relationship_types=sorted(set(stats.edge_counts) - known_relationship_types()),
        )
        if report.content_nodes >= self.settings.min_nodes_for_density_check and domain_edges == 0:
            report.warnings.append(
                {
                    "code": LOW_RELATIONSHIP_DENSITY,
                    "message": (
                        f"Graph has {report.content_nodes} content nodes but no relationships "
                        "between them"
                    ),
                    "content_nodes": report.content_nodes,
                    "domain_edges": 0,
                }
            )
        if report.unknown_relationship_types:
            logger.warning("kg.integrity.unknown_relationships", types=report.unknown_relationship_types)
        return report


__all__ = [
    "DedupSummary",
    "Deduplicator",
    "IntegrityReport",
    "IntegrityVerifier",
    "LOW_RELATIONSHIP_DENSITY",
    "OrphanRemover",
]
