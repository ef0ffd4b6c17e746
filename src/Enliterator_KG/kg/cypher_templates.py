"""Utilities for building idempotent Cypher statements.

This module provides template-based Cypher generation for every operation of
graph assembly: schema statements, node and edge merges, duplicate discovery
and merging, orphan deletion and integrity counts.

Labels and relationship types cannot be passed as query parameters, so they
are interpolated after validation against the schema and verb glossary. All
values travel as parameters.

Thread Safety:
    Thread-safe: All methods are stateless.

Example:
-------
    >>> templates = CypherTemplates()
    >>> query, params = templates.merge_node("Idea", "ent-1", {"canonical_key": "trust"})
    >>> print(query)
    MERGE (n:Idea {id: $id}) SET n += $props RETURN n.id AS id

"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .schema import ALL_LABELS, ConstraintKind, SchemaStatement

_RELATIONSHIP_TYPE = re.compile(r"^[A-Z][A-Z0-9_]*$")


# ==============================================================================
# CLIENT IMPLEMENTATION
# ==============================================================================


@dataclass(slots=True, frozen=True)
class CypherTemplates:
    """Pre-built Cypher statements for graph assembly.

    Attributes:
        labels: Labels that may be interpolated into statements.
    """

    labels: frozenset[str] = field(default_factory=lambda: ALL_LABELS)

    def _label(self, label: str) -> str:
        if label not in self.labels:
            raise ValueError(f"Unknown label '{label}'")
        return label

    @staticmethod
    def _relationship_type(rel_type: str) -> str:
        if not _RELATIONSHIP_TYPE.match(rel_type):
            raise ValueError(f"Invalid relationship type '{rel_type}'")
        return rel_type

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------
    def schema_statement(self, statement: SchemaStatement) -> str:
        label = self._label(statement.label)
        prop = statement.attribute
        if statement.kind is ConstraintKind.UNIQUE:
            return (
                f"CREATE CONSTRAINT {statement.name} IF NOT EXISTS "
                f"FOR (n:{label}) REQUIRE n.{prop} IS UNIQUE"
            )
        if statement.kind is ConstraintKind.EXISTS:
            return (
                f"CREATE CONSTRAINT {statement.name} IF NOT EXISTS "
                f"FOR (n:{label}) REQUIRE n.{prop} IS NOT NULL"
            )
        return f"CREATE INDEX {statement.name} IF NOT EXISTS FOR (n:{label}) ON (n.{prop})"

    @staticmethod
    def create_database(name: str) -> tuple[str, dict[str, Any]]:
        return "CREATE DATABASE $name IF NOT EXISTS WAIT", {"name": name}

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------
    def merge_node(
        self, label: str, node_id: str, properties: Mapping[str, Any]
    ) -> tuple[str, dict[str, Any]]:
        query = f"MERGE (n:{self._label(label)} {{id: $id}}) SET n += $props RETURN n.id AS id"
        return query, {"id": node_id, "props": dict(properties)}

    def merge_edge(
        self,
        source_label: str,
        source_id: str,
        rel_type: str,
        target_label: str,
        target_id: str,
        properties: Mapping[str, Any] | None = None,
    ) -> tuple[str, dict[str, Any]]:
        """MATCH both endpoints, then MERGE; no row is returned when either is missing."""
        query = (
            f"MATCH (s:{self._label(source_label)} {{id: $source_id}}) "
            f"MATCH (t:{self._label(target_label)} {{id: $target_id}}) "
            f"MERGE (s)-[r:{self._relationship_type(rel_type)}]->(t) "
            "SET r += $props RETURN count(r) AS merged"
        )
        return query, {"source_id": source_id, "target_id": target_id, "props": dict(properties or {})}

    def duplicate_groups(self, label: str) -> tuple[str, dict[str, Any]]:
        query = (
            f"MATCH (n:{self._label(label)}) WHERE n.canonical_key IS NOT NULL "
            "WITH n ORDER BY n.seq, n.id "
            "WITH n.canonical_key AS key, collect(n.id) AS ids "
            "WHERE size(ids) > 1 RETURN key, ids ORDER BY key"
        )
        return query, {}

    @staticmethod
    def node_relationships(node_id: str) -> tuple[str, dict[str, Any]]:
        query = (
            "MATCH (d {id: $id})-[r]-(o) "
            "RETURN type(r) AS type, startNode(r) = d AS outgoing, o.id AS other, "
            "labels(o)[0] AS other_label, properties(r) AS props"
        )
        return query, {"id": node_id}

    def move_relationship(
        self,
        keep_label: str,
        keep_id: str,
        rel_type: str,
        other_label: str,
        other_id: str,
        *,
        outgoing: bool,
        properties: Mapping[str, Any],
    ) -> tuple[str, dict[str, Any]]:
        pattern = "(k)-[r:{t}]->(o)" if outgoing else "(o)-[r:{t}]->(k)"
        query = (
            f"MATCH (k:{self._label(keep_label)} {{id: $keep_id}}) "
            f"MATCH (o:{self._label(other_label)} {{id: $other_id}}) "
            f"MERGE {pattern.format(t=self._relationship_type(rel_type))} "
            "SET r += $props RETURN count(r) AS merged"
        )
        return query, {"keep_id": keep_id, "other_id": other_id, "props": dict(properties)}

    def absorb_node(self, label: str, keep_id: str, remove_id: str) -> tuple[str, dict[str, Any]]:
        """Union rights pointers into the survivor and delete the duplicate."""
        label = self._label(label)
        query = (
            f"MATCH (k:{label} {{id: $keep_id}}) MATCH (d:{label} {{id: $remove_id}}) "
            "SET k.rights_ids = coalesce(k.rights_ids, []) + "
            "[x IN coalesce(d.rights_ids, []) WHERE NOT x IN coalesce(k.rights_ids, [])] "
            "DETACH DELETE d RETURN k.id AS id"
        )
        return query, {"keep_id": keep_id, "remove_id": remove_id}

    @staticmethod
    def delete_orphans(isolatable: Iterable[str]) -> tuple[str, dict[str, Any]]:
        query = (
            "MATCH (n) WHERE NOT (n)--() "
            "AND none(label IN labels(n) WHERE label IN $isolatable) "
            "WITH n, n.id AS id, labels(n)[0] AS label DELETE n RETURN id, label"
        )
        return query, {"isolatable": sorted(isolatable)}

    @staticmethod
    def count_nodes_by_label() -> tuple[str, dict[str, Any]]:
        return "MATCH (n) RETURN labels(n)[0] AS label, count(n) AS count", {}

    @staticmethod
    def count_edges_by_type() -> tuple[str, dict[str, Any]]:
        return "MATCH ()-[r]->() RETURN type(r) AS type, count(r) AS count", {}

    def nodes_missing_rights(
        self, labels: Iterable[str], rights_label: str, rights_type: str
    ) -> tuple[str, dict[str, Any]]:
        query = (
            "MATCH (n) WHERE any(label IN labels(n) WHERE label IN $labels) "
            f"AND (n.rights_id IS NULL OR NOT (n)-[:{self._relationship_type(rights_type)}]->"
            f"(:{self._label(rights_label)})) "
            "RETURN n.id AS id"
        )
        return query, {"labels": sorted(labels)}


__all__ = ["CypherTemplates"]
