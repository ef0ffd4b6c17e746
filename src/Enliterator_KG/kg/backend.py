"""Graph backend interfaces and the in-memory implementation.

Graph assembly talks to a :class:`GraphBackend`, which hands out one
transaction at a time for a namespace: either a schema transaction applying
constraint and index statements, or a data transaction wrapping a
:class:`GraphWriter`. The two kinds never share a transaction.

Key Responsibilities:
    - Define the backend and writer protocols used by loaders and maintenance
    - Provide :class:`InMemoryGraphBackend`, a copy-on-write store used by the
      test-suite and dry runs, with fault injection per transaction kind

Thread Safety:
    - ``InMemoryGraphBackend`` serialises transactions with a lock; a namespace
      never has more than one open transaction.
"""

from __future__ import annotations

# ==============================================================================
# IMPORTS
# ==============================================================================
import copy
import threading
from collections import Counter
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

import structlog

from Enliterator_KG.pipeline.errors import GraphStoreUnavailableError

from .schema import CONTENT_LABELS, RIGHTS_LABEL, RIGHTS_RELATIONSHIP, ConstraintKind, SchemaStatement

logger = structlog.get_logger(__name__)

T = TypeVar("T")


# ==============================================================================
# RESULT MODELS
# ==============================================================================


@dataclass(slots=True)
class SchemaSummary:
    applied: int = 0
    skipped: list[str] = field(default_factory=list)


@dataclass(slots=True)
class GraphStats:
    """Counts read back from a namespace for integrity verification."""

    node_counts: dict[str, int] = field(default_factory=dict)
    edge_counts: dict[str, int] = field(default_factory=dict)
    nodes_missing_rights: list[str] = field(default_factory=list)

    @property
    def content_nodes(self) -> int:
        return sum(count for label, count in self.node_counts.items() if label in CONTENT_LABELS)

    def domain_edges(self, structural: Iterable[str] = (RIGHTS_RELATIONSHIP,)) -> int:
        excluded = set(structural)
        return sum(count for rel_type, count in self.edge_counts.items() if rel_type not in excluded)


# ==============================================================================
# PROTOCOLS
# ==============================================================================


class GraphWriter(Protocol):
    """Data operations available inside one data transaction."""

    def merge_node(self, label: str, node_id: str, properties: Mapping[str, Any]) -> None: ...

    def merge_edge(
        self,
        source_label: str,
        source_id: str,
        rel_type: str,
        target_label: str,
        target_id: str,
        properties: Mapping[str, Any] | None = None,
    ) -> bool: ...

    def duplicate_groups(self, label: str) -> list[tuple[str, list[str]]]: ...

    def merge_into(self, label: str, keep_id: str, remove_id: str) -> int: ...

    def delete_orphans(self, isolatable: Iterable[str]) -> list[tuple[str, str]]: ...

    def statistics(self) -> GraphStats: ...


class GraphBackend(Protocol):
    def ensure_namespace(self, namespace: str) -> None: ...

    def run_schema(self, namespace: str, statements: Sequence[SchemaStatement]) -> SchemaSummary: ...

    def run_data(self, namespace: str, work: Callable[[GraphWriter], T]) -> T: ...

    def close(self) -> None: ...


# ==============================================================================
# IN-MEMORY IMPLEMENTATION
# ==============================================================================


@dataclass(slots=True)
class _Node:
    label: str
    properties: dict[str, Any]


@dataclass(slots=True)
class _Namespace:
    unique: set[tuple[str, str]] = field(default_factory=set)
    required: set[tuple[str, str]] = field(default_factory=set)
    indexes: set[tuple[str, str]] = field(default_factory=set)
    nodes: dict[str, _Node] = field(default_factory=dict)
    edges: dict[tuple[str, str, str], dict[str, Any]] = field(default_factory=dict)


class InMemoryGraphWriter:
    """Data transaction over a working copy of one namespace."""

    def __init__(self, state: _Namespace) -> None:
        self._state = state

    def merge_node(self, label: str, node_id: str, properties: Mapping[str, Any]) -> None:
        node = self._state.nodes.get(node_id)
        if node is None:
            node = _Node(label=label, properties={"id": node_id})
            self._state.nodes[node_id] = node
        elif node.label != label:
            raise ValueError(f"Node {node_id} already exists with label {node.label}")
        node.properties.update({key: value for key, value in properties.items() if value is not None})
        for constrained_label, attribute in self._state.required:
            if constrained_label == label and node.properties.get(attribute) is None:
                raise ValueError(f"Node {node_id} violates {label}.{attribute} existence constraint")

    def _matches(self, node_id: str, label: str) -> bool:
        node = self._state.nodes.get(node_id)
        return node is not None and node.label == label

    def merge_edge(
        self,
        source_label: str,
        source_id: str,
        rel_type: str,
        target_label: str,
        target_id: str,
        properties: Mapping[str, Any] | None = None,
    ) -> bool:
        if not (self._matches(source_id, source_label) and self._matches(target_id, target_label)):
            return False
        edge = self._state.edges.setdefault((source_id, rel_type, target_id), {})
        edge.update(properties or {})
        return True

    def duplicate_groups(self, label: str) -> list[tuple[str, list[str]]]:
        groups: dict[str, list[tuple[int, str]]] = {}
        for node_id, node in self._state.nodes.items():
            key = node.properties.get("canonical_key")
            if node.label != label or key is None:
                continue
            groups.setdefault(key, []).append((node.properties.get("seq", 0), node_id))
        return [
            (key, [node_id for _, node_id in sorted(members)])
            for key, members in sorted(groups.items())
            if len(members) > 1
        ]

    def merge_into(self, label: str, keep_id: str, remove_id: str) -> int:
        keep = self._state.nodes[keep_id]
        removed = self._state.nodes[remove_id]
        moved = 0
        for source, rel_type, target in [key for key in self._state.edges if remove_id in (key[0], key[2])]:
            properties = self._state.edges.pop((source, rel_type, target))
            source = keep_id if source == remove_id else source
            target = keep_id if target == remove_id else target
            if source == target:
                continue
            existing = self._state.edges.setdefault((source, rel_type, target), {})
            for key, value in properties.items():
                existing.setdefault(key, value)
            moved += 1
        rights_ids = list(keep.properties.get("rights_ids", []))
        for rights_id in removed.properties.get("rights_ids", []):
            if rights_id not in rights_ids:
                rights_ids.append(rights_id)
        keep.properties["rights_ids"] = rights_ids
        del self._state.nodes[remove_id]
        return moved

    def delete_orphans(self, isolatable: Iterable[str]) -> list[tuple[str, str]]:
        excluded = set(isolatable)
        connected = {node_id for source, _, target in self._state.edges for node_id in (source, target)}
        orphans = sorted(
            (node_id, node.label)
            for node_id, node in self._state.nodes.items()
            if node_id not in connected and node.label not in excluded
        )
        for node_id, _ in orphans:
            del self._state.nodes[node_id]
        return orphans

    def statistics(self) -> GraphStats:
        node_counts = Counter(node.label for node in self._state.nodes.values())
        edge_counts = Counter(rel_type for _, rel_type, _ in self._state.edges)
        with_rights = {
            source
            for source, rel_type, target in self._state.edges
            if rel_type == RIGHTS_RELATIONSHIP and self._matches(target, RIGHTS_LABEL)
        }
        missing = sorted(
            node_id
            for node_id, node in self._state.nodes.items()
            if node.label in CONTENT_LABELS
            and (node.properties.get("rights_id") is None or node_id not in with_rights)
        )
        return GraphStats(dict(node_counts), dict(edge_counts), missing)


class InMemoryGraphBackend:
    """Transactional in-memory graph keyed by namespace.

    Every transaction works on a deep copy of the namespace and replaces it
    on commit, so a failure leaves the namespace exactly as it was.

    Example:
        >>> backend = InMemoryGraphBackend()
        >>> backend.ensure_namespace("batch-000001")
        >>> backend.run_data("batch-000001", lambda writer: writer.merge_node("Idea", "ent-1", {}))
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._namespaces: dict[str, _Namespace] = {}
        self._open: dict[str, str] = {}
        self._faults: dict[str, list[Exception]] = {"schema": [], "data": []}
        self.transactions: list[tuple[str, str]] = []

    def inject_failure(self, kind: str, exc: Exception) -> None:
        """Fail the next ``kind`` transaction with ``exc`` before it commits."""
        self._faults[kind].append(exc)

    def ensure_namespace(self, namespace: str) -> None:
        with self._lock:
            self._namespaces.setdefault(namespace, _Namespace())

    def _begin(self, namespace: str, kind: str) -> _Namespace:
        if namespace not in self._namespaces:
            raise GraphStoreUnavailableError(f"Graph namespace {namespace} does not exist")
        if namespace in self._open:
            raise GraphStoreUnavailableError(
                f"A {self._open[namespace]} transaction is already open on {namespace}; "
                f"schema and data operations cannot share a transaction"
            )
        self._open[namespace] = kind
        self.transactions.append((namespace, kind))
        return copy.deepcopy(self._namespaces[namespace])

    def _raise_injected(self, kind: str) -> None:
        if self._faults[kind]:
            raise self._faults[kind].pop(0)

    def run_schema(self, namespace: str, statements: Sequence[SchemaStatement]) -> SchemaSummary:
        with self._lock:
            working = self._begin(namespace, "schema")
            try:
                self._raise_injected("schema")
                summary = SchemaSummary()
                for statement in statements:
                    target = {
                        ConstraintKind.UNIQUE: working.unique,
                        ConstraintKind.EXISTS: working.required,
                        ConstraintKind.INDEX: working.indexes,
                    }[statement.kind]
                    target.add((statement.label, statement.attribute))
                    summary.applied += 1
                self._namespaces[namespace] = working
                return summary
            finally:
                del self._open[namespace]

    def run_data(self, namespace: str, work: Callable[[GraphWriter], T]) -> T:
        with self._lock:
            working = self._begin(namespace, "data")
            try:
                result = work(InMemoryGraphWriter(working))
                self._raise_injected("data")
                self._namespaces[namespace] = working
                return result
            finally:
                del self._open[namespace]

    def close(self) -> None:
        logger.debug("kg.backend.closed", namespaces=len(self._namespaces))

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------
    def nodes(self, namespace: str, label: str | None = None) -> dict[str, dict[str, Any]]:
        with self._lock:
            state = self._namespaces[namespace]
            return {
                node_id: dict(node.properties, label=node.label)
                for node_id, node in state.nodes.items()
                if label is None or node.label == label
            }

    def edges(self, namespace: str, rel_type: str | None = None) -> list[tuple[str, str, str]]:
        with self._lock:
            return sorted(
                key for key in self._namespaces[namespace].edges if rel_type is None or key[1] == rel_type
            )

    def constraints(self, namespace: str) -> set[tuple[str, str]]:
        with self._lock:
            state = self._namespaces[namespace]
            return set(state.unique) | set(state.required)

    def has_namespace(self, namespace: str) -> bool:
        with self._lock:
            return namespace in self._namespaces


__all__ = [
    "GraphBackend",
    "GraphStats",
    "GraphWriter",
    "InMemoryGraphBackend",
    "InMemoryGraphWriter",
    "SchemaSummary",
]
