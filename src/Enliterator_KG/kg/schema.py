"""Graph schema definitions for the batch knowledge graph.

This module provides the pool vocabulary, the node schema of every label and
the constraints and indexes created in the schema phase of graph assembly.

Key Responsibilities:
    - Map pool names used by extraction collaborators onto node labels
    - Define which labels may exist without relationships
    - Derive the schema statements (constraints and indexes) per label

Collaborators:
    - Upstream: Pools stage, node loader, orphan remover, integrity verifier
    - Downstream: Cypher templates and graph backends

Thread Safety:
    - Thread-safe: All values are immutable
"""

# ============================================================================
# IMPORTS
# ============================================================================

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum

# ============================================================================
# POOL VOCABULARY
# ============================================================================

RIGHTS_LABEL = "ProvenanceAndRights"
LEXICON_LABEL = "Lexicon"
RIGHTS_RELATIONSHIP = "HAS_RIGHTS"

POOL_LABELS: Mapping[str, str] = {
    "idea": "Idea",
    "manifest": "Manifest",
    "experience": "Experience",
    "relational": "Relational",
    "evolutionary": "Evolutionary",
    "practical": "Practical",
    "emanation": "Emanation",
    "intent": "Intent",
    "actor": "Actor",
    "spatial": "Spatial",
    "evidence": "Evidence",
    "risk": "Risk",
    "method": "Method",
}

CONTENT_LABELS: frozenset[str] = frozenset(POOL_LABELS.values())
ALL_LABELS: frozenset[str] = CONTENT_LABELS | {RIGHTS_LABEL, LEXICON_LABEL}

# Labels whose nodes are legitimate without any relationship.
CAN_BE_ISOLATED: frozenset[str] = frozenset(
    {RIGHTS_LABEL, LEXICON_LABEL, "Intent", "Actor", "Spatial", "Evidence", "Risk", "Method"}
)

# ============================================================================
# SCHEMA DATA MODELS
# ============================================================================


class ConstraintKind(str, Enum):
    UNIQUE = "unique"
    EXISTS = "exists"
    INDEX = "index"


@dataclass(slots=True, frozen=True)
class SchemaStatement:
    """One constraint or index created during the schema phase.

    Existence constraints are ``optional``: graph stores without support for
    them skip the statement instead of failing the phase.
    """

    kind: ConstraintKind
    label: str
    attribute: str
    optional: bool = False

    @property
    def name(self) -> str:
        return f"{self.label.lower()}_{self.attribute}_{self.kind.value}"


@dataclass(slots=True, frozen=True)
class NodeSchema:
    """Schema definition for one node label."""

    label: str
    key: str = "id"
    required: tuple[str, ...] = ()
    indexed: tuple[str, ...] = ()

    def statements(self) -> Iterable[SchemaStatement]:
        yield SchemaStatement(ConstraintKind.UNIQUE, self.label, self.key)
        for prop in self.required:
            yield SchemaStatement(ConstraintKind.EXISTS, self.label, prop, optional=True)
        for prop in self.indexed:
            yield SchemaStatement(ConstraintKind.INDEX, self.label, prop)


def _content_schema(label: str) -> NodeSchema:
    return NodeSchema(
        label=label,
        required=("rights_id", "canonical_key", "repr_text"),
        indexed=("canonical_key",),
    )


GRAPH_SCHEMA: Mapping[str, NodeSchema] = {
    **{label: _content_schema(label) for label in sorted(CONTENT_LABELS)},
    RIGHTS_LABEL: NodeSchema(
        label=RIGHTS_LABEL,
        required=("publishability", "training_eligibility"),
        indexed=("publishability", "training_eligibility"),
    ),
    LEXICON_LABEL: NodeSchema(
        label=LEXICON_LABEL,
        required=("canonical_description", "rights_id"),
        indexed=("term", "canonical_key"),
    ),
}


def schema_statements(schema: Mapping[str, NodeSchema] = GRAPH_SCHEMA) -> list[SchemaStatement]:
    """Return every statement of the schema phase in a stable order."""
    return [statement for label in sorted(schema) for statement in schema[label].statements()]


__all__ = [
    "ALL_LABELS",
    "CAN_BE_ISOLATED",
    "CONTENT_LABELS",
    "ConstraintKind",
    "GRAPH_SCHEMA",
    "LEXICON_LABEL",
    "NodeSchema",
    "POOL_LABELS",
    "RIGHTS_LABEL",
    "RIGHTS_RELATIONSHIP",
    "SchemaStatement",
    "schema_statements",
]
