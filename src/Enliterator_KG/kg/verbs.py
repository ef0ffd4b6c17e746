"""Relation verb glossary.

Only verbs listed here become graph edges. A verb declares the labels it may
connect (``*`` matches any label) and either a reverse verb, written as a
second edge in the opposite direction, or ``symmetric``, in which case the
same verb is mirrored.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from .schema import RIGHTS_LABEL

ANY = "*"


@dataclass(slots=True, frozen=True)
class VerbSpec:
    verb: str
    sources: frozenset[str]
    targets: frozenset[str]
    reverse: str | None = None
    symmetric: bool = False
    structural: bool = False

    @property
    def relationship_type(self) -> str:
        return self.verb.upper()

    @property
    def reverse_relationship_type(self) -> str | None:
        if self.symmetric:
            return self.relationship_type
        return self.reverse.upper() if self.reverse else None

    def accepts(self, source_label: str, target_label: str) -> bool:
        return (ANY in self.sources or source_label in self.sources) and (
            ANY in self.targets or target_label in self.targets
        )


def _verb(
    verb: str,
    source: str | tuple[str, ...],
    target: str | tuple[str, ...],
    reverse: str | None = None,
    *,
    symmetric: bool = False,
    structural: bool = False,
) -> VerbSpec:
    sources = frozenset((source,) if isinstance(source, str) else source)
    targets = frozenset((target,) if isinstance(target, str) else target)
    return VerbSpec(verb, sources, targets, reverse, symmetric, structural)


VERB_GLOSSARY: Mapping[str, VerbSpec] = {
    spec.verb: spec
    for spec in (
        _verb("embodies", "Idea", "Manifest", "is_embodiment_of"),
        _verb("elicits", "Manifest", "Experience", "is_elicited_by"),
        _verb("influences", ("Idea", "Emanation"), ANY, "is_influenced_by"),
        _verb("refines", "Evolutionary", "Idea", "is_refined_by"),
        _verb("version_of", "Evolutionary", "Manifest", "has_version"),
        _verb("co_occurs_with", "Relational", "Relational", symmetric=True),
        _verb("located_at", "Manifest", "Spatial", "hosts"),
        _verb("adjacent_to", "Spatial", "Spatial", symmetric=True),
        _verb("validated_by", "Practical", "Experience", "validates"),
        _verb("supports", "Evidence", "Idea"),
        _verb("refutes", "Evidence", "Idea"),
        _verb("diffuses_through", "Emanation", "Relational"),
        _verb("codifies", "Idea", "Practical", "derived_from"),
        _verb("inspires", "Experience", "Emanation", "is_inspired_by"),
        _verb("feeds_back", "Emanation", "Idea", "is_fed_by"),
        _verb("connects_to", ANY, ANY),
        _verb("cites", ANY, ANY, "cited_by"),
        _verb("precedes", ANY, ANY, "follows"),
        _verb("authors", "Actor", "Manifest", "authored_by"),
        _verb("owns", "Actor", "Manifest", "owned_by"),
        _verb("member_of", "Actor", "Relational", "has_member"),
        _verb("reports", "Actor", "Experience", "reported_by"),
        _verb("in_sector_with", "Spatial", "Relational"),
        _verb("measures", "Evidence", "Manifest", "measured_by"),
        _verb("requires_mitigation", "Risk", "Practical", "mitigates"),
        _verb("constrains", ANY, RIGHTS_LABEL, "constrained_by"),
        _verb("produces", "Method", "Evidence", "produced_by"),
        _verb("standardizes", "Method", "Practical", "standardized_by"),
        _verb("implements", "Method", "Practical"),
        _verb("normalizes", "Lexicon", ANY, "normalized_by"),
        _verb("disambiguates", "Lexicon", ANY, "disambiguated_by"),
        _verb("requests", "Intent", "Relational", "requested_by"),
        _verb("selects_template", "Intent", "Practical", "template_for"),
        _verb("traverses_pattern", "Intent", ANY),
        _verb("targets", "Intent", "Manifest", "targeted_by"),
        _verb("has_rights", ANY, RIGHTS_LABEL, structural=True),
    )
}


def known_relationship_types() -> frozenset[str]:
    """Every relationship type the loaders may write, reverses included."""
    types: set[str] = set()
    for spec in VERB_GLOSSARY.values():
        types.add(spec.relationship_type)
        if spec.reverse_relationship_type:
            types.add(spec.reverse_relationship_type)
    return frozenset(types)


def structural_relationship_types() -> frozenset[str]:
    return frozenset(spec.relationship_type for spec in VERB_GLOSSARY.values() if spec.structural)


__all__ = [
    "ANY",
    "VERB_GLOSSARY",
    "VerbSpec",
    "known_relationship_types",
    "structural_relationship_types",
]
