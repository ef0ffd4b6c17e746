from __future__ import annotations

import pytest

from Enliterator_KG.kg.backend import InMemoryGraphBackend
from Enliterator_KG.kg.schema import ConstraintKind, SchemaStatement
from Enliterator_KG.pipeline.errors import GraphStoreUnavailableError

NAMESPACE = "batch-000001"


@pytest.fixture
def backend() -> InMemoryGraphBackend:
    backend = InMemoryGraphBackend()
    backend.ensure_namespace(NAMESPACE)
    return backend


def test_edges_never_create_missing_endpoints(backend):
    def work(writer):
        writer.merge_node("Idea", "ent-1", {"canonical_key": "trust"})
        return writer.merge_edge("Idea", "ent-1", "EMBODIES", "Manifest", "ent-2")

    assert backend.run_data(NAMESPACE, work) is False
    assert list(backend.nodes(NAMESPACE)) == ["ent-1"]
    assert backend.edges(NAMESPACE) == []


def test_edge_endpoints_must_carry_the_expected_label(backend):
    def work(writer):
        writer.merge_node("Idea", "ent-1", {})
        writer.merge_node("Idea", "ent-2", {})
        return writer.merge_edge("Idea", "ent-1", "EMBODIES", "Manifest", "ent-2")

    assert backend.run_data(NAMESPACE, work) is False


def test_failed_data_transaction_rolls_back(backend):
    backend.run_data(NAMESPACE, lambda writer: writer.merge_node("Idea", "ent-1", {}))
    backend.inject_failure("data", RuntimeError("connection reset"))

    with pytest.raises(RuntimeError):
        backend.run_data(NAMESPACE, lambda writer: writer.merge_node("Idea", "ent-2", {}))

    assert list(backend.nodes(NAMESPACE)) == ["ent-1"]


def test_schema_and_data_cannot_share_a_transaction(backend):
    statements = [SchemaStatement(ConstraintKind.UNIQUE, "Idea", "id")]

    with pytest.raises(GraphStoreUnavailableError):
        backend.run_data(NAMESPACE, lambda writer: backend.run_schema(NAMESPACE, statements))

    assert backend.constraints(NAMESPACE) == set()
    assert backend.run_schema(NAMESPACE, statements).applied == 1
    assert backend.constraints(NAMESPACE) == {("Idea", "id")}


def test_unknown_namespace_is_unavailable():
    with pytest.raises(GraphStoreUnavailableError):
        InMemoryGraphBackend().run_data("batch-404", lambda writer: None)


def test_existence_constraints_are_enforced_on_write(backend):
    backend.run_schema(NAMESPACE, [SchemaStatement(ConstraintKind.EXISTS, "Idea", "rights_id", optional=True)])

    with pytest.raises(ValueError):
        backend.run_data(NAMESPACE, lambda writer: writer.merge_node("Idea", "ent-1", {"canonical_key": "x"}))

    assert backend.nodes(NAMESPACE) == {}


def test_merge_into_moves_relationships_and_unions_rights(backend):
    def seed(writer):
        writer.merge_node("ProvenanceAndRights", "rights-1", {})
        writer.merge_node("ProvenanceAndRights", "rights-2", {})
        writer.merge_node("Idea", "keep", {"canonical_key": "trust", "seq": 1, "rights_ids": ["rights-1"]})
        writer.merge_node("Idea", "dupe", {"canonical_key": "trust", "seq": 2, "rights_ids": ["rights-2"]})
        writer.merge_node("Manifest", "cafe", {"canonical_key": "cafe", "seq": 3})
        writer.merge_edge("Idea", "dupe", "EMBODIES", "Manifest", "cafe")
        writer.merge_edge("Idea", "dupe", "HAS_RIGHTS", "ProvenanceAndRights", "rights-2")
        assert writer.duplicate_groups("Idea") == [("trust", ["keep", "dupe"])]
        return writer.merge_into("Idea", "keep", "dupe")

    assert backend.run_data(NAMESPACE, seed) == 2

    nodes = backend.nodes(NAMESPACE, "Idea")
    assert list(nodes) == ["keep"]
    assert nodes["keep"]["rights_ids"] == ["rights-1", "rights-2"]
    assert ("keep", "EMBODIES", "cafe") in backend.edges(NAMESPACE)


def test_delete_orphans_respects_isolatable_labels(backend):
    def work(writer):
        writer.merge_node("Idea", "lonely", {})
        writer.merge_node("Actor", "solo", {})
        writer.merge_node("ProvenanceAndRights", "rights-1", {})
        return writer.delete_orphans({"Actor", "ProvenanceAndRights"})

    assert backend.run_data(NAMESPACE, work) == [("lonely", "Idea")]
    assert set(backend.nodes(NAMESPACE)) == {"solo", "rights-1"}
