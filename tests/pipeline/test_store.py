from __future__ import annotations

import pytest

from Enliterator_KG.pipeline.errors import ItemTransitionError, StoreError
from Enliterator_KG.pipeline.models import (
    BatchStatus,
    EmbeddingJobStatus,
    EmbeddingSource,
    ItemStage,
    StageStatus,
    StoredEmbedding,
)
from Enliterator_KG.pipeline.store import InMemoryPipelineStore


@pytest.fixture
def batch(store: InMemoryPipelineStore):
    return store.create_batch("field notes")


def test_idempotent_create_item_is_keyed_by_content(store, batch):
    first, created = store.idempotent_create_item(batch.id, pointer="a.txt", content="Coffee shops")
    again, created_again = store.idempotent_create_item(batch.id, pointer="b.txt", content="Coffee shops")

    assert created is True
    assert created_again is False
    assert again.id == first.id
    assert len(store.list_items(batch.id)) == 1


def test_item_without_content_is_keyed_by_pointer(store, batch):
    _, created = store.idempotent_create_item(batch.id, pointer="s3://bucket/a.pdf")
    _, created_again = store.idempotent_create_item(batch.id, pointer="s3://bucket/a.pdf")

    assert (created, created_again) == (True, False)


def test_transition_batch_guards_expected_status(store, batch):
    store.transition_batch(batch.id, BatchStatus.INTAKE_IN_PROGRESS, expected=BatchStatus.PENDING)

    with pytest.raises(StoreError) as excinfo:
        store.transition_batch(batch.id, BatchStatus.INTAKE_COMPLETED, expected=BatchStatus.PENDING)

    assert excinfo.value.report.status == 409
    assert store.get_batch(batch.id).status is BatchStatus.INTAKE_IN_PROGRESS


def test_transition_batch_records_history_and_statistics(store, batch):
    store.transition_batch(batch.id, BatchStatus.INTAKE_IN_PROGRESS, statistics={"intake": {"created": 2}})

    stored = store.get_batch(batch.id)
    assert stored.statistics == {"intake": {"created": 2}}
    assert [(t.from_status, t.to_status) for t in stored.history] == [
        (BatchStatus.PENDING, BatchStatus.INTAKE_IN_PROGRESS)
    ]


def test_update_batch_rejects_unknown_fields(store, batch):
    with pytest.raises(StoreError) as excinfo:
        store.update_batch(batch.id, status=BatchStatus.COMPLETED)

    assert excinfo.value.report.status == 400


def test_returned_records_are_snapshots(store, batch):
    snapshot = store.get_batch(batch.id)
    snapshot.metadata["mutated"] = True

    assert "mutated" not in store.get_batch(batch.id).metadata


def test_unknown_batch_raises_store_error(store):
    with pytest.raises(StoreError) as excinfo:
        store.get_batch("batch-999999")

    assert excinfo.value.report.status == 404


def test_claim_item_succeeds_once(store, batch):
    item, _ = store.idempotent_create_item(batch.id, pointer="a.txt", content="Coffee")

    claimed = store.claim_item(item.id, ItemStage.TRIAGE)

    assert claimed is not None
    assert claimed.status_for(ItemStage.TRIAGE) is StageStatus.IN_PROGRESS
    assert store.claim_item(item.id, ItemStage.TRIAGE) is None


def test_transition_item_enforces_state_machine(store, batch):
    item, _ = store.idempotent_create_item(batch.id, pointer="a.txt", content="Coffee")

    with pytest.raises(ItemTransitionError):
        store.transition_item(item.id, ItemStage.LEXICON, StageStatus.IN_PROGRESS)


def test_transition_item_compare_and_set(store, batch):
    item, _ = store.idempotent_create_item(batch.id, pointer="a.txt", content="Coffee")
    store.claim_item(item.id, ItemStage.TRIAGE)

    with pytest.raises(StoreError) as excinfo:
        store.transition_item(item.id, ItemStage.TRIAGE, StageStatus.SUCCESS, expected=StageStatus.PENDING)

    assert excinfo.value.report.status == 409
    updated = store.transition_item(
        item.id, ItemStage.TRIAGE, StageStatus.SUCCESS, expected=StageStatus.IN_PROGRESS
    )
    assert updated.status_for(ItemStage.TRIAGE) is StageStatus.SUCCESS


def test_release_claims_and_reset_failed(store, batch):
    first, _ = store.idempotent_create_item(batch.id, pointer="a.txt", content="one")
    second, _ = store.idempotent_create_item(batch.id, pointer="b.txt", content="two")
    store.claim_item(first.id, ItemStage.TRIAGE)
    store.claim_item(second.id, ItemStage.TRIAGE)
    store.transition_item(second.id, ItemStage.TRIAGE, StageStatus.FAILED, reason="boom")

    assert store.release_claims(batch.id, ItemStage.TRIAGE) == 1
    assert store.reset_failed(batch.id, ItemStage.TRIAGE) == 1
    assert {item.status_for(ItemStage.TRIAGE) for item in store.list_items(batch.id)} == {StageStatus.PENDING}


def test_lexicon_upsert_folds_surface_forms(store, batch):
    entry, created = store.upsert_lexicon_entry(
        batch.id, term="Coffee Shop", canonical_key="coffee shop", rights_id="rights-1", item_id="itm-1"
    )
    merged, created_again = store.upsert_lexicon_entry(
        batch.id,
        term="coffee-shop",
        canonical_key="coffee shop",
        rights_id="rights-1",
        item_id="itm-2",
        definition="A place serving coffee",
    )

    assert (created, created_again) == (True, False)
    assert merged.id == entry.id
    assert merged.surface_forms == ["Coffee Shop", "coffee-shop"]
    assert merged.source_item_ids == ["itm-1", "itm-2"]
    assert merged.definition == "A place serving coffee"
    assert len(store.list_lexicon_entries(batch.id)) == 1


def test_entities_receive_increasing_sequence_numbers(store, batch):
    first = store.add_entity(
        batch.id, item_id="itm-1", pool="idea", label="Idea", canonical_key="trust", rights_id="rights-1"
    )
    second = store.add_entity(
        batch.id, item_id="itm-2", pool="idea", label="Idea", canonical_key="trust", rights_id="rights-1"
    )

    assert first.seq < second.seq
    assert [entity.id for entity in store.list_entities(batch.id, item_id="itm-2")] == [second.id]


def test_put_embedding_keeps_the_first_vector(store):
    first = StoredEmbedding(content_hash="h1", vector=(1.0,), model="m", source=EmbeddingSource.BATCH)
    second = StoredEmbedding(
        content_hash="h1", vector=(2.0,), model="m", source=EmbeddingSource.SYNCHRONOUS_FALLBACK
    )

    assert store.put_embedding(first) is True
    assert store.put_embedding(second) is False
    assert store.get_embedding("h1").vector == (1.0,)


def test_embedding_job_terminal_timestamp(store, batch):
    ref = store.add_embedding_job(batch.id, provider_job_id="batch_1", custom_ids=["item-itm-000001"])
    assert ref.terminal_at is None

    updated = store.update_embedding_job(ref.id, status=EmbeddingJobStatus.COMPLETED)

    assert updated.is_terminal
    assert updated.terminal_at is not None
    with pytest.raises(StoreError):
        store.update_embedding_job(ref.id, nonsense=True)


def test_quality_warnings_and_logs(store, batch):
    store.add_quality_warning(batch.id, "low_relationship_density", "no edges", content_nodes=12)
    store.append_log(batch.id, "stage_2", "started")
    store.append_log(batch.id, "errors", "failed")

    warnings = store.get_batch(batch.id).quality_warnings
    assert warnings[0]["code"] == "low_relationship_density"
    assert warnings[0]["content_nodes"] == 12
    assert [entry.message for entry in store.list_logs(batch.id, label="errors")] == ["failed"]
