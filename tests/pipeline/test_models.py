from __future__ import annotations

import random

import pytest

from Enliterator_KG.pipeline.errors import ItemTransitionError
from Enliterator_KG.pipeline.models import (
    BatchStatus,
    Item,
    ItemStage,
    PipelineStage,
    StageStatus,
)


def _item() -> Item:
    return Item(id="itm-1", batch_id="batch-1", content_hash="abc", pointer="notes.txt", content="Coffee")


def _succeed(item: Item, stage: ItemStage) -> None:
    item.apply(stage, StageStatus.IN_PROGRESS)
    item.apply(stage, StageStatus.SUCCESS)


def test_new_item_has_not_reached_any_stage():
    item = _item()

    assert all(item.status_for(stage) is None for stage in ItemStage)
    assert item.is_eligible(ItemStage.TRIAGE)
    assert not item.is_eligible(ItemStage.LEXICON)


def test_upstream_stages_derive_success():
    item = _item()
    _succeed(item, ItemStage.TRIAGE)
    _succeed(item, ItemStage.LEXICON)
    item.apply(ItemStage.POOL, StageStatus.IN_PROGRESS)

    assert item.status_for(ItemStage.TRIAGE) is StageStatus.SUCCESS
    assert item.status_for(ItemStage.LEXICON) is StageStatus.SUCCESS
    assert item.status_for(ItemStage.POOL) is StageStatus.IN_PROGRESS
    assert item.status_for(ItemStage.GRAPH) is None
    assert item.display_status(ItemStage.LEXICON) == "extracted"


def test_cannot_enter_stage_before_predecessor_succeeded():
    item = _item()
    item.apply(ItemStage.TRIAGE, StageStatus.IN_PROGRESS)

    with pytest.raises(ItemTransitionError):
        item.apply(ItemStage.LEXICON, StageStatus.IN_PROGRESS)


def test_cannot_skip_a_stage():
    item = _item()
    _succeed(item, ItemStage.TRIAGE)

    with pytest.raises(ItemTransitionError):
        item.apply(ItemStage.POOL, StageStatus.IN_PROGRESS)


def test_terminal_success_is_final():
    item = _item()
    _succeed(item, ItemStage.TRIAGE)

    with pytest.raises(ItemTransitionError):
        item.apply(ItemStage.TRIAGE, StageStatus.FAILED)


def test_failed_item_returns_to_pending_and_records_error():
    item = _item()
    item.apply(ItemStage.TRIAGE, StageStatus.IN_PROGRESS)
    item.apply(ItemStage.TRIAGE, StageStatus.FAILED, reason="timeout")

    assert item.metadata["triage"]["error"] == "timeout"
    item.apply(ItemStage.TRIAGE, StageStatus.PENDING)
    assert item.is_eligible(ItemStage.TRIAGE)


def test_quarantined_item_is_displayed_as_quarantined():
    item = _item()
    item.apply(ItemStage.TRIAGE, StageStatus.IN_PROGRESS)
    item.apply(ItemStage.TRIAGE, StageStatus.SKIPPED, reason="low confidence", metadata={"quarantined": True})

    assert item.quarantined
    assert item.display_status(ItemStage.TRIAGE) == "quarantined"
    assert not item.is_eligible(ItemStage.LEXICON)


def test_random_transition_sequences_never_leave_success_behind_a_gap():
    statuses = list(StageStatus)
    stages = list(ItemStage)
    for seed in range(200):
        rng = random.Random(seed)
        item = _item()
        for _ in range(30):
            try:
                item.apply(rng.choice(stages), rng.choice(statuses))
            except ItemTransitionError:
                continue
        derived = [item.status_for(stage) for stage in stages]
        reached = [status for status in derived if status is not None]
        assert all(status is StageStatus.SUCCESS for status in reached[:-1]), (seed, derived)
        assert derived[len(reached) :] == [None] * (len(stages) - len(reached)), (seed, derived)


def test_history_records_every_applied_transition():
    item = _item()
    _succeed(item, ItemStage.TRIAGE)

    assert [(t.stage, t.from_status, t.to_status) for t in item.history] == [
        (ItemStage.TRIAGE, None, StageStatus.IN_PROGRESS),
        (ItemStage.TRIAGE, StageStatus.IN_PROGRESS, StageStatus.SUCCESS),
    ]


def test_pipeline_stage_vocabulary():
    assert PipelineStage.RIGHTS.in_progress is BatchStatus.TRIAGE_IN_PROGRESS
    assert PipelineStage.POOLS.completed is BatchStatus.POOL_FILLING_COMPLETED
    assert PipelineStage.GRAPH.failed is BatchStatus.GRAPH_ASSEMBLY_FAILED
    assert PipelineStage.INTAKE.previous is None
    assert PipelineStage.NAVIGATOR.next is None
    assert PipelineStage.EMBEDDINGS.log_label == "stage_6"
    assert PipelineStage.SCORING.item_stage is None


def test_batch_status_knows_its_stage():
    assert BatchStatus.TRIAGE_NEEDS_REVIEW.stage is PipelineStage.RIGHTS
    assert BatchStatus.POOL_FILLING_FAILED.stage is PipelineStage.POOLS
    assert BatchStatus.POOL_FILLING_FAILED.is_failure
    assert BatchStatus.COMPLETED.stage is None
    assert BatchStatus.PENDING.stage is None
