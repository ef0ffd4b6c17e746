from __future__ import annotations

import pytest

from Enliterator_KG.application import build_application
from Enliterator_KG.embedding.fallback import FALLBACK_WARNING
from Enliterator_KG.kg.assembly import AssemblyState
from Enliterator_KG.kg.maintenance import LOW_RELATIONSHIP_DENSITY
from Enliterator_KG.pipeline.collaborators import ExternalStageOutcome
from Enliterator_KG.pipeline.controller import NO_PUBLISHABLE_ITEMS, REVIEW_APPROVED, IngestSource
from Enliterator_KG.pipeline.errors import BatchBusyError, GraphStoreUnavailableError, StageOrderError
from Enliterator_KG.pipeline.models import (
    BatchStatus,
    EmbeddingSource,
    ItemStage,
    PipelineStage,
    StageStatus,
)

from tests.fakes import FakeRightsInferencer, collaborators

CONTENTS = [
    "Coffee shops host Ideas",
    "Gardens feed Neighbours",
    "Markets open Early",
    "Libraries lend Tools",
]


def sources(contents=CONTENTS) -> list[IngestSource]:
    return [IngestSource(pointer=f"note-{index}.txt", content=content) for index, content in enumerate(contents)]


def start_batch(application, contents=CONTENTS) -> str:
    controller = application.controller
    batch = controller.create_batch("field notes")
    controller.ingest(batch.id, sources(contents))
    return batch.id


def rebuild(settings, store, graph_backend, provider, queue, clock, **overrides):
    return build_application(
        settings,
        collaborators=collaborators(**overrides),
        store=store,
        graph_backend=graph_backend,
        provider=provider,
        queue=queue,
        clock=clock,
    )


# ==============================================================================
# INTAKE
# ==============================================================================


def test_ingest_is_idempotent(application, store):
    controller = application.controller
    batch = controller.create_batch("field notes")

    first = controller.ingest(batch.id, sources())
    second = controller.ingest(batch.id, sources())

    assert (first.created, first.existing) == (4, 0)
    assert (second.created, second.existing) == (0, 4)
    assert second.item_ids == first.item_ids
    assert store.get_batch(batch.id).status is BatchStatus.INTAKE_COMPLETED
    assert len(store.list_items(batch.id)) == 4


# ==============================================================================
# END TO END
# ==============================================================================


def test_batch_runs_to_completion_through_the_embedding_monitor(
    application, store, provider, graph_backend, manual_time
):
    controller = application.controller
    batch_id = start_batch(application)

    status = controller.run(batch_id)

    assert status is BatchStatus.EMBEDDINGS_IN_PROGRESS
    items = store.list_items(batch_id)
    assert {item.status_for(ItemStage.GRAPH) for item in items} == {StageStatus.SUCCESS}
    assert {item.status_for(ItemStage.EMBEDDING) for item in items} == {StageStatus.IN_PROGRESS}
    assert len(graph_backend.nodes(batch_id, "Idea")) == 8
    assert len(graph_backend.edges(batch_id, "HAS_RIGHTS")) == 8 + len(store.list_lexicon_entries(batch_id))

    (job_id,) = provider.submitted
    provider.finish(job_id)
    assert application.worker.drain() == 0

    manual_time.advance(61)
    application.worker.drain()

    batch = store.get_batch(batch_id)
    assert batch.status is BatchStatus.COMPLETED
    assert application.worker.metrics.failed == 0
    for item in store.list_items(batch_id):
        assert item.display_status(ItemStage.EMBEDDING) == "embedded"
        assert store.get_embedding(item.content_hash).source is EmbeddingSource.BATCH
    codes = [warning["code"] for warning in batch.quality_warnings]
    assert LOW_RELATIONSHIP_DENSITY in codes
    assert FALLBACK_WARNING not in codes
    assert store.list_logs(batch_id, label="stage_9")


def test_external_handlers_record_literacy_score(settings, store, graph_backend, provider, queue, clock, manual_time):
    class Scorer:
        def run(self, batch, context):
            return ExternalStageOutcome(metrics={"coverage": 0.8}, literacy_score=0.72)

    fakes = collaborators()
    fakes.handlers = {PipelineStage.SCORING: Scorer()}
    application = build_application(
        settings,
        collaborators=fakes,
        store=store,
        graph_backend=graph_backend,
        provider=provider,
        queue=queue,
        clock=clock,
    )
    batch_id = start_batch(application)
    application.controller.run(batch_id)
    provider.finish(next(iter(provider.submitted)))
    manual_time.advance(61)
    application.worker.drain()

    batch = store.get_batch(batch_id)
    assert batch.status is BatchStatus.COMPLETED
    assert batch.literacy_score == 0.72
    assert batch.statistics["scoring"] == {"coverage": 0.8}
    assert application.controller.get_batch_status(batch_id).literacy_score == 0.72


# ==============================================================================
# ORDERING AND EXCLUSION
# ==============================================================================


def test_stage_out_of_order_is_rejected_without_failing_the_batch(application, store):
    batch_id = start_batch(application)

    with pytest.raises(StageOrderError) as excinfo:
        application.controller.advance(batch_id, PipelineStage.LEXICON)

    assert excinfo.value.report.status == 409
    batch = store.get_batch(batch_id)
    assert batch.status is BatchStatus.INTAKE_COMPLETED
    assert batch.failed_stage is None


def test_second_unit_of_work_on_a_batch_is_busy(application, store):
    controller = application.controller
    batch_id = start_batch(application)

    with controller._batch_lock(batch_id):
        with pytest.raises(BatchBusyError):
            controller.advance(batch_id, PipelineStage.RIGHTS)

    assert store.get_batch(batch_id).status is BatchStatus.INTAKE_COMPLETED
    controller.advance(batch_id, PipelineStage.RIGHTS)
    assert store.get_batch(batch_id).status is BatchStatus.TRIAGE_COMPLETED


def test_reingest_after_later_stages_is_rejected(application):
    controller = application.controller
    batch_id = start_batch(application)
    controller.advance(batch_id, PipelineStage.RIGHTS)

    with pytest.raises(StageOrderError):
        controller.ingest(batch_id, sources(["Brand new content"]))


# ==============================================================================
# OPERATOR ACTIONS
# ==============================================================================


def test_pause_stops_the_batch_until_resumed(application, store):
    controller = application.controller
    batch_id = start_batch(application)

    view = controller.pause(batch_id)

    assert view.paused
    assert controller.run(batch_id) is BatchStatus.INTAKE_COMPLETED
    with pytest.raises(StageOrderError):
        controller.advance(batch_id, PipelineStage.RIGHTS)

    assert controller.resume(batch_id) is BatchStatus.EMBEDDINGS_IN_PROGRESS
    assert not store.get_batch(batch_id).paused


def test_resume_while_embeddings_are_outstanding_keeps_claims(application, store, provider):
    controller = application.controller
    batch_id = start_batch(application)
    controller.run(batch_id)
    controller.pause(batch_id)

    assert controller.resume(batch_id) is BatchStatus.EMBEDDINGS_IN_PROGRESS

    assert len(provider.submitted) == 1
    assert {item.status_for(ItemStage.EMBEDDING) for item in store.list_items(batch_id)} == {
        StageStatus.IN_PROGRESS
    }


def test_triage_needing_review_pauses_until_approved(settings, store, graph_backend, provider, queue, clock):
    rights = FakeRightsInferencer({content: 0.3 for content in CONTENTS})
    application = rebuild(settings, store, graph_backend, provider, queue, clock, rights=rights)
    controller = application.controller
    batch_id = start_batch(application)

    assert controller.run(batch_id) is BatchStatus.TRIAGE_NEEDS_REVIEW

    batch = store.get_batch(batch_id)
    assert batch.paused
    assert NO_PUBLISHABLE_ITEMS in [warning["code"] for warning in batch.quality_warnings]
    with pytest.raises(StageOrderError):
        controller.advance(batch_id, PipelineStage.LEXICON)

    assert controller.resume(batch_id) is BatchStatus.COMPLETED
    batch = store.get_batch(batch_id)
    assert batch.metadata[REVIEW_APPROVED] is True
    assert provider.submitted == {}
    counts = controller.get_batch_status(batch_id).counts
    assert counts["triage"]["quarantined"] == 4
    assert counts["lexicon"]["not_reached"] == 4


def test_no_publishable_items_warning(settings, store, graph_backend, provider, queue, clock):
    rights = FakeRightsInferencer(license="proprietary")
    application = rebuild(settings, store, graph_backend, provider, queue, clock, rights=rights)
    batch_id = start_batch(application)

    application.controller.advance(batch_id, PipelineStage.RIGHTS)

    warnings = store.get_batch(batch_id).quality_warnings
    assert [warning["code"] for warning in warnings] == [NO_PUBLISHABLE_ITEMS]
    assert warnings[0]["rights_records"] == 4


def test_graph_failure_is_recorded_and_resume_completes_assembly(application, store, graph_backend):
    controller = application.controller
    batch_id = start_batch(application)
    graph_backend.inject_failure("schema", RuntimeError("constraint rejected"))

    with pytest.raises(GraphStoreUnavailableError):
        controller.run(batch_id)

    batch = store.get_batch(batch_id)
    assert batch.status is BatchStatus.GRAPH_ASSEMBLY_FAILED
    assert batch.failed_stage is PipelineStage.GRAPH
    assert batch.error["status"] == 503
    assert batch.metadata["graph_assembly"]["failed_phase"] == AssemblyState.SCHEMA_PENDING.value
    assert {item.status_for(ItemStage.GRAPH) for item in store.list_items(batch_id)} == {StageStatus.PENDING}
    assert any("schema_pending" in entry.message for entry in store.list_logs(batch_id, label="errors"))

    assert controller.resume(batch_id) is BatchStatus.EMBEDDINGS_IN_PROGRESS

    batch = store.get_batch(batch_id)
    assert batch.failed_stage is None
    assert batch.error is None
    assert batch.metadata["graph_assembly"]["state"] == AssemblyState.DONE.value
    assert graph_backend.constraints(batch_id)


def test_retry_failed_items_then_resume_failed_triage(settings, store, graph_backend, provider, queue, clock):
    rights = FakeRightsInferencer(failing=CONTENTS[:3])
    application = rebuild(settings, store, graph_backend, provider, queue, clock, rights=rights)
    controller = application.controller
    batch_id = start_batch(application)

    assert controller.run(batch_id) is BatchStatus.TRIAGE_FAILED
    assert store.get_batch(batch_id).failed_stage is PipelineStage.RIGHTS

    rights.failing.clear()
    assert controller.retry_failed_items(batch_id, PipelineStage.RIGHTS) == 3
    assert controller.resume(batch_id) is BatchStatus.EMBEDDINGS_IN_PROGRESS
    assert controller.get_batch_status(batch_id).counts["triage"]["success"] == 4


def test_retry_rejects_stages_without_items(application):
    batch_id = start_batch(application)

    with pytest.raises(StageOrderError):
        application.controller.retry_failed_items(batch_id, PipelineStage.SCORING)


def test_status_view_and_logs(application):
    controller = application.controller
    batch_id = start_batch(application)
    controller.run(batch_id)

    view = controller.get_batch_status(batch_id)

    assert view.status is BatchStatus.EMBEDDINGS_IN_PROGRESS
    assert view.stage is PipelineStage.EMBEDDINGS
    assert view.counts["graph"] == {"success": 4, "total": 4}
    assert view.counts["embedding"] == {"in_progress": 4, "total": 4}
    payload = view.as_dict()
    assert payload["status"] == "embeddings_in_progress"
    assert payload["failed_stage"] is None
    assert controller.list_logs(batch_id, label="stage_2")
    messages = [entry.message for entry in controller.list_logs(batch_id, label="pipeline")]
    assert "Stage 5 (graph) started" in messages
