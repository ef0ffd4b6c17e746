from __future__ import annotations

from collections import Counter

import pytest

from Enliterator_KG.application import build_application
from Enliterator_KG.config.settings import AppSettings, EmbeddingSettings
from Enliterator_KG.embedding.builder import embedding_text
from Enliterator_KG.orchestration.queue import MONITOR_TASK
from Enliterator_KG.pipeline.controller import IngestSource
from Enliterator_KG.pipeline.errors import EmbeddingProviderError
from Enliterator_KG.pipeline.models import (
    BatchStatus,
    EmbeddingSource,
    Item,
    ItemStage,
    PipelineStage,
    StageStatus,
    StoredEmbedding,
)

from tests.fakes import FakeEmbeddingProvider, collaborators

CONTENTS = [f"Topic{i} field note" for i in range(5)]


def ingest(application, contents=CONTENTS) -> str:
    controller = application.controller
    batch = controller.create_batch("embeddings")
    controller.ingest(batch.id, [IngestSource(f"note-{i}.txt", c) for i, c in enumerate(contents)])
    return batch.id


def test_items_with_stored_vectors_are_not_resubmitted(application, provider, store):
    batch_id = ingest(application)
    known = store.list_items(batch_id)[0]
    store.put_embedding(
        StoredEmbedding(content_hash=known.content_hash, vector=(1.0,), model="fake-embed", source=EmbeddingSource.BATCH)
    )

    assert application.controller.run(batch_id) is BatchStatus.EMBEDDINGS_IN_PROGRESS

    (requests,) = provider.submitted.values()
    assert len(requests) == 4
    assert f"item-{known.id}" not in {request.custom_id for request in requests}
    assert store.get_item(known.id).status_for(ItemStage.EMBEDDING) is StageStatus.SUCCESS
    statistics = store.get_batch(batch_id).metadata["embeddings_statistics"]
    assert (statistics["jobs"], statistics["submitted"], statistics["already_embedded"]) == (1, 4, 1)


def test_fully_embedded_batch_completes_without_jobs(application, provider, store):
    batch_id = ingest(application)
    for item in store.list_items(batch_id):
        store.put_embedding(
            StoredEmbedding(content_hash=item.content_hash, vector=(1.0,), model="fake-embed", source=EmbeddingSource.BATCH)
        )

    assert application.controller.run(batch_id) is BatchStatus.COMPLETED
    assert provider.submitted == {}


def test_requests_are_split_into_jobs(store, queue, provider, graph_backend, clock):
    settings = AppSettings(embedding=EmbeddingSettings(max_requests_per_job=2))
    application = build_application(
        settings,
        collaborators=collaborators(),
        store=store,
        graph_backend=graph_backend,
        provider=provider,
        queue=queue,
        clock=clock,
    )
    batch_id = ingest(application)

    application.controller.run(batch_id)

    assert [len(requests) for requests in provider.submitted.values()] == [2, 2, 1]
    assert len(store.list_embedding_jobs(batch_id)) == 3
    monitors = queue.scheduled(MONITOR_TASK)
    assert {task.key for task in monitors} == {batch_id}
    assert {task.available_at - queue.now() for task in monitors} == {60.0}


def test_embedding_text_falls_back_to_the_pointer():
    item = Item(id="itm-1", batch_id="batch-1", content_hash="abc", pointer="s3://bucket/a.pdf")

    assert embedding_text(item) == "s3://bucket/a.pdf"


class RejectingProvider(FakeEmbeddingProvider):
    """Rejects ``failures`` submissions once ``accepted`` jobs have been created."""

    def __init__(self, *, accepted: int, failures: int = 1) -> None:
        super().__init__()
        self.accepted = accepted
        self.failures = failures

    def submit_batch(self, requests):
        if len(self.submitted) >= self.accepted and self.failures:
            self.failures -= 1
            raise EmbeddingProviderError("batch endpoint unavailable", status=503)
        return super().submit_batch(requests)


def chunked_application(store, queue, provider, graph_backend, clock):
    settings = AppSettings(
        embedding=EmbeddingSettings(max_requests_per_job=2, retry_base_seconds=1.0, max_poll_failures=3)
    )
    return build_application(
        settings,
        collaborators=collaborators(),
        store=store,
        graph_backend=graph_backend,
        provider=provider,
        queue=queue,
        clock=clock,
    )


def embedding_statuses(store, batch_id) -> Counter:
    return Counter(item.status_for(ItemStage.EMBEDDING) for item in store.list_items(batch_id))


def test_failed_submission_returns_unsubmitted_items_and_resume_resubmits_them(
    store, queue, graph_backend, clock, manual_time
):
    provider = RejectingProvider(accepted=1)
    application = chunked_application(store, queue, provider, graph_backend, clock)
    controller = application.controller
    batch_id = ingest(application)

    with pytest.raises(EmbeddingProviderError):
        controller.run(batch_id)

    batch = store.get_batch(batch_id)
    assert batch.status is BatchStatus.EMBEDDINGS_FAILED
    assert batch.failed_stage is PipelineStage.EMBEDDINGS
    assert len(store.list_embedding_jobs(batch_id)) == 1
    assert embedding_statuses(store, batch_id) == Counter({StageStatus.IN_PROGRESS: 2, StageStatus.PENDING: 3})
    messages = [entry.message for entry in store.list_logs(batch_id, label="errors")]
    assert any("3 items returned to pending" in message for message in messages)

    assert controller.resume(batch_id) is BatchStatus.EMBEDDINGS_IN_PROGRESS

    assert [len(requests) for requests in provider.submitted.values()] == [2, 2, 1]
    assert embedding_statuses(store, batch_id) == Counter({StageStatus.IN_PROGRESS: 5})
    assert store.get_batch(batch_id).failed_stage is None

    for job_id in provider.submitted:
        provider.finish(job_id)
    manual_time.advance(61)
    application.worker.drain()

    assert store.get_batch(batch_id).status is BatchStatus.COMPLETED
    assert embedding_statuses(store, batch_id) == Counter({StageStatus.SUCCESS: 5})


def test_first_submission_failing_leaves_nothing_claimed(store, queue, graph_backend, clock):
    provider = RejectingProvider(accepted=0)
    application = chunked_application(store, queue, provider, graph_backend, clock)
    batch_id = ingest(application)

    with pytest.raises(EmbeddingProviderError):
        application.controller.run(batch_id)

    assert store.list_embedding_jobs(batch_id) == []
    assert queue.scheduled(MONITOR_TASK) == []
    assert embedding_statuses(store, batch_id) == Counter({StageStatus.PENDING: 5})

    assert application.controller.resume(batch_id) is BatchStatus.EMBEDDINGS_IN_PROGRESS
    assert len(store.list_embedding_jobs(batch_id)) == 3


def test_resume_with_jobs_outstanding_and_nothing_pending_waits_for_the_monitor(
    store, queue, graph_backend, clock, manual_time
):
    provider = FakeEmbeddingProvider()
    application = chunked_application(store, queue, provider, graph_backend, clock)
    batch_id = ingest(application)
    application.controller.run(batch_id)
    store.transition_batch(
        batch_id, BatchStatus.EMBEDDINGS_FAILED, expected=BatchStatus.EMBEDDINGS_IN_PROGRESS, reason="operator"
    )

    assert application.controller.resume(batch_id) is BatchStatus.EMBEDDINGS_IN_PROGRESS
    assert len(provider.submitted) == 3

    for job_id in provider.submitted:
        provider.finish(job_id)
    manual_time.advance(61)
    application.worker.drain()

    assert store.get_batch(batch_id).status is BatchStatus.COMPLETED
