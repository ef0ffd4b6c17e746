"""Application container wiring the pipeline from settings.

Key Responsibilities:
    - Build the store, graph backend, embedding provider, queue, worker and
      batch controller from :class:`AppSettings`
    - Map queue task names onto controller and monitor operations
    - Load extraction collaborators from a ``module:factory`` reference

Collaborators:
    - Upstream: CLI commands and embedding applications
    - Downstream: every pipeline, graph and embedding component

Thread Safety:
    - The container itself is immutable after construction; the components
      it holds document their own guarantees
"""

from __future__ import annotations

# ==============================================================================
# IMPORTS
# ==============================================================================
import importlib
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from Enliterator_KG.config.settings import AppSettings, get_settings
from Enliterator_KG.embedding.builder import EmbeddingBatchBuilder
from Enliterator_KG.embedding.fallback import SynchronousFallback
from Enliterator_KG.embedding.monitor import EmbeddingBatchMonitor
from Enliterator_KG.embedding.provider import EmbeddingProvider, OpenAIEmbeddingProvider
from Enliterator_KG.kg.assembly import GraphAssemblyEngine
from Enliterator_KG.kg.backend import GraphBackend, InMemoryGraphBackend
from Enliterator_KG.kg.neo4j_client import Neo4jGraphBackend
from Enliterator_KG.orchestration.queue import (
    ADVANCE_TASK,
    FALLBACK_TASK,
    MONITOR_TASK,
    RUN_TASK,
    DelayedTaskQueue,
)
from Enliterator_KG.orchestration.worker import PipelineWorker, TaskHandler
from Enliterator_KG.pipeline.collaborators import (
    EntityExtractor,
    ExternalStageHandler,
    ExtractionResult,
    LexiconExtractor,
    RelationExtractor,
    RightsInferencer,
)
from Enliterator_KG.pipeline.controller import BatchController
from Enliterator_KG.pipeline.models import PipelineStage
from Enliterator_KG.pipeline.stages import (
    EmbeddingStage,
    GraphStage,
    LexiconStage,
    PoolsStage,
    RightsStage,
    StageRunner,
)
from Enliterator_KG.pipeline.store import InMemoryPipelineStore, PipelineStore

logger = structlog.get_logger(__name__)


# ==============================================================================
# COLLABORATORS
# ==============================================================================


class UnconfiguredCollaborator:
    """Fails every item with a clear reason when no extractor is configured."""

    def __init__(self, kind: str) -> None:
        self.kind = kind

    def extract(self, content: str, context: Any, *args: Any) -> ExtractionResult[Any]:
        return ExtractionResult.failure(f"no {self.kind} collaborator configured")


@dataclass(slots=True)
class Collaborators:
    rights: RightsInferencer
    lexicon: LexiconExtractor
    entities: EntityExtractor
    relations: RelationExtractor
    handlers: Mapping[PipelineStage, ExternalStageHandler] = field(default_factory=dict)

    @classmethod
    def unconfigured(cls) -> Collaborators:
        return cls(
            rights=UnconfiguredCollaborator("rights inference"),
            lexicon=UnconfiguredCollaborator("lexicon extraction"),
            entities=UnconfiguredCollaborator("entity extraction"),
            relations=UnconfiguredCollaborator("relation extraction"),
        )


def load_collaborators(reference: str | None) -> Collaborators:
    """Resolve ``package.module:factory`` and call the factory.

    Raises:
        ValueError: The reference is malformed or the factory returned
            something other than :class:`Collaborators`.
    """
    if not reference:
        return Collaborators.unconfigured()
    module_name, _, attribute = reference.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Collaborator reference '{reference}' must look like 'module:factory'")
    factory = getattr(importlib.import_module(module_name), attribute)
    collaborators = factory()
    if not isinstance(collaborators, Collaborators):
        raise ValueError(f"{reference} returned {type(collaborators).__name__}, expected Collaborators")
    logger.info("application.collaborators.loaded", reference=reference)
    return collaborators


# ==============================================================================
# CONTAINER
# ==============================================================================


@dataclass(slots=True)
class Application:
    settings: AppSettings
    store: PipelineStore
    queue: DelayedTaskQueue
    graph_backend: GraphBackend
    provider: EmbeddingProvider
    monitor: EmbeddingBatchMonitor
    controller: BatchController
    worker: PipelineWorker

    def close(self) -> None:
        self.worker.shutdown()
        self.graph_backend.close()
        close = getattr(self.provider, "close", None)
        if close is not None:
            close()


def _task_handlers(controller: BatchController, monitor: EmbeddingBatchMonitor) -> dict[str, TaskHandler]:
    return {
        ADVANCE_TASK: lambda payload: controller.advance(payload["batch_id"], PipelineStage(payload["stage"])),
        RUN_TASK: lambda payload: controller.run(payload["batch_id"]),
        MONITOR_TASK: lambda payload: monitor.check(payload["job_ref_id"]),
        FALLBACK_TASK: lambda payload: monitor.run_fallback(payload["batch_id"], payload["custom_ids"]),
    }


def build_application(
    settings: AppSettings | None = None,
    *,
    collaborators: Collaborators | None = None,
    store: PipelineStore | None = None,
    graph_backend: GraphBackend | None = None,
    provider: EmbeddingProvider | None = None,
    queue: DelayedTaskQueue | None = None,
    clock: Callable[[], datetime] | None = None,
    use_neo4j: bool = False,
) -> Application:
    """Assemble every component; explicit arguments override the defaults."""
    settings = settings or get_settings()
    collaborators = collaborators or Collaborators.unconfigured()
    store = store or InMemoryPipelineStore()
    queue = queue or DelayedTaskQueue()
    if graph_backend is None:
        graph_backend = Neo4jGraphBackend.from_settings(settings.neo4j) if use_neo4j else InMemoryGraphBackend()
    provider = provider or OpenAIEmbeddingProvider.from_settings(settings.embedding)

    def on_batch_complete(batch_id: str) -> None:
        queue.publish(RUN_TASK, {"batch_id": batch_id}, key=batch_id)

    monitor = EmbeddingBatchMonitor(
        store,
        provider,
        queue,
        SynchronousFallback(store, provider),
        settings.embedding,
        clock=clock,
        on_batch_complete=on_batch_complete,
    )
    runner = StageRunner(
        store,
        [
            RightsStage(store, collaborators.rights, settings.triage),
            LexiconStage(store, collaborators.lexicon),
            PoolsStage(store, collaborators.entities, collaborators.relations),
            GraphStage(store, GraphAssemblyEngine(store, graph_backend, settings.graph)),
            EmbeddingStage(EmbeddingBatchBuilder(store, provider, queue, settings.embedding)),
        ],
    )
    controller = BatchController(store, runner, handlers=collaborators.handlers, actor_id=settings.service_name)
    worker = PipelineWorker(queue, _task_handlers(controller, monitor), settings.worker)
    logger.info(
        "application.built",
        environment=settings.environment.value,
        graph_backend=type(graph_backend).__name__,
        provider=type(provider).__name__,
    )
    return Application(
        settings=settings,
        store=store,
        queue=queue,
        graph_backend=graph_backend,
        provider=provider,
        monitor=monitor,
        controller=controller,
        worker=worker,
    )


__all__ = [
    "Application",
    "Collaborators",
    "UnconfiguredCollaborator",
    "build_application",
    "load_collaborators",
]
