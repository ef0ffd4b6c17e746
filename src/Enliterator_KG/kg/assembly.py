"""Graph assembly engine.

Assembly of one batch graph is a resumable state machine persisted in the
batch metadata under ``graph_assembly``::

    schema_pending -> data_pending -> dedup_pending -> verified -> done
                 \\            \\             \\            \\
                  +------------+-------------+------------+--> assembly_failed

Each phase runs in its own backend transaction. The schema phase never
touches data and the data phases never change the schema. A failed phase is
recorded and the next call resumes at that phase; a finished assembly is
re-run from the schema phase, which is safe because every write is a MERGE.

Collaborators:
    - Upstream: :class:`~Enliterator_KG.pipeline.stages.GraphStage`
    - Downstream: graph backend, loaders, maintenance passes, pipeline store
"""

from __future__ import annotations

# ==============================================================================
# IMPORTS
# ==============================================================================
from collections.abc import Callable
from enum import Enum
from typing import Any

import structlog

from Enliterator_KG.config.settings import GraphSettings
from Enliterator_KG.observability.metrics import record_graph_maintenance, record_graph_writes
from Enliterator_KG.observability.tracing import pipeline_span
from Enliterator_KG.pipeline.collaborators import StageContext
from Enliterator_KG.pipeline.errors import GraphStoreUnavailableError, PipelineError
from Enliterator_KG.pipeline.models import LogLevel, PipelineStage
from Enliterator_KG.pipeline.store import PipelineStore

from .backend import GraphBackend, GraphWriter
from .loaders import LoadPlan, load_batch
from .maintenance import Deduplicator, IntegrityVerifier, OrphanRemover
from .schema import schema_statements

logger = structlog.get_logger(__name__)

METADATA_KEY = "graph_assembly"
_LOG_LABEL = PipelineStage.GRAPH.log_label


class AssemblyState(str, Enum):
    SCHEMA_PENDING = "schema_pending"
    DATA_PENDING = "data_pending"
    DEDUP_PENDING = "dedup_pending"
    VERIFIED = "verified"
    DONE = "done"
    FAILED = "assembly_failed"

    @property
    def next(self) -> AssemblyState:
        return _NEXT[self]


_NEXT = {
    AssemblyState.SCHEMA_PENDING: AssemblyState.DATA_PENDING,
    AssemblyState.DATA_PENDING: AssemblyState.DEDUP_PENDING,
    AssemblyState.DEDUP_PENDING: AssemblyState.VERIFIED,
    AssemblyState.VERIFIED: AssemblyState.DONE,
}

_PHASE_ORDER = list(_NEXT)


class GraphAssemblyEngine:
    """Builds the graph of one batch through the backend.

    Example:
        >>> engine = GraphAssemblyEngine(store, InMemoryGraphBackend())
        >>> summary = engine.assemble(batch.id, context)
        >>> summary["state"]
        'done'
    """

    def __init__(
        self,
        store: PipelineStore,
        backend: GraphBackend,
        settings: GraphSettings | None = None,
    ) -> None:
        self.store = store
        self.backend = backend
        self.settings = settings or GraphSettings()
        self.deduplicator = Deduplicator()
        self.orphans = OrphanRemover()
        self.verifier = IntegrityVerifier(self.settings)
        self._phases: dict[AssemblyState, Callable[[str, dict[str, Any]], None]] = {
            AssemblyState.SCHEMA_PENDING: self._schema_phase,
            AssemblyState.DATA_PENDING: self._data_phase,
            AssemblyState.DEDUP_PENDING: self._maintenance_phase,
            AssemblyState.VERIFIED: self._verify_phase,
        }

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    def state(self, batch_id: str) -> AssemblyState:
        record = self.store.get_batch(batch_id).metadata.get(METADATA_KEY) or {}
        return AssemblyState(record.get("state", AssemblyState.SCHEMA_PENDING.value))

    def _record(self, batch_id: str, state: AssemblyState, **fields: Any) -> None:
        current = dict(self.store.get_batch(batch_id).metadata.get(METADATA_KEY) or {})
        current.update(fields)
        current["state"] = state.value
        self.store.update_batch(batch_id, metadata={METADATA_KEY: current})

    def _resume_point(self, batch_id: str) -> AssemblyState:
        state = self.state(batch_id)
        if state is AssemblyState.FAILED:
            record = self.store.get_batch(batch_id).metadata.get(METADATA_KEY) or {}
            return AssemblyState(record.get("failed_phase", AssemblyState.SCHEMA_PENDING.value))
        if state is AssemblyState.DONE:
            return AssemblyState.SCHEMA_PENDING
        return state

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------
    def assemble(self, batch_id: str, context: StageContext) -> dict[str, Any]:
        start = self._resume_point(batch_id)
        summary: dict[str, Any] = {"resumed_from": start.value}
        logger.info("kg.assembly.started", batch_id=batch_id, phase=start.value, actor_id=context.actor_id)
        with pipeline_span("graph.assemble", batch_id=batch_id, resumed_from=start.value):
            self._run_phase(batch_id, AssemblyState.SCHEMA_PENDING, lambda: self.backend.ensure_namespace(batch_id))
            for phase in _PHASE_ORDER[_PHASE_ORDER.index(start) :]:
                self._run_phase(batch_id, phase, lambda phase=phase: self._phases[phase](batch_id, summary))
                self._record(batch_id, phase.next, failed_phase=None, error=None)
        summary["state"] = AssemblyState.DONE.value
        self.store.append_log(
            batch_id,
            _LOG_LABEL,
            f"Graph assembled: {summary.get('nodes_written', 0)} nodes, "
            f"{summary.get('edges_written', 0)} edges, {summary.get('duplicates_merged', 0)} merged, "
            f"{summary.get('orphans_removed', 0)} orphans removed",
        )
        logger.info("kg.assembly.completed", batch_id=batch_id, **_loggable(summary))
        return summary

    def _run_phase(self, batch_id: str, phase: AssemblyState, step: Callable[[], None]) -> None:
        try:
            with pipeline_span(f"graph.{phase.value}", batch_id=batch_id):
                step()
        except PipelineError as exc:
            self._fail(batch_id, phase, exc)
            raise
        except Exception as exc:
            self._fail(batch_id, phase, exc)
            raise GraphStoreUnavailableError(
                f"Graph assembly failed in {phase.value}: {exc}",
                instance=f"batch/{batch_id}",
                extra={"phase": phase.value},
            ) from exc

    def _fail(self, batch_id: str, phase: AssemblyState, exc: Exception) -> None:
        self._record(
            batch_id,
            AssemblyState.FAILED,
            failed_phase=phase.value,
            error={"type": type(exc).__name__, "message": str(exc)},
        )
        self.store.append_log(
            batch_id,
            "errors",
            f"Graph assembly failed during {phase.value}: {exc}",
            level=LogLevel.ERROR,
            phase=phase.value,
        )
        logger.error(
            "kg.assembly.phase_failed",
            batch_id=batch_id,
            phase=phase.value,
            error=str(exc),
            error_type=type(exc).__name__,
        )

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------
    def _schema_phase(self, batch_id: str, summary: dict[str, Any]) -> None:
        result = self.backend.run_schema(batch_id, schema_statements())
        summary["schema_statements"] = result.applied
        summary["schema_skipped"] = list(result.skipped)

    def _data_phase(self, batch_id: str, summary: dict[str, Any]) -> None:
        plan = LoadPlan.from_store(self.store, batch_id)
        loaded = self.backend.run_data(batch_id, lambda writer: load_batch(writer, plan))
        record_graph_writes(nodes=sum(loaded.nodes.values()), edges=sum(loaded.edges.values()))
        summary.update(loaded.as_dict())

    def _maintenance_phase(self, batch_id: str, summary: dict[str, Any]) -> None:
        def _work(writer: GraphWriter) -> tuple[int, int, int]:
            dedup = self.deduplicator.run(writer)
            removed = self.orphans.run(writer)
            return dedup.merged, dedup.edges_moved, len(removed)

        merged, moved, removed = self.backend.run_data(batch_id, _work)
        record_graph_maintenance("dedup_merge", merged)
        record_graph_maintenance("orphan_delete", removed)
        summary.update({"duplicates_merged": merged, "edges_moved": moved, "orphans_removed": removed})

    def _verify_phase(self, batch_id: str, summary: dict[str, Any]) -> None:
        stats = self.backend.run_data(batch_id, lambda writer: writer.statistics())
        report = self.verifier.verify(stats)
        recorded = {warning.get("code") for warning in self.store.get_batch(batch_id).quality_warnings}
        for warning in report.warnings:
            details = {key: value for key, value in warning.items() if key not in {"code", "message"}}
            if warning["code"] not in recorded:
                self.store.add_quality_warning(batch_id, warning["code"], warning["message"], **details)
            self.store.append_log(batch_id, _LOG_LABEL, warning["message"], level=LogLevel.WARNING)
        summary["integrity"] = report.as_dict()


def _loggable(summary: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in summary.items() if not isinstance(value, dict)}


__all__ = ["AssemblyState", "GraphAssemblyEngine", "METADATA_KEY"]
