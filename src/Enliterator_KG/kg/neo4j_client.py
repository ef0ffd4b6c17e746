"""Graph backend on top of the Neo4j Python driver.

This module adapts the driver to the :class:`~Enliterator_KG.kg.backend.GraphBackend`
protocol used by graph assembly.

Key Responsibilities:
    - Provide session management with automatic cleanup
    - Create one database per batch namespace on demand
    - Run schema statements and data work in separate sessions, each as a
      managed write transaction
    - Retry transient driver errors with tenacity and surface exhausted
      retries as :class:`GraphStoreUnavailableError`

Collaborators:
    - Upstream: Graph assembly engine
    - Downstream: Neo4j driver, CypherTemplates

Side Effects:
    - Creates databases, constraints, indexes, nodes and relationships

Thread Safety:
    - Thread-safe when the driver is: sessions are opened per operation
"""

# ============================================================================
# IMPORTS
# ============================================================================

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, TypeVar

import structlog
from neo4j import GraphDatabase
from neo4j.exceptions import (
    ClientError,
    DriverError,
    Neo4jError,
    ServiceUnavailable,
    SessionExpired,
    TransientError,
)
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from Enliterator_KG.config.settings import Neo4jSettings
from Enliterator_KG.pipeline.errors import GraphStoreUnavailableError

from .backend import GraphStats, GraphWriter, SchemaSummary
from .cypher_templates import CypherTemplates
from .schema import CONTENT_LABELS, RIGHTS_LABEL, RIGHTS_RELATIONSHIP, SchemaStatement

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_TRANSIENT = (ServiceUnavailable, SessionExpired, TransientError)
_DATABASE_NAME = re.compile(r"[^a-z0-9.\-]")


# ============================================================================
# TRANSACTION WRITER
# ============================================================================


@dataclass(slots=True)
class Neo4jGraphWriter:
    """:class:`GraphWriter` bound to one managed Neo4j transaction."""

    tx: Any
    templates: CypherTemplates

    def _run(self, query: str, parameters: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        return self.tx.run(query, dict(parameters or {})).data()

    def merge_node(self, label: str, node_id: str, properties: Mapping[str, Any]) -> None:
        self._run(*self.templates.merge_node(label, node_id, properties))

    def merge_edge(
        self,
        source_label: str,
        source_id: str,
        rel_type: str,
        target_label: str,
        target_id: str,
        properties: Mapping[str, Any] | None = None,
    ) -> bool:
        query, parameters = self.templates.merge_edge(
            source_label, source_id, rel_type, target_label, target_id, properties
        )
        rows = self._run(query, parameters)
        return bool(rows and rows[0].get("merged"))

    def duplicate_groups(self, label: str) -> list[tuple[str, list[str]]]:
        rows = self._run(*self.templates.duplicate_groups(label))
        return [(row["key"], list(row["ids"])) for row in rows]

    def merge_into(self, label: str, keep_id: str, remove_id: str) -> int:
        moved = 0
        for row in self._run(*self.templates.node_relationships(remove_id)):
            other = row["other"]
            if other in (keep_id, remove_id):
                continue
            self._run(
                *self.templates.move_relationship(
                    label,
                    keep_id,
                    row["type"],
                    row["other_label"],
                    other,
                    outgoing=bool(row["outgoing"]),
                    properties=row.get("props") or {},
                )
            )
            moved += 1
        self._run(*self.templates.absorb_node(label, keep_id, remove_id))
        return moved

    def delete_orphans(self, isolatable: Iterable[str]) -> list[tuple[str, str]]:
        rows = self._run(*self.templates.delete_orphans(isolatable))
        return sorted((row["id"], row["label"]) for row in rows)

    def statistics(self) -> GraphStats:
        nodes = self._run(*self.templates.count_nodes_by_label())
        edges = self._run(*self.templates.count_edges_by_type())
        missing = self._run(
            *self.templates.nodes_missing_rights(CONTENT_LABELS, RIGHTS_LABEL, RIGHTS_RELATIONSHIP)
        )
        return GraphStats(
            node_counts={row["label"]: row["count"] for row in nodes},
            edge_counts={row["type"]: row["count"] for row in edges},
            nodes_missing_rights=sorted(row["id"] for row in missing),
        )


# ============================================================================
# BACKEND IMPLEMENTATION
# ============================================================================


@dataclass(slots=True)
class Neo4jGraphBackend:
    """Runs graph assembly transactions against Neo4j.

    Attributes:
        driver: Neo4j driver instance for database connections
        settings: Connection, naming and retry configuration
        templates: CypherTemplates instance for query generation

    Example:
        >>> backend = Neo4jGraphBackend.from_settings(settings.neo4j)
        >>> backend.ensure_namespace("batch-000001")
        >>> backend.run_schema("batch-000001", schema_statements())
    """

    driver: Any
    settings: Neo4jSettings = field(default_factory=Neo4jSettings)
    templates: CypherTemplates = field(default_factory=CypherTemplates)

    @classmethod
    def from_settings(cls, settings: Neo4jSettings) -> Neo4jGraphBackend:
        driver = GraphDatabase.driver(
            settings.uri,
            auth=(settings.username, settings.password.get_secret_value()),
        )
        return cls(driver=driver, settings=settings)

    def database_name(self, namespace: str) -> str | None:
        """Database holding ``namespace``; ``None`` selects the server default."""
        if not self.settings.per_batch_databases:
            return None
        name = _DATABASE_NAME.sub("-", f"{self.settings.database_prefix}{namespace}".lower())
        return name[:63]

    @contextmanager
    def _session(self, database: str | None = None) -> Iterator[Any]:
        session = self.driver.session(database=database)
        try:
            yield session
        finally:
            session.close()

    def _call(self, operation: str, namespace: str, func: Callable[[], T]) -> T:
        retrying = Retrying(
            stop=stop_after_attempt(self.settings.max_retries),
            wait=wait_exponential(
                multiplier=self.settings.retry_base_seconds,
                max=self.settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(_TRANSIENT),
            reraise=True,
        )
        try:
            return retrying(func)
        except (Neo4jError, DriverError) as exc:
            logger.error(
                "kg.neo4j.operation_failed",
                operation=operation,
                namespace=namespace,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise GraphStoreUnavailableError(
                f"Graph {operation} failed for {namespace}: {exc}",
                extra={"operation": operation, "namespace": namespace},
            ) from exc

    def ensure_namespace(self, namespace: str) -> None:
        database = self.database_name(namespace)
        if database is None:
            return
        query, parameters = self.templates.create_database(database)

        def _create() -> None:
            with self._session("system") as session:
                session.run(query, parameters).consume()

        self._call("create_database", namespace, _create)
        logger.info("kg.neo4j.namespace_ready", namespace=namespace, database=database)

    def run_schema(self, namespace: str, statements: Sequence[SchemaStatement]) -> SchemaSummary:
        summary = SchemaSummary()
        with self._session(self.database_name(namespace)) as session:
            for statement in statements:
                query = self.templates.schema_statement(statement)
                try:
                    self._call(
                        "schema",
                        namespace,
                        lambda: session.execute_write(lambda tx: tx.run(query).consume()),
                    )
                except GraphStoreUnavailableError as exc:
                    if statement.optional and isinstance(exc.__cause__, ClientError):
                        # Existence constraints need an enterprise server.
                        logger.debug("kg.neo4j.schema_skipped", statement=statement.name, error=str(exc))
                        summary.skipped.append(statement.name)
                        continue
                    raise
                summary.applied += 1
            if self.settings.schema_settle_seconds:
                self._call(
                    "schema",
                    namespace,
                    lambda: session.run(
                        "CALL db.awaitIndexes($timeout)",
                        {"timeout": self.settings.schema_settle_seconds},
                    ).consume(),
                )
        return summary

    def run_data(self, namespace: str, work: Callable[[GraphWriter], T]) -> T:
        with self._session(self.database_name(namespace)) as session:
            return self._call(
                "data",
                namespace,
                lambda: session.execute_write(lambda tx: work(Neo4jGraphWriter(tx, self.templates))),
            )

    def close(self) -> None:
        self.driver.close()


__all__ = ["Neo4jGraphBackend", "Neo4jGraphWriter"]
