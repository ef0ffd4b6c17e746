"""Knowledge graph schema, backends and batch graph assembly."""

from .assembly import AssemblyState, GraphAssemblyEngine
from .backend import GraphBackend, GraphStats, GraphWriter, InMemoryGraphBackend, SchemaSummary
from .cypher_templates import CypherTemplates
from .loaders import LoadPlan, load_batch
from .maintenance import Deduplicator, IntegrityVerifier, OrphanRemover
from .neo4j_client import Neo4jGraphBackend
from .schema import CAN_BE_ISOLATED, GRAPH_SCHEMA, POOL_LABELS, schema_statements
from .verbs import VERB_GLOSSARY, VerbSpec

__all__ = [
    "AssemblyState",
    "CAN_BE_ISOLATED",
    "CypherTemplates",
    "Deduplicator",
    "GRAPH_SCHEMA",
    "GraphAssemblyEngine",
    "GraphBackend",
    "GraphStats",
    "GraphWriter",
    "InMemoryGraphBackend",
    "IntegrityVerifier",
    "LoadPlan",
    "Neo4jGraphBackend",
    "OrphanRemover",
    "POOL_LABELS",
    "SchemaSummary",
    "VERB_GLOSSARY",
    "VerbSpec",
    "load_batch",
    "schema_statements",
]
