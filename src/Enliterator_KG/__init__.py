"""Enliterator knowledge graph pipeline - main module.

Key Responsibilities:
    - Serve as the root package for the batch ingestion pipeline
    - Expose a trivial health check used by the CLI and deployment probes

Collaborators:
    - Upstream: CLI entry-points and embedding applications
    - Downstream: ``pipeline``, ``kg``, ``embedding`` and ``orchestration``

Example:
    >>> from Enliterator_KG import ping
    >>> ping()
    'pong'
"""

__version__ = "0.1.0"


def ping() -> str:
    """Return a simple health check response."""
    return "pong"


__all__ = ["__version__", "ping"]
