"""Shared utilities: logging and identifiers."""

from .identifiers import canonical_key, content_hash, custom_id_for, item_id_from_custom_id

__all__ = [
    "canonical_key",
    "content_hash",
    "custom_id_for",
    "item_id_from_custom_id",
]
