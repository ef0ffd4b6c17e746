"""Deterministic identifiers shared by the store, graph and embedding layers."""

from __future__ import annotations

import hashlib
import re
import unicodedata

CUSTOM_ID_PREFIX = "item-"

_PUNCTUATION = re.compile(r"[^\w\s-]")
_WHITESPACE = re.compile(r"[\s_-]+")


def content_hash(content: str | bytes) -> str:
    """Return the sha256 hex digest used as the item idempotency key."""
    payload = content.encode("utf-8") if isinstance(content, str) else content
    return hashlib.sha256(payload).hexdigest()


def canonical_key(term: str) -> str:
    """Fold a surface form into the key used for lexicon and entity dedup.

    Case, accents, punctuation and runs of whitespace are folded so that
    ``"Coffee  Shop"`` and ``"coffee-shop!"`` share a key.
    """
    normalized = unicodedata.normalize("NFKD", term)
    stripped = "".join(ch for ch in normalized if not unicodedata.combining(ch))
    stripped = _PUNCTUATION.sub("", stripped.casefold())
    return _WHITESPACE.sub(" ", stripped).strip()


def custom_id_for(item_id: str) -> str:
    return f"{CUSTOM_ID_PREFIX}{item_id}"


def item_id_from_custom_id(custom_id: str) -> str:
    if not custom_id.startswith(CUSTOM_ID_PREFIX):
        raise ValueError(f"Unrecognised embedding custom id '{custom_id}'")
    return custom_id[len(CUSTOM_ID_PREFIX) :]


__all__ = ["canonical_key", "content_hash", "custom_id_for", "item_id_from_custom_id"]
