"""Deterministic event identity for deduplicating replayed upstream events."""

import hashlib
from typing import Optional


def derive_event_id(origin: str, origin_local_id: str) -> str:
    """
    Derive a stable dedup key from an upstream system's own event reference.

    The same ``(origin, origin_local_id)`` pair always yields the same
    SHA-256 hex digest, so a retried or replayed event maps onto the record
    created the first time.
    """
    return hashlib.sha256(f"{origin}:{origin_local_id}".encode("utf-8")).hexdigest()


def event_id_from(source: Optional[str], source_event_id: Optional[str]) -> Optional[str]:
    """Event id for tool inputs that carry both fields, else None."""
    if source and source_event_id:
        return derive_event_id(source, source_event_id)
    return None
