from __future__ import annotations

from typing import Any, Iterable, Mapping

from .types import ConsentLevel, MemoryHit


def default_consent(guild_id: str | None, override: ConsentLevel | str | None = None) -> ConsentLevel:
    fallback = ConsentLevel.SHAREABLE if guild_id else ConsentLevel.PRIVATE
    if override:
        return ConsentLevel.parse(override, default=fallback)
    return fallback


def is_shareable(metadata: Mapping[str, Any] | None, requester_id: str | None) -> bool:
    """Per-record disclosure rule; never cache the answer for a whole scope."""
    if not metadata:
        return True
    consent = str(metadata.get("consent") or "").strip().casefold()
    if consent == ConsentLevel.PRIVATE.value:
        return False
    if consent == ConsentLevel.CONSENT_REQUIRED.value:
        entity_id = metadata.get("entity_id")
        return entity_id is not None and requester_id is not None and str(entity_id) == str(requester_id)
    return True


def filter_shareable(hits: Iterable[MemoryHit], requester_id: str | None) -> list[MemoryHit]:
    shareable: list[MemoryHit] = []
    seen: set[str] = set()
    for hit in hits:
        metadata = hit.metadata or {}
        dedupe_key = str(metadata.get("entity_id") or metadata.get("name") or hit.id or hit.document[:30])
        if dedupe_key in seen:
            continue
        if not is_shareable(metadata, requester_id):
            continue
        shareable.append(hit)
        seen.add(dedupe_key)
    return shareable
