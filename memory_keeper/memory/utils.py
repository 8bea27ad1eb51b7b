from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping

DEFAULT_MAX_DOCUMENT_CHARS = 6000

# Chroma metadata values must be scalars; these keys are stored as JSON strings.
_STRUCTURED_METADATA_KEYS = frozenset({"tags", "roles", "attributes", "aliases", "token_counts"})


def deterministic_id(*parts: object) -> str:
    payload = "::".join(str(part) for part in parts if part not in (None, ""))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def sanitize_document(document: str | None, max_chars: int = DEFAULT_MAX_DOCUMENT_CHARS) -> str:
    if not document:
        return ""
    text = str(document)
    limit = max(1, int(max_chars))
    if len(text) <= limit:
        return text
    return text[:limit]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def base_metadata(overrides: Mapping[str, Any] | None = None, *, schema_version: str = "v1") -> Dict[str, Any]:
    metadata: Dict[str, Any] = {
        "consent": "unknown",
        "modality": "text",
        "version": schema_version,
        "tags": [],
    }
    metadata.update(dict(overrides or {}))
    if not metadata.get("created_at"):
        metadata["created_at"] = utc_now_iso()
    return metadata


def encode_metadata(metadata: Mapping[str, Any]) -> Dict[str, Any]:
    encoded: Dict[str, Any] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, Enum):
            value = value.value
        if key in _STRUCTURED_METADATA_KEYS or isinstance(value, (list, tuple, set, dict)):
            if isinstance(value, (set, tuple)):
                value = sorted(value) if isinstance(value, set) else list(value)
            encoded[key] = json.dumps(value, ensure_ascii=False, sort_keys=True)
            continue
        if isinstance(value, (str, int, float, bool)):
            encoded[key] = value
        else:
            encoded[key] = str(value)
    return encoded


def decode_metadata(metadata: Mapping[str, Any] | None) -> Dict[str, Any]:
    if not metadata:
        return {}
    decoded: Dict[str, Any] = dict(metadata)
    for key in _STRUCTURED_METADATA_KEYS:
        raw = decoded.get(key)
        if not isinstance(raw, str):
            continue
        try:
            decoded[key] = json.loads(raw)
        except json.JSONDecodeError:
            continue
    return decoded


def first_row(data: Mapping[str, Any] | None, key: str) -> list[Any]:
    """Chroma `query` nests results one level per query embedding; take the first row."""
    if not data:
        return []
    value = data.get(key)
    if not isinstance(value, list) or not value:
        return []
    head = value[0]
    return head if isinstance(head, list) else []


def column(data: Mapping[str, Any] | None, key: str) -> list[Any]:
    if not data:
        return []
    value = data.get(key)
    return value if isinstance(value, list) else []
