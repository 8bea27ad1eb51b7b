from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict


class CollectionKey(str, Enum):
    MESSAGES = "messages"
    SELF_CONTEXT = "self_context"
    ENTITIES = "entities"
    ARCHIVES = "archives"


class ConsentLevel(str, Enum):
    PRIVATE = "private"
    CONSENT_REQUIRED = "consent_required"
    SHAREABLE = "shareable"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: object, default: "ConsentLevel | None" = None) -> "ConsentLevel":
        fallback = default or cls.UNKNOWN
        if isinstance(value, ConsentLevel):
            return value
        raw = str(value or "").strip().casefold()
        for level in cls:
            if level.value == raw:
                return level
        return fallback


@dataclass(slots=True)
class MemoryItem:
    id: str
    document: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Collection:
    key: str
    remote_id: str
    name: str


@dataclass(slots=True)
class MemoryHit:
    document: str
    metadata: Dict[str, Any]
    distance: float | None = None
    id: str | None = None


@dataclass(slots=True, frozen=True)
class SelfContextSnippet:
    id: str
    document: str
    metadata: Dict[str, Any]

    @property
    def title(self) -> str:
        return str(self.metadata.get("title") or self.metadata.get("key") or "Note")


@dataclass(slots=True)
class EntityInsight:
    entity_id: str
    name: str
    summary: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    guild_id: str | None = None
    channel_id: str | None = None
    user_id: str | None = None
    history_id: str | None = None
    consent: ConsentLevel | str | None = None
    last_mentioned_at: str | None = None
    source_message_id: str | None = None
    tags: list[str] = field(default_factory=list)

    @property
    def aliases(self) -> list[str]:
        raw = self.attributes.get("aliases")
        if isinstance(raw, (list, tuple)):
            return [str(alias) for alias in raw if str(alias).strip()]
        return []


@dataclass(slots=True)
class MessageTurn:
    history_id: str
    user_id: str
    username: str
    guild_id: str | None = None
    channel_id: str | None = None
    display_name: str | None = None
    global_name: str | None = None
    roles: list[str] = field(default_factory=list)
    user_message_id: str | None = None
    assistant_message_id: str | None = None
    user_content: str = ""
    assistant_content: str = ""
    persona: str = "default"
    latency_ms: int | None = None
    token_counts: Dict[str, int] | None = None
    consent: ConsentLevel | str | None = None
    tags: list[str] = field(default_factory=list)
    modality: str = "text"
    created_at: str | None = None
