from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from ..services.chroma_gateway import ChromaGateway
from .consent import default_consent
from .embedding import EmbeddingAdapter
from .registry import CollectionRegistry
from .types import ConsentLevel, EntityInsight, MemoryItem, MessageTurn
from .utils import (
    DEFAULT_MAX_DOCUMENT_CHARS,
    base_metadata,
    deterministic_id,
    encode_metadata,
    sanitize_document,
    utc_now_iso,
)

logger = logging.getLogger("memory_keeper")

DEFAULT_BATCH_SIZE = 8


def _estimate_tokens(text: str) -> int:
    # Rough rule of thumb: one token per four characters.
    return (len(text) + 3) // 4


def build_message_turn_items(
    turn: MessageTurn,
    *,
    bot_user_id: str = "fibz",
    bot_display_name: str = "Fibz",
    schema_version: str = "v1",
    max_chars: int = DEFAULT_MAX_DOCUMENT_CHARS,
) -> List[MemoryItem]:
    """User turn first, then the paired assistant turn.

    Both turns carry the conversing user's `user_id` so a DM scope finds the
    whole exchange; `author_id` names who actually spoke.
    """
    guild_key = turn.guild_id or "dm"
    channel_key = turn.channel_id or turn.user_id
    consent = default_consent(turn.guild_id, turn.consent)
    created_at = turn.created_at or utc_now_iso()
    token_counts = turn.token_counts
    if token_counts is None and (turn.user_content or turn.assistant_content):
        token_counts = {
            "user": _estimate_tokens(turn.user_content or ""),
            "assistant": _estimate_tokens(turn.assistant_content or ""),
        }

    shared: Dict[str, Any] = {
        "history_id": turn.history_id,
        "guild_id": turn.guild_id,
        "channel_id": turn.channel_id,
        "user_id": turn.user_id,
        "persona": turn.persona,
        "consent": consent.value,
        "latency": turn.latency_ms,
        "token_counts": token_counts,
        "created_at": created_at,
    }

    items: List[MemoryItem] = []
    user_text = (turn.user_content or "").strip()
    if user_text:
        sequence = turn.user_message_id or deterministic_id(created_at, user_text)
        items.append(
            MemoryItem(
                id=deterministic_id("message", guild_key, channel_key, sequence, "user"),
                document=sanitize_document(user_text, max_chars),
                metadata=base_metadata(
                    {
                        **shared,
                        "author_id": turn.user_id,
                        "username": turn.username,
                        "display_name": turn.display_name,
                        "global_name": turn.global_name,
                        "roles": list(turn.roles),
                        "role": "user",
                        "message_id": turn.user_message_id,
                        "modality": turn.modality or "text",
                        "tags": ["user", *turn.tags],
                    },
                    schema_version=schema_version,
                ),
            )
        )

    assistant_text = (turn.assistant_content or "").strip()
    if assistant_text:
        sequence = turn.assistant_message_id or deterministic_id(created_at, assistant_text)
        items.append(
            MemoryItem(
                id=deterministic_id("message", guild_key, channel_key, sequence, "assistant"),
                document=sanitize_document(assistant_text, max_chars),
                metadata=base_metadata(
                    {
                        **shared,
                        "author_id": bot_user_id,
                        "username": bot_display_name,
                        "display_name": bot_display_name,
                        "roles": ["bot"],
                        "role": "assistant",
                        "message_id": turn.assistant_message_id,
                        "reply_to": turn.user_message_id,
                        "tags": ["assistant", *turn.tags],
                    },
                    schema_version=schema_version,
                ),
            )
        )
    return items


def entity_scope_key(insight: EntityInsight) -> str:
    """Guild id, or a per-user key for facts learned in a DM."""
    if insight.guild_id:
        return str(insight.guild_id)
    if insight.user_id:
        return f"dm:{insight.user_id}"
    return "global"


def build_entity_item(
    insight: EntityInsight,
    *,
    schema_version: str = "v1",
    max_chars: int = DEFAULT_MAX_DOCUMENT_CHARS,
) -> MemoryItem:
    return MemoryItem(
        id=deterministic_id("entity", insight.entity_id, entity_scope_key(insight)),
        document=sanitize_document(insight.summary, max_chars),
        metadata=base_metadata(
            {
                "entity_id": insight.entity_id,
                "name": insight.name or insight.entity_id,
                "guild_id": insight.guild_id,
                "channel_id": insight.channel_id,
                "user_id": insight.user_id,
                "history_id": insight.history_id,
                "attributes": dict(insight.attributes),
                "aliases": insight.aliases,
                "consent": default_consent(insight.guild_id, insight.consent).value,
                "tags": ["entity", *insight.tags],
                "last_mentioned_at": insight.last_mentioned_at or utc_now_iso(),
                "source_message_id": insight.source_message_id,
            },
            schema_version=schema_version,
        ),
    )


def build_self_context_item(
    key: str,
    content: str,
    metadata: Mapping[str, Any] | None = None,
    *,
    schema_version: str = "v1",
    max_chars: int = DEFAULT_MAX_DOCUMENT_CHARS,
) -> MemoryItem:
    extra = dict(metadata or {})
    tags = ["self", *[str(tag) for tag in extra.pop("tags", None) or []]]
    consent = ConsentLevel.parse(extra.pop("consent", None), default=ConsentLevel.SHAREABLE).value
    return MemoryItem(
        id=deterministic_id("self", key),
        document=sanitize_document(content, max_chars),
        metadata=base_metadata(
            {"key": key, **extra, "consent": consent, "tags": tags},
            schema_version=schema_version,
        ),
    )


class MemoryWriter:
    def __init__(
        self,
        registry: CollectionRegistry,
        gateway: ChromaGateway,
        embedder: EmbeddingAdapter,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_chars: int = DEFAULT_MAX_DOCUMENT_CHARS,
    ) -> None:
        self.registry = registry
        self.gateway = gateway
        self.embedder = embedder
        self.batch_size = max(1, int(batch_size))
        self.max_chars = max(1, int(max_chars))

    @staticmethod
    def _batches(items: Sequence[MemoryItem], size: int) -> Iterable[Sequence[MemoryItem]]:
        for start in range(0, len(items), size):
            yield items[start : start + size]

    async def upsert(self, collection_key: str, items: Sequence[MemoryItem], batch_size: int | None = None) -> int:
        """Embed and upsert `items` in order; returns how many were submitted."""
        if not items:
            return 0
        collection = await self.registry.ensure(collection_key)
        if collection is None:
            return 0

        size = max(1, int(batch_size or self.batch_size))
        submitted = 0
        skipped = 0
        for batch in self._batches(list(items), size):
            ids: List[str] = []
            documents: List[str] = []
            metadatas: List[Dict[str, Any]] = []
            embeddings: List[List[float]] = []
            for item in batch:
                document = sanitize_document(item.document, self.max_chars)
                embedding = await self.embedder.embed(document)
                if embedding is None:
                    skipped += 1
                    continue
                ids.append(item.id)
                documents.append(document)
                metadatas.append(encode_metadata(item.metadata))
                embeddings.append(embedding)
            if not ids:
                continue
            ok = await self.gateway.upsert(
                collection.remote_id,
                ids=ids,
                documents=documents,
                metadatas=metadatas,
                embeddings=embeddings,
            )
            if ok:
                submitted += len(ids)

        if skipped:
            logger.warning(
                "Skipped %s of %s %s item(s) without an embedding",
                skipped,
                len(items),
                collection.key,
            )
        return submitted
