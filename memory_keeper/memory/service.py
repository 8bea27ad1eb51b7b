from __future__ import annotations

import logging
from typing import Any, Iterable, List, Mapping, Sequence

from ..services.chroma_gateway import ChromaGateway
from .embedding import EmbeddingAdapter
from .insights import InsightAnalysisQueue, InsightPayload, JsonGenerator
from .migration import LegacyMigrationJob, MigrationReport
from .reader import MemoryReader, ScopeFilter, where_all
from .registry import CollectionRegistry
from .self_context import SelfContextCache
from .types import CollectionKey, EntityInsight, MemoryHit, MessageTurn, SelfContextSnippet
from .utils import DEFAULT_MAX_DOCUMENT_CHARS
from .writer import MemoryWriter, build_entity_item, build_message_turn_items, build_self_context_item

logger = logging.getLogger("memory_keeper")

# A user turn and its reply always go out in one request.
MESSAGE_TURN_BATCH_SIZE = 2


class MemoryService:
    """Long-term memory facade.

    Every operation degrades to an empty result when the vector index,
    the embedding provider or the analyzer is unavailable.
    """

    def __init__(
        self,
        gateway: ChromaGateway,
        embedder: EmbeddingAdapter,
        *,
        generator: JsonGenerator | None = None,
        enabled: bool = True,
        collection_prefix: str = "fibz",
        schema_version: str = "v1",
        max_document_chars: int = DEFAULT_MAX_DOCUMENT_CHARS,
        upsert_batch_size: int = 8,
        self_context_page_size: int = 100,
        retrieval_limit: int = 5,
        insight_queue_max_depth: int = 5,
        insight_analysis_enabled: bool = True,
        bot_user_id: str = "fibz",
        bot_display_name: str = "Fibz",
    ) -> None:
        self.gateway = gateway
        self.embedder = embedder
        self.enabled = enabled
        self.schema_version = schema_version
        self.max_document_chars = max_document_chars
        self.retrieval_limit = max(1, int(retrieval_limit))
        self.bot_user_id = bot_user_id
        self.bot_display_name = bot_display_name

        self.registry = CollectionRegistry(gateway, collection_prefix)
        self.writer = MemoryWriter(
            self.registry,
            gateway,
            embedder,
            batch_size=upsert_batch_size,
            max_chars=max_document_chars,
        )
        self.reader = MemoryReader(self.registry, gateway, embedder)
        self.self_context = SelfContextCache(self.reader, self_context_page_size)
        self.insights = InsightAnalysisQueue(
            generator if insight_analysis_enabled else None,
            self,
            insight_queue_max_depth,
        )
        self.migration = LegacyMigrationJob(
            gateway,
            self.registry,
            self.writer,
            schema_version=schema_version,
            max_chars=max_document_chars,
        )
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return
        await self.gateway.start()
        if self.enabled:
            resolved = await self.registry.ensure_all()
            missing = [key for key, collection in resolved.items() if collection is None]
            if missing:
                logger.warning("Long-term memory degraded; unresolved collections: %s", ", ".join(missing))
            await self.self_context.refresh()
            await self.insights.start()
        self._initialized = True
        logger.info(
            "Memory service ready (enabled=%s, embeddings=%s, analyzer=%s)",
            self.enabled,
            self.embedder.enabled,
            self.insights.generator is not None,
        )

    async def close(self) -> None:
        await self.insights.close()
        await self.gateway.close()
        self._initialized = False

    # ---- retrieval ----

    async def retrieve_relevant_memories(
        self,
        query: str,
        *,
        user_id: str | None = None,
        guild_id: str | None = None,
        channel_id: str | None = None,
        limit: int | None = None,
    ) -> List[MemoryHit]:
        if not self.enabled:
            return []
        scope = ScopeFilter(user_id=user_id, guild_id=guild_id, channel_id=channel_id)
        try:
            return await self.reader.query(
                CollectionKey.MESSAGES.value,
                query,
                scope,
                limit or self.retrieval_limit,
            )
        except ValueError as exc:
            logger.warning("Refusing unscoped memory query: %s", exc)
            return []

    async def retrieve_entity_insights(
        self,
        query: str,
        *,
        user_id: str | None = None,
        guild_id: str | None = None,
        limit: int | None = None,
    ) -> List[MemoryHit]:
        """Entity facts from the same guild, or from the same user's DMs."""
        if not self.enabled:
            return []
        scope = ScopeFilter(user_id=user_id, guild_id=guild_id)
        try:
            return await self.reader.query(
                CollectionKey.ENTITIES.value,
                query,
                scope,
                limit or self.retrieval_limit,
            )
        except ValueError as exc:
            logger.warning("Refusing unscoped entity query: %s", exc)
            return []

    async def get_entities_by_ids(self, entity_ids: Iterable[str]) -> List[MemoryHit]:
        if not self.enabled:
            return []
        found: List[MemoryHit] = []
        for entity_id in entity_ids:
            if not entity_id:
                continue
            hits = await self.reader.get_where(
                CollectionKey.ENTITIES.value,
                {"entity_id": str(entity_id)},
                limit=1,
            )
            found.extend(hits[:1])
        return found

    def get_self_context_snippets(self, limit: int = 3) -> List[SelfContextSnippet]:
        return self.self_context.snippets(limit)

    # ---- writes ----

    async def store_message_turn(self, turn: MessageTurn) -> int:
        if not self.enabled:
            return 0
        items = build_message_turn_items(
            turn,
            bot_user_id=self.bot_user_id,
            bot_display_name=self.bot_display_name,
            schema_version=self.schema_version,
            max_chars=self.max_document_chars,
        )
        if not items:
            return 0
        return await self.writer.upsert(CollectionKey.MESSAGES.value, items, batch_size=MESSAGE_TURN_BATCH_SIZE)

    async def store_entity_insight(self, insight: EntityInsight) -> bool:
        if not self.enabled or not insight.entity_id or not (insight.summary or "").strip():
            return False
        item = build_entity_item(
            insight,
            schema_version=self.schema_version,
            max_chars=self.max_document_chars,
        )
        return await self.writer.upsert(CollectionKey.ENTITIES.value, [item]) > 0

    async def store_self_context_snippet(
        self,
        key: str,
        content: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> bool:
        if not self.enabled or not key or not (content or "").strip():
            return False
        item = build_self_context_item(
            key,
            content,
            metadata,
            schema_version=self.schema_version,
            max_chars=self.max_document_chars,
        )
        stored = await self.writer.upsert(CollectionKey.SELF_CONTEXT.value, [item]) > 0
        await self.self_context.refresh()
        return stored

    def queue_insight_analysis(self, payload: InsightPayload) -> bool:
        if not self.enabled:
            return False
        return self.insights.enqueue(payload)

    # ---- deletion ----

    async def _delete(self, collection_key: str, where: Mapping[str, Any]) -> bool:
        collection = await self.registry.ensure(collection_key)
        if collection is None:
            return False
        return await self.gateway.delete(collection.remote_id, where=dict(where))

    async def delete_user_memories(
        self,
        *,
        history_id: str | None = None,
        guild_id: str | None = None,
        channel_id: str | None = None,
        user_id: str | None = None,
    ) -> bool:
        where = where_all(
            {
                "history_id": history_id,
                "user_id": user_id,
                "guild_id": guild_id,
                "channel_id": channel_id,
            }
        )
        if where is None:
            logger.warning("delete_user_memories called without any scope; nothing deleted")
            return False
        deleted = await self._delete(CollectionKey.MESSAGES.value, where)
        if deleted:
            logger.info("Deleted user memories matching %s", where)
        return deleted

    async def delete_server_memories(self, guild_id: str | None) -> bool:
        if not guild_id:
            return False
        where = {"guild_id": str(guild_id)}
        messages = await self._delete(CollectionKey.MESSAGES.value, where)
        entities = await self._delete(CollectionKey.ENTITIES.value, where)
        if messages or entities:
            logger.info("Deleted server memories for guild %s", guild_id)
        return messages and entities

    # ---- migration ----

    async def migrate_legacy_histories(self, histories: Mapping[str, Any] | None) -> MigrationReport:
        if not self.enabled:
            return MigrationReport(skipped="disabled")
        return await self.migration.migrate(histories)


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else f"{text[:limit]}…"


def format_memories(hits: Sequence[MemoryHit], bot_display_name: str = "Fibz") -> str:
    lines: List[str] = []
    for index, hit in enumerate(hits, start=1):
        metadata = hit.metadata or {}
        if metadata.get("role") == "assistant":
            label = bot_display_name
        else:
            label = str(metadata.get("username") or "User")
        timestamp = f" [{metadata['created_at']}]" if metadata.get("created_at") else ""
        lines.append(f"{index}. {label}{timestamp}: {_clip(hit.document, 400)}")
    return "\n".join(lines)


def format_entity_insights(hits: Sequence[MemoryHit]) -> str:
    lines: List[str] = []
    for hit in hits:
        metadata = hit.metadata or {}
        name = metadata.get("name") or metadata.get("entity_id") or "Entity"
        last = f" (last mentioned {metadata['last_mentioned_at']})" if metadata.get("last_mentioned_at") else ""
        lines.append(f"- {name}{last}: {_clip(hit.document, 300)}")
    return "\n".join(lines)


def format_self_context(snippets: Sequence[SelfContextSnippet]) -> str:
    return "\n".join(f"- {snippet.title}: {_clip(snippet.document, 400)}" for snippet in snippets)
