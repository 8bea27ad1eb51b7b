from .embedding import EmbeddingAdapter
from .insights import InsightAnalysisQueue, InsightPayload
from .migration import LegacyMigrationJob, MigrationReport
from .reader import MemoryReader, ScopeFilter
from .registry import CollectionRegistry
from .service import MemoryService, format_entity_insights, format_memories, format_self_context
from .types import CollectionKey, ConsentLevel, EntityInsight, MemoryHit, MemoryItem, MessageTurn
from .writer import MemoryWriter

__all__ = [
    "CollectionKey",
    "CollectionRegistry",
    "ConsentLevel",
    "EmbeddingAdapter",
    "EntityInsight",
    "InsightAnalysisQueue",
    "InsightPayload",
    "LegacyMigrationJob",
    "MemoryHit",
    "MemoryItem",
    "MemoryReader",
    "MemoryService",
    "MemoryWriter",
    "MessageTurn",
    "MigrationReport",
    "ScopeFilter",
    "format_entity_insights",
    "format_memories",
    "format_self_context",
]
