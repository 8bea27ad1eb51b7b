from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping

from ..services.chroma_gateway import ChromaGateway
from .embedding import EmbeddingAdapter
from .registry import CollectionRegistry
from .types import MemoryHit
from .utils import column, decode_metadata, first_row


@dataclass(slots=True, frozen=True)
class ScopeFilter:
    user_id: str | None = None
    guild_id: str | None = None
    channel_id: str | None = None
    history_id: str | None = None

    def clauses(self) -> List[Dict[str, str]]:
        if self.guild_id:
            clauses = [{"guild_id": str(self.guild_id)}]
            if self.channel_id:
                clauses.append({"channel_id": str(self.channel_id)})
            return clauses
        if self.user_id:
            return [{"user_id": str(self.user_id)}]
        if self.history_id:
            return [{"history_id": str(self.history_id)}]
        return []

    def to_where(self) -> Dict[str, Any] | None:
        return combine_clauses(self.clauses())


def combine_clauses(clauses: List[Dict[str, Any]]) -> Dict[str, Any] | None:
    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def where_all(fields: Mapping[str, Any]) -> Dict[str, Any] | None:
    """Equality on every non-empty field, or None when nothing is set."""
    return combine_clauses([{key: str(value)} for key, value in fields.items() if value not in (None, "")])


def _sort_key(hit: MemoryHit) -> tuple[int, float]:
    if hit.distance is None:
        return (1, 0.0)
    return (0, hit.distance)


class MemoryReader:
    def __init__(
        self,
        registry: CollectionRegistry,
        gateway: ChromaGateway,
        embedder: EmbeddingAdapter,
    ) -> None:
        self.registry = registry
        self.gateway = gateway
        self.embedder = embedder

    async def query(
        self,
        collection_key: str,
        query_text: str,
        scope: ScopeFilter | None,
        limit: int = 5,
    ) -> List[MemoryHit]:
        """Nearest neighbours inside `scope`, closest first.

        `scope=None` means an intentionally unscoped collection. A ScopeFilter
        with no keys is a caller bug and raises instead of matching everything.
        """
        where: Dict[str, Any] | None = None
        if scope is not None:
            where = scope.to_where()
            if where is None:
                raise ValueError("scope filter has no user, guild or history key")

        if not (query_text or "").strip():
            return []
        collection = await self.registry.ensure(collection_key)
        if collection is None:
            return []
        embedding = await self.embedder.embed(query_text)
        if embedding is None:
            return []

        data = await self.gateway.query(
            collection.remote_id,
            query_embeddings=[embedding],
            n_results=max(1, int(limit)),
            where=where,
        )
        ids = first_row(data, "ids")
        documents = first_row(data, "documents")
        metadatas = first_row(data, "metadatas")
        distances = first_row(data, "distances")

        hits: List[MemoryHit] = []
        for index, document in enumerate(documents):
            if not document:
                continue
            distance = distances[index] if index < len(distances) else None
            hits.append(
                MemoryHit(
                    document=str(document),
                    metadata=decode_metadata(metadatas[index] if index < len(metadatas) else None),
                    distance=float(distance) if isinstance(distance, (int, float)) else None,
                    id=str(ids[index]) if index < len(ids) else None,
                )
            )
        hits.sort(key=_sort_key)
        return hits

    async def get_where(
        self,
        collection_key: str,
        where: Dict[str, Any],
        limit: int | None = None,
        offset: int | None = None,
    ) -> List[MemoryHit]:
        """Exact metadata lookup; no embedding involved."""
        if not where:
            raise ValueError("get_where needs a non-empty where filter")
        collection = await self.registry.ensure(collection_key)
        if collection is None:
            return []
        data = await self.gateway.get(collection.remote_id, where=where, limit=limit, offset=offset)
        return self._rows(data)

    async def get_page(self, collection_key: str, limit: int, offset: int = 0) -> List[MemoryHit]:
        collection = await self.registry.ensure(collection_key)
        if collection is None:
            return []
        data = await self.gateway.get(collection.remote_id, limit=limit, offset=offset)
        return self._rows(data)

    async def count(self, collection_key: str) -> int | None:
        collection = await self.registry.ensure(collection_key)
        if collection is None:
            return None
        return await self.gateway.count(collection.remote_id)

    @staticmethod
    def _rows(data: Dict[str, Any] | None) -> List[MemoryHit]:
        ids = column(data, "ids")
        documents = column(data, "documents")
        metadatas = column(data, "metadatas")
        return [
            MemoryHit(
                document=str(document),
                metadata=decode_metadata(metadatas[index] if index < len(metadatas) else None),
                id=str(ids[index]) if index < len(ids) else None,
            )
            for index, document in enumerate(documents)
            if document
        ]
