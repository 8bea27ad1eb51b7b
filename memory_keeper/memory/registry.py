from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from ..services.chroma_gateway import ChromaGateway
from .types import Collection, CollectionKey

logger = logging.getLogger("memory_keeper")


class CollectionRegistry:
    """Resolves logical collection keys to remote ids, once per process."""

    def __init__(self, gateway: ChromaGateway, prefix: str = "fibz") -> None:
        self.gateway = gateway
        self.prefix = (prefix or "fibz").strip()
        self._cache: Dict[str, Collection] = {}
        self._lock = asyncio.Lock()

    def name_for(self, key: str) -> str:
        return f"{self.prefix}_{CollectionKey(key).value}"

    def cached(self, key: str) -> Collection | None:
        return self._cache.get(CollectionKey(key).value)

    @staticmethod
    def default_metadata(key: str) -> Dict[str, Any]:
        return {"type": CollectionKey(key).value, "hnsw:space": "cosine"}

    async def ensure(self, key: str, creation_metadata: Dict[str, Any] | None = None) -> Collection | None:
        logical = CollectionKey(key).value
        hit = self._cache.get(logical)
        if hit is not None:
            return hit

        async with self._lock:
            hit = self._cache.get(logical)
            if hit is not None:
                return hit

            name = self.name_for(logical)
            resolved: Dict[str, Any] | None = None
            for existing in await self.gateway.list_collections():
                if existing.get("name") == name:
                    resolved = existing
                    break
            if resolved is None:
                resolved = await self.gateway.create_collection(
                    name,
                    creation_metadata or self.default_metadata(logical),
                )
            if not resolved or not resolved.get("id"):
                logger.debug("Collection %s unavailable for this call", name)
                return None

            collection = Collection(key=logical, remote_id=str(resolved["id"]), name=name)
            self._cache[logical] = collection
            logger.info("Collection %s ready (id=%s)", name, collection.remote_id)
            return collection

    async def ensure_all(self) -> dict[str, Collection | None]:
        resolved: dict[str, Collection | None] = {}
        for key in CollectionKey:
            resolved[key.value] = await self.ensure(key.value)
        return resolved
