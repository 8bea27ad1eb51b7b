from __future__ import annotations

import logging
from typing import Tuple

from .reader import MemoryReader
from .types import CollectionKey, MemoryHit, SelfContextSnippet

logger = logging.getLogger("memory_keeper")

DEFAULT_PAGE_SIZE = 100


def _newest_first(hits: list[MemoryHit]) -> list[MemoryHit]:
    # Insertion order breaks ties between equal timestamps.
    return sorted(reversed(hits), key=lambda hit: str(hit.metadata.get("created_at") or ""), reverse=True)


class SelfContextCache:
    """Read-through copy of the newest self-context notes.

    `refresh()` replaces the whole tuple; `snippets()` never touches the network.
    """

    def __init__(self, reader: MemoryReader, page_size: int = DEFAULT_PAGE_SIZE) -> None:
        self.reader = reader
        self.page_size = max(1, int(page_size))
        self._snippets: Tuple[SelfContextSnippet, ...] = ()

    def __len__(self) -> int:
        return len(self._snippets)

    async def refresh(self) -> int:
        total = await self.reader.count(CollectionKey.SELF_CONTEXT.value)
        offset = max(0, (total or 0) - self.page_size)
        hits = await self.reader.get_page(CollectionKey.SELF_CONTEXT.value, limit=self.page_size, offset=offset)
        if not hits and self._snippets:
            # Keep the last good copy while the index is unreachable.
            logger.debug("Self-context refresh returned nothing; keeping %s cached snippet(s)", len(self._snippets))
            return len(self._snippets)
        self._snippets = tuple(
            SelfContextSnippet(id=hit.id or "", document=hit.document, metadata=dict(hit.metadata))
            for hit in _newest_first(hits)
        )
        return len(self._snippets)

    def snippets(self, limit: int = 3) -> list[SelfContextSnippet]:
        return list(self._snippets[: max(0, int(limit))])
