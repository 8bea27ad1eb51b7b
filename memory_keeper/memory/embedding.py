from __future__ import annotations

import asyncio
import logging
from typing import List, Protocol

from .utils import DEFAULT_MAX_DOCUMENT_CHARS, sanitize_document

logger = logging.getLogger("memory_keeper")


class _EmbeddingProvider(Protocol):
    async def embed(self, text: str) -> List[float] | None: ...


class EmbeddingAdapter:
    """Turns text into a vector, or None. Never raises past this boundary."""

    def __init__(
        self,
        provider: _EmbeddingProvider | None,
        max_chars: int = DEFAULT_MAX_DOCUMENT_CHARS,
    ) -> None:
        self.provider = provider
        self.max_chars = max(1, int(max_chars))
        self.dimension: int | None = None
        self._failure_logged = False

    @property
    def enabled(self) -> bool:
        return self.provider is not None

    async def embed(self, text: str | None) -> List[float] | None:
        if self.provider is None:
            return None
        trimmed = (text or "").strip()
        if not trimmed:
            return None
        try:
            vector = await self.provider.embed(sanitize_document(trimmed, self.max_chars))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not self._failure_logged:
                self._failure_logged = True
                logger.warning("Embedding failed: %s", exc)
            return None

        if not vector:
            return None
        if self.dimension is None:
            self.dimension = len(vector)
        elif len(vector) != self.dimension:
            logger.warning(
                "Embedding dimension changed from %s to %s; dropping vector",
                self.dimension,
                len(vector),
            )
            return None
        self._failure_logged = False
        return list(vector)
