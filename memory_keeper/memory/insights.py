from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Protocol

from .consent import default_consent
from .types import ConsentLevel, EntityInsight
from .utils import utc_now_iso

logger = logging.getLogger("memory_keeper")

DEFAULT_MAX_DEPTH = 5

ANALYZER_SYSTEM_PROMPT = "\n".join(
    [
        "You are Fibz's background analyst.",
        "Respond ONLY in JSON with keys `self_context` and `entities`.",
        "For `self_context`, capture new facts about Fibz's behaviour, capabilities, preferences, or status.",
        "For `entities`, capture knowledge about people or recurring topics.",
        "Include `entity_id`, `name`, `summary`, and optional attributes where relevant.",
        "Respect consent: mark uncertain or sensitive items as `consent_required` and omit private material.",
        "Return an empty array for any key when there is nothing new.",
    ]
)


class JsonGenerator(Protocol):
    async def generate(
        self,
        messages: List[Dict[str, str]],
        *,
        temperature: float | None = None,
        response_mime_type: str | None = None,
    ) -> str: ...


class InsightSink(Protocol):
    async def store_self_context_snippet(
        self, key: str, content: str, metadata: Mapping[str, Any] | None = None
    ) -> bool: ...

    async def store_entity_insight(self, insight: EntityInsight) -> bool: ...


@dataclass(slots=True)
class InsightPayload:
    user_message: Any
    assistant_message: Any
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def message_id(self) -> str:
        return str(self.metadata.get("message_id") or "unknown")


def build_analyzer_prompt(payload: InsightPayload) -> str:
    summary = {
        "metadata": payload.metadata,
        "conversation_turn": {
            "user": payload.user_message,
            "assistant": payload.assistant_message,
        },
    }
    return json.dumps(summary, indent=2, ensure_ascii=False, default=str)


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def safe_json_parse(text: str | None) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return None


class InsightAnalysisQueue:
    """Bounded background analysis with exactly one consumer.

    `enqueue` never blocks: once `max_depth` tasks are waiting or running, new
    payloads are dropped and counted.
    """

    def __init__(
        self,
        generator: JsonGenerator | None,
        sink: InsightSink,
        max_depth: int = DEFAULT_MAX_DEPTH,
        *,
        temperature: float = 0.2,
    ) -> None:
        self.generator = generator
        self.sink = sink
        self.max_depth = max(1, int(max_depth))
        self.temperature = temperature
        self.accepted = 0
        self.dropped = 0
        self.processed = 0
        self._pending = 0
        self._queue: asyncio.Queue[InsightPayload] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._closing = False

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def depth(self) -> int:
        return self._pending

    async def start(self) -> None:
        if self.running or self.generator is None:
            return
        self._closing = False
        self._queue = asyncio.Queue(maxsize=self.max_depth)
        self._worker = asyncio.create_task(self._run(), name="memory_keeper-insights")

    def enqueue(self, payload: InsightPayload) -> bool:
        if self._closing or not self.running or self._queue is None:
            return False
        if self._pending >= self.max_depth:
            self.dropped += 1
            logger.debug("Insight queue full (%s); dropping payload for %s", self._pending, payload.message_id)
            return False
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        self._pending += 1
        self.accepted += 1
        return True

    async def join(self) -> None:
        if self._queue is not None and self.running:
            await self._queue.join()

    async def close(self, *, drain: bool = True) -> None:
        self._closing = True
        worker = self._worker
        if worker is None:
            return
        if drain and not worker.done():
            await self.join()
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        self._queue = None
        self._pending = 0

    async def _run(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            payload = await queue.get()
            try:
                await self.analyze(payload)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Background insight analysis failed: %s", exc)
            finally:
                self._pending = max(0, self._pending - 1)
                self.processed += 1
                queue.task_done()

    async def analyze(self, payload: InsightPayload) -> tuple[int, int]:
        """Run one analysis; returns (self-context notes stored, entities stored)."""
        if self.generator is None:
            return (0, 0)
        raw = await self.generator.generate(
            [
                {"role": "system", "content": ANALYZER_SYSTEM_PROMPT},
                {"role": "user", "content": build_analyzer_prompt(payload)},
            ],
            temperature=self.temperature,
            response_mime_type="application/json",
        )
        parsed = safe_json_parse(raw)
        if not isinstance(parsed, dict):
            logger.warning("Discarding malformed analyzer output for message %s", payload.message_id)
            return (0, 0)

        metadata = payload.metadata
        notes = 0
        for note in _as_list(parsed.get("self_context")):
            if not isinstance(note, dict) or not note.get("summary"):
                continue
            title = str(note.get("title") or "").strip()
            tags = note.get("tags") if isinstance(note.get("tags"), list) else []
            stored = await self.sink.store_self_context_snippet(
                f"insight-{payload.message_id}-{title or 'note'}",
                str(note["summary"]),
                {
                    "title": title or "Insight",
                    "consent": note.get("consent") or ConsentLevel.SHAREABLE.value,
                    "tags": ["insight", *[str(tag) for tag in tags]],
                },
            )
            notes += int(bool(stored))

        entities = 0
        for entity in _as_list(parsed.get("entities")):
            if not isinstance(entity, dict) or not entity.get("entity_id") or not entity.get("summary"):
                continue
            attributes = entity.get("attributes") if isinstance(entity.get("attributes"), dict) else {}
            tags = entity.get("tags") if isinstance(entity.get("tags"), list) else []
            insight = EntityInsight(
                entity_id=str(entity["entity_id"]),
                name=str(entity.get("name") or entity["entity_id"]),
                summary=str(entity["summary"]),
                attributes=dict(attributes),
                guild_id=metadata.get("guild_id") or None,
                channel_id=metadata.get("channel_id") or None,
                user_id=metadata.get("user_id") or None,
                history_id=metadata.get("history_id") or None,
                consent=default_consent(metadata.get("guild_id"), entity.get("consent")),
                last_mentioned_at=metadata.get("timestamp") or utc_now_iso(),
                source_message_id=metadata.get("message_id"),
                tags=[str(tag) for tag in tags],
            )
            stored = await self.sink.store_entity_insight(insight)
            entities += int(bool(stored))
        return (notes, entities)
