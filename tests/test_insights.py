from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from memory_keeper.memory.insights import (  # noqa: E402
    InsightAnalysisQueue,
    InsightPayload,
    build_analyzer_prompt,
    safe_json_parse,
)
from memory_keeper.memory.types import ConsentLevel, EntityInsight  # noqa: E402


class _FakeLLM:
    def __init__(self, replies: list[str], gate: asyncio.Event | None = None) -> None:
        self.replies = list(replies)
        self.gate = gate
        self.calls: list[list[dict[str, str]]] = []
        self.active = 0
        self.max_active = 0

    async def generate(self, messages, *, temperature=None, response_mime_type=None) -> str:
        self.calls.append(messages)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            await asyncio.sleep(0)
            return self.replies.pop(0) if self.replies else "{}"
        finally:
            self.active -= 1


class _RecordingSink:
    def __init__(self) -> None:
        self.snippets: list[tuple[str, str, dict[str, Any]]] = []
        self.entities: list[EntityInsight] = []

    async def store_self_context_snippet(self, key, content, metadata=None) -> bool:
        self.snippets.append((key, content, dict(metadata or {})))
        return True

    async def store_entity_insight(self, insight: EntityInsight) -> bool:
        self.entities.append(insight)
        return True


def _payload(message_id: str = "m-1") -> InsightPayload:
    return InsightPayload(
        user_message={"author": {"id": "u1"}, "text": "Bob is my brother, he plays cello"},
        assistant_message={"text": "Nice, a cellist brother!"},
        metadata={"guild_id": "123", "channel_id": "c1", "message_id": message_id, "timestamp": "2024-05-01T00:00:00Z"},
    )


def test_prompt_contains_metadata_and_turn() -> None:
    prompt = build_analyzer_prompt(_payload())
    assert '"guild_id": "123"' in prompt
    assert '"assistant"' in prompt
    assert json.loads(prompt)["conversation_turn"]["user"]["text"].startswith("Bob")


def test_safe_json_parse_is_strict() -> None:
    assert safe_json_parse('{"a": 1}') == {"a": 1}
    assert safe_json_parse("```json\n{}\n```") is None
    assert safe_json_parse("") is None


def test_analysis_stores_notes_and_entities() -> None:
    reply = json.dumps(
        {
            "self_context": [
                {"title": "Music", "summary": "I enjoy talking about cello", "tags": ["music"]},
                {"title": "No summary"},
            ],
            "entities": [
                {"entity_id": "bob", "name": "Bob", "summary": "plays cello", "consent": "consent_required"},
                {"entity_id": "nobody"},
                {"summary": "missing id"},
            ],
        }
    )
    sink = _RecordingSink()
    queue = InsightAnalysisQueue(_FakeLLM([reply]), sink)

    stored = asyncio.run(queue.analyze(_payload()))
    assert stored == (1, 1)
    key, content, metadata = sink.snippets[0]
    assert key == "insight-m-1-Music"
    assert content == "I enjoy talking about cello"
    assert metadata["tags"] == ["insight", "music"]
    entity = sink.entities[0]
    assert entity.entity_id == "bob"
    assert entity.guild_id == "123"
    assert entity.consent is ConsentLevel.CONSENT_REQUIRED
    assert entity.last_mentioned_at == "2024-05-01T00:00:00Z"
    assert entity.source_message_id == "m-1"


def test_malformed_reply_is_discarded_without_retry() -> None:
    llm = _FakeLLM(["not json at all"])
    sink = _RecordingSink()
    queue = InsightAnalysisQueue(llm, sink)
    assert asyncio.run(queue.analyze(_payload())) == (0, 0)
    assert len(llm.calls) == 1
    assert sink.snippets == [] and sink.entities == []


def test_queue_drops_when_full_and_runs_one_at_a_time() -> None:
    async def _run():
        gate = asyncio.Event()
        llm = _FakeLLM([], gate=gate)
        queue = InsightAnalysisQueue(llm, _RecordingSink(), max_depth=5)
        await queue.start()
        results = [queue.enqueue(_payload(f"m-{index}")) for index in range(8)]
        gate.set()
        await queue.join()
        await queue.close()
        return queue, llm, results

    queue, llm, results = asyncio.run(_run())
    assert results == [True] * 5 + [False] * 3
    assert queue.accepted == 5
    assert queue.dropped == 3
    assert queue.processed == 5
    assert llm.max_active == 1


def test_enqueue_before_start_is_refused() -> None:
    queue = InsightAnalysisQueue(_FakeLLM([]), _RecordingSink())
    assert queue.enqueue(_payload()) is False


def test_worker_survives_failing_task() -> None:
    class _Exploding(_FakeLLM):
        async def generate(self, messages, *, temperature=None, response_mime_type=None) -> str:
            self.calls.append(messages)
            if len(self.calls) == 1:
                raise RuntimeError("provider down")
            return json.dumps({"self_context": [{"summary": "still alive"}], "entities": []})

    async def _run():
        sink = _RecordingSink()
        queue = InsightAnalysisQueue(_Exploding([]), sink)
        await queue.start()
        queue.enqueue(_payload("m-1"))
        queue.enqueue(_payload("m-2"))
        await queue.join()
        await queue.close()
        return queue, sink

    queue, sink = asyncio.run(_run())
    assert queue.processed == 2
    assert [key for key, _, _ in sink.snippets] == ["insight-m-2-note"]


def test_non_list_sections_are_ignored() -> None:
    replies = [
        json.dumps({"self_context": "I like cello", "entities": {"entity_id": "bob", "summary": "x"}}),
        json.dumps({"self_context": 7, "entities": None}),
    ]
    sink = _RecordingSink()
    queue = InsightAnalysisQueue(_FakeLLM(replies), sink)

    async def _run():
        return await queue.analyze(_payload("m-1")), await queue.analyze(_payload("m-2"))

    assert asyncio.run(_run()) == ((0, 0), (0, 0))
    assert sink.snippets == [] and sink.entities == []


def test_dm_entities_default_to_private_and_keep_their_user() -> None:
    reply = json.dumps({"entities": [{"entity_id": "ann", "name": "Ann", "summary": "alice's sister ann is in rehab"}]})
    sink = _RecordingSink()
    queue = InsightAnalysisQueue(_FakeLLM([reply]), sink)
    payload = InsightPayload(
        user_message={"text": "my sister ann is in rehab"},
        assistant_message={"text": "I'm sorry to hear that"},
        metadata={"user_id": "u1", "history_id": "u1", "message_id": "m-9"},
    )

    assert asyncio.run(queue.analyze(payload)) == (0, 1)
    entity = sink.entities[0]
    assert entity.guild_id is None
    assert entity.user_id == "u1"
    assert entity.history_id == "u1"
    assert entity.consent is ConsentLevel.PRIVATE
