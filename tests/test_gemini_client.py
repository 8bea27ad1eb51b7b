from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from memory_keeper.errors import MalformedResponseError  # noqa: E402
from memory_keeper.memory.embedding import EmbeddingAdapter  # noqa: E402
from memory_keeper.services.gemini_client import GeminiClient  # noqa: E402


def _client() -> GeminiClient:
    return GeminiClient(
        api_key="test-key",
        model="models/gemini-2.5-flash",
        embedding_model="models/text-embedding-004",
        timeout_seconds=30,
    )


def test_model_names_are_normalised() -> None:
    client = _client()
    assert client.embedding_model == "text-embedding-004"
    assert ":embedContent?key=test-key" in client._embed_endpoint()


def test_embed_reads_both_response_shapes(monkeypatch) -> None:
    client = _client()
    replies = [
        {"embedding": {"values": [0.1, 0.2]}},
        {"embeddings": [{"values": [0.3, 0.4]}]},
        {"unexpected": True},
    ]
    seen: list[dict] = []

    async def _fake_request(url, payload):
        seen.append(payload)
        return replies.pop(0)

    monkeypatch.setattr(client, "_request", _fake_request)

    async def _run():
        return [await client.embed("a"), await client.embed("b"), await client.embed("c")]

    assert asyncio.run(_run()) == [[0.1, 0.2], [0.3, 0.4], None]
    assert seen[0]["model"] == "models/text-embedding-004"


def test_generate_maps_roles_and_json_mode(monkeypatch) -> None:
    client = _client()
    captured: dict = {}

    async def _fake_request(url, payload):
        captured.update(payload)
        return {"candidates": [{"content": {"parts": [{"text": '{"self_context": []}'}]}}]}

    monkeypatch.setattr(client, "_request", _fake_request)
    text = asyncio.run(
        client.generate(
            [
                {"role": "system", "content": "be an analyst"},
                {"role": "user", "content": "hi"},
                {"role": "assistant", "content": "hello"},
            ],
            response_mime_type="application/json",
        )
    )
    assert text == '{"self_context": []}'
    assert captured["systemInstruction"]["parts"][0]["text"] == "be an analyst"
    assert [entry["role"] for entry in captured["contents"]] == ["user", "model"]
    assert captured["generationConfig"]["responseMimeType"] == "application/json"


def test_blocked_generation_raises_malformed() -> None:
    with pytest.raises(MalformedResponseError):
        GeminiClient._extract_text({"promptFeedback": {"blockReason": "SAFETY"}})


def test_adapter_turns_provider_errors_into_none(monkeypatch) -> None:
    client = _client()

    async def _boom(url, payload):
        raise MalformedResponseError("bad body")

    monkeypatch.setattr(client, "_request", _boom)
    adapter = EmbeddingAdapter(client, max_chars=10)
    assert asyncio.run(adapter.embed("hello world, this is long")) is None
