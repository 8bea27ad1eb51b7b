from __future__ import annotations

import json
import logging
from typing import Any, Dict, List

import aiohttp

from ..errors import HttpStatusError, MalformedResponseError
from .backoff import BackoffPolicy, retry_with_backoff

logger = logging.getLogger("memory_keeper")


class GeminiClient:
    """Embedding and JSON-generation client for the Gemini REST API."""

    def __init__(
        self,
        api_key: str,
        model: str,
        embedding_model: str,
        timeout_seconds: int,
        temperature: float = 0.2,
        base_url: str = "https://generativelanguage.googleapis.com",
        retry_policy: BackoffPolicy | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.embedding_model = self._bare_model_name(embedding_model)
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.temperature = temperature
        self.retry_policy = retry_policy or BackoffPolicy()
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    @staticmethod
    def _bare_model_name(model: str) -> str:
        cleaned = (model or "").strip()
        if cleaned.startswith("models/"):
            cleaned = cleaned[len("models/") :]
        return cleaned

    def _generate_endpoint(self) -> str:
        return f"{self.base_url}/v1beta/models/{self.model}:generateContent?key={self.api_key}"

    def _embed_endpoint(self) -> str:
        return f"{self.base_url}/v1beta/models/{self.embedding_model}:embedContent?key={self.api_key}"

    @staticmethod
    def _map_messages(messages: List[Dict[str, str]]) -> Dict[str, Any]:
        system_lines: List[str] = []
        contents: List[Dict[str, Any]] = []

        for message in messages:
            role = str(message.get("role", "")).strip().lower()
            content = str(message.get("content", "")).strip()
            if not content:
                continue
            if role == "system":
                system_lines.append(content)
                continue
            mapped_role = "model" if role == "assistant" else "user"
            contents.append({"role": mapped_role, "parts": [{"text": content}]})

        payload: Dict[str, Any] = {"contents": contents}
        if system_lines:
            payload["systemInstruction"] = {
                "parts": [{"text": "\n\n".join(system_lines)}],
            }
        return payload

    async def _post_once(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        async with self._session.post(url, json=payload) as response:
            text = await response.text()
            if response.status != 200:
                raise HttpStatusError(response.status, text, method="post", url=url.split("?", 1)[0])
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError as exc:
                raise MalformedResponseError("Gemini returned non-JSON body") from exc
            if not isinstance(parsed, dict):
                raise MalformedResponseError("Gemini returned non-object JSON response")
            return parsed

    async def _request(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        async def _attempt() -> Dict[str, Any]:
            return await self._post_once(url, payload)

        return await retry_with_backoff(_attempt, self.retry_policy)

    @staticmethod
    def _extract_text(data: Dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            prompt_feedback = data.get("promptFeedback") or {}
            block_reason = prompt_feedback.get("blockReason")
            if block_reason:
                raise MalformedResponseError(f"Gemini blocked response: {block_reason}")
            raise MalformedResponseError("Gemini returned no candidates")

        first = candidates[0]
        content = first.get("content") or {}
        parts = content.get("parts") or []
        chunks: List[str] = []

        for part in parts:
            text = part.get("text")
            if isinstance(text, str) and text.strip():
                chunks.append(text.strip())

        joined = "\n".join(chunks).strip()
        if joined:
            return joined

        finish_reason = first.get("finishReason")
        if finish_reason:
            raise MalformedResponseError(f"Gemini empty response (finishReason={finish_reason})")
        raise MalformedResponseError("Gemini empty response")

    @staticmethod
    def _extract_embedding(data: Dict[str, Any]) -> List[float] | None:
        embedding = data.get("embedding")
        if isinstance(embedding, dict) and isinstance(embedding.get("values"), list):
            values = embedding["values"]
        else:
            embeddings = data.get("embeddings")
            if not (isinstance(embeddings, list) and embeddings and isinstance(embeddings[0], dict)):
                return None
            values = embeddings[0].get("values")
            if not isinstance(values, list):
                return None
        try:
            return [float(value) for value in values]
        except (TypeError, ValueError):
            return None

    async def embed(self, text: str) -> List[float] | None:
        payload = {
            "model": f"models/{self.embedding_model}",
            "content": {"parts": [{"text": text}]},
        }
        data = await self._request(self._embed_endpoint(), payload)
        vector = self._extract_embedding(data)
        if vector is None:
            logger.debug("Gemini embedContent response carried no vector")
        return vector

    async def generate(
        self,
        messages: List[Dict[str, str]],
        *,
        temperature: float | None = None,
        response_mime_type: str | None = None,
    ) -> str:
        payload = self._map_messages(messages)
        generation_config: Dict[str, Any] = {
            "temperature": self.temperature if temperature is None else temperature,
        }
        if response_mime_type:
            generation_config["responseMimeType"] = response_mime_type
        payload["generationConfig"] = generation_config
        data = await self._request(self._generate_endpoint(), payload)
        return self._extract_text(data)
