from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

import aiohttp

from ..errors import HttpStatusError, MalformedResponseError
from .backoff import BackoffPolicy, error_status, is_timeout_error, retry_with_backoff

logger = logging.getLogger("memory_keeper")

LEGACY_COLLECTIONS_PATH = "/api/v1/collections"
DEFAULT_TENANT = "default_tenant"
DEFAULT_DATABASE = "default_database"


@dataclass(slots=True)
class GatewayResponse:
    data: Any = None
    not_found: bool = False
    ok: bool = False


class ProtocolShape(str, Enum):
    LEGACY = "legacy"
    TENANT_SCOPED = "tenant_scoped"


class EndpointShape:
    """Two-state path layout; moves from legacy to tenant-scoped once and never back."""

    def __init__(self, tenant: str | None = None, database: str | None = None) -> None:
        self.tenant = (tenant or "").strip() or None
        self.database = (database or "").strip() or None
        self.shape = ProtocolShape.LEGACY

    @property
    def tenant_scoped(self) -> bool:
        return self.shape is ProtocolShape.TENANT_SCOPED

    def switch_to_tenant_scoped(self) -> bool:
        if self.tenant_scoped:
            return False
        self.shape = ProtocolShape.TENANT_SCOPED
        return True

    @staticmethod
    def is_listing(method: str, path: str) -> bool:
        return method.strip().lower() == "get" and path.rstrip("/") == LEGACY_COLLECTIONS_PATH

    def resolve(self, path: str) -> str:
        if not self.tenant_scoped or not path.startswith(LEGACY_COLLECTIONS_PATH):
            return path
        tenant = self.tenant or DEFAULT_TENANT
        database = self.database or DEFAULT_DATABASE
        suffix = path[len(LEGACY_COLLECTIONS_PATH) :]
        return f"/api/v1/tenants/{tenant}/databases/{database}/collections{suffix}"

    def headers(self) -> dict[str, str]:
        if self.tenant_scoped:
            return {
                "X-Chroma-Tenant": self.tenant or DEFAULT_TENANT,
                "X-Chroma-Database": self.database or DEFAULT_DATABASE,
            }
        headers: dict[str, str] = {}
        if self.tenant:
            headers["X-Chroma-Tenant"] = self.tenant
        if self.database:
            headers["X-Chroma-Database"] = self.database
        return headers


class AvailabilityCircuit:
    """Latch that stops network I/O once the index service looks down.

    `reprobe_after=None` keeps the latch closed for the rest of the process.
    A number of seconds lets one probe request through per interval; a
    successful probe re-opens the circuit.
    """

    def __init__(
        self,
        reprobe_after: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.reprobe_after = reprobe_after if reprobe_after and reprobe_after > 0 else None
        self._clock = clock
        self._available = True
        self._tripped_at = 0.0
        self.trip_reason = ""

    @property
    def available(self) -> bool:
        return self._available

    def allow(self) -> bool:
        if self._available:
            return True
        if self.reprobe_after is None:
            return False
        now = self._clock()
        if now - self._tripped_at < self.reprobe_after:
            return False
        self._tripped_at = now
        return True

    def trip(self, reason: str) -> None:
        if self._available:
            logger.warning("Vector index marked unavailable: %s", reason)
        self._available = False
        self._tripped_at = self._clock()
        self.trip_reason = reason

    def record_success(self) -> None:
        if not self._available:
            logger.info("Vector index reachable again after probe")
        self._available = True
        self.trip_reason = ""


class ChromaGateway:
    def __init__(
        self,
        base_url: str,
        *,
        tenant: str | None = None,
        database: str | None = None,
        timeout_seconds: float = 10.0,
        retry_policy: BackoffPolicy | None = None,
        circuit: AvailabilityCircuit | None = None,
    ) -> None:
        self.base_url = (base_url or "http://127.0.0.1:8000").strip().rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self.retry_policy = retry_policy or BackoffPolicy()
        self.circuit = circuit or AvailabilityCircuit()
        self.endpoint = EndpointShape(tenant, database)
        self._session: aiohttp.ClientSession | None = None
        self._failure_logged = False

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    @property
    def available(self) -> bool:
        return self.circuit.available

    async def _send(self, method: str, url: str, body: Any, headers: dict[str, str]) -> Any:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        async with self._session.request(method.upper(), url, json=body, headers=headers) as response:
            text = await response.text()
            if response.status >= 400:
                raise HttpStatusError(response.status, text, method=method, url=url)
            if not text.strip():
                return None
            try:
                return json.loads(text)
            except json.JSONDecodeError as exc:
                raise MalformedResponseError(f"Chroma returned non-JSON body for {method.upper()} {url}") from exc

    def _log_failure(self, method: str, path: str, error: BaseException) -> None:
        if self._failure_logged:
            return
        self._failure_logged = True
        logger.warning("Failed Chroma request %s %s: %s", method.upper(), path, error)

    async def request(self, method: str, path: str, body: Any = None) -> GatewayResponse:
        if not self.circuit.allow():
            return GatewayResponse()

        url = f"{self.base_url}{self.endpoint.resolve(path)}"
        headers = self.endpoint.headers()

        async def _attempt() -> Any:
            return await self._send(method, url, body, headers)

        try:
            data = await retry_with_backoff(_attempt, self.retry_policy)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            status = error_status(exc)
            if status == 404:
                return GatewayResponse(not_found=True)
            if status == 410 and self.endpoint.is_listing(method, path) and self.endpoint.switch_to_tenant_scoped():
                logger.info(
                    "Chroma legacy collection listing is gone; switching to tenant-scoped endpoints (tenant=%s database=%s)",
                    self.endpoint.tenant or DEFAULT_TENANT,
                    self.endpoint.database or DEFAULT_DATABASE,
                )
                return await self.request(method, path, body)

            self._log_failure(method, path, exc)
            if status is not None and status >= 500:
                self.circuit.trip(f"HTTP {status} on {method.upper()} {path}")
            elif status is None and not is_timeout_error(exc) and isinstance(
                exc, (aiohttp.ClientConnectionError, ConnectionError)
            ):
                self.circuit.trip(f"{exc.__class__.__name__} on {method.upper()} {path}")
            return GatewayResponse()

        self.circuit.record_success()
        self._failure_logged = False
        return GatewayResponse(data=data, ok=True)

    async def list_collections(self) -> list[dict[str, Any]]:
        response = await self.request("get", LEGACY_COLLECTIONS_PATH)
        data = response.data
        if isinstance(data, dict):
            data = data.get("collections")
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]

    async def create_collection(self, name: str, metadata: dict[str, Any] | None = None) -> dict[str, Any] | None:
        body: dict[str, Any] = {"name": name, "get_or_create": True}
        if metadata:
            body["metadata"] = metadata
        response = await self.request("post", LEGACY_COLLECTIONS_PATH, body)
        return response.data if isinstance(response.data, dict) else None

    async def upsert(
        self,
        collection_id: str,
        *,
        ids: list[str],
        documents: list[str],
        metadatas: list[dict[str, Any]],
        embeddings: list[list[float]],
    ) -> bool:
        if not (len(ids) == len(documents) == len(metadatas) == len(embeddings)):
            raise ValueError("upsert arrays must have equal length")
        if not ids:
            return False
        response = await self.request(
            "post",
            f"{LEGACY_COLLECTIONS_PATH}/{collection_id}/upsert",
            {"ids": ids, "documents": documents, "metadatas": metadatas, "embeddings": embeddings},
        )
        return response.ok

    async def query(
        self,
        collection_id: str,
        *,
        query_embeddings: list[list[float]],
        n_results: int,
        where: dict[str, Any] | None = None,
        include: list[str] | None = None,
    ) -> dict[str, Any] | None:
        body: dict[str, Any] = {
            "query_embeddings": query_embeddings,
            "n_results": max(1, int(n_results)),
            "include": include or ["documents", "metadatas", "distances"],
        }
        if where:
            body["where"] = where
        response = await self.request("post", f"{LEGACY_COLLECTIONS_PATH}/{collection_id}/query", body)
        return response.data if isinstance(response.data, dict) else None

    async def get(
        self,
        collection_id: str,
        *,
        where: dict[str, Any] | None = None,
        include: list[str] | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> dict[str, Any] | None:
        body: dict[str, Any] = {"include": include or ["documents", "metadatas"]}
        if where:
            body["where"] = where
        if limit is not None:
            body["limit"] = max(1, int(limit))
        if offset is not None:
            body["offset"] = max(0, int(offset))
        response = await self.request("post", f"{LEGACY_COLLECTIONS_PATH}/{collection_id}/get", body)
        return response.data if isinstance(response.data, dict) else None

    async def delete(self, collection_id: str, *, where: dict[str, Any]) -> bool:
        if not where:
            raise ValueError("refusing to delete without a where filter")
        response = await self.request("post", f"{LEGACY_COLLECTIONS_PATH}/{collection_id}/delete", {"where": where})
        return response.ok

    async def count(self, collection_id: str) -> int | None:
        response = await self.request("get", f"{LEGACY_COLLECTIONS_PATH}/{collection_id}/count")
        data = response.data
        if isinstance(data, bool):
            return None
        if isinstance(data, int):
            return data
        if isinstance(data, dict) and isinstance(data.get("count"), int):
            return int(data["count"])
        return None
