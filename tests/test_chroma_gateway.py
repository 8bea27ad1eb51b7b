from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any

import aiohttp
import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from memory_keeper.errors import HttpStatusError  # noqa: E402
from memory_keeper.services.backoff import BackoffPolicy  # noqa: E402
from memory_keeper.services.chroma_gateway import (  # noqa: E402
    AvailabilityCircuit,
    ChromaGateway,
    EndpointShape,
    ProtocolShape,
)


class _FakeTransport:
    """Scripted replacement for ChromaGateway._send."""

    def __init__(self, responses: list[Any]) -> None:
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    async def __call__(self, method: str, url: str, body: Any, headers: dict[str, str]) -> Any:
        self.calls.append({"method": method, "url": url, "body": body, "headers": dict(headers)})
        result = self.responses.pop(0) if self.responses else None
        if isinstance(result, BaseException):
            raise result
        return result


def _gateway(monkeypatch, responses: list[Any], **kwargs) -> tuple[ChromaGateway, _FakeTransport]:
    gateway = ChromaGateway(
        "http://chroma.test:8000",
        retry_policy=BackoffPolicy(max_attempts=2, base_delay=0.0, max_delay=0.0),
        **kwargs,
    )
    transport = _FakeTransport(responses)
    monkeypatch.setattr(gateway, "_send", transport)
    return gateway, transport


def test_gone_listing_switches_to_tenant_scoped_paths(monkeypatch) -> None:
    gateway, transport = _gateway(
        monkeypatch,
        [HttpStatusError(410, "gone"), [{"id": "c1", "name": "fibz_messages"}], {"ok": True}],
    )

    async def _run() -> list[dict[str, Any]]:
        listed = await gateway.list_collections()
        await gateway.request("post", "/api/v1/collections/c1/get", {"limit": 1})
        return listed

    listed = asyncio.run(_run())
    assert listed == [{"id": "c1", "name": "fibz_messages"}]
    assert gateway.endpoint.shape is ProtocolShape.TENANT_SCOPED
    assert transport.calls[0]["url"] == "http://chroma.test:8000/api/v1/collections"
    assert transport.calls[1]["url"] == (
        "http://chroma.test:8000/api/v1/tenants/default_tenant/databases/default_database/collections"
    )
    assert transport.calls[1]["headers"] == {
        "X-Chroma-Tenant": "default_tenant",
        "X-Chroma-Database": "default_database",
    }
    assert transport.calls[2]["url"].endswith(
        "/tenants/default_tenant/databases/default_database/collections/c1/get"
    )
    assert gateway.available


def test_configured_tenant_is_used_after_switch() -> None:
    shape = EndpointShape("acme", "prod")
    assert shape.resolve("/api/v1/collections/x/query") == "/api/v1/collections/x/query"
    assert shape.switch_to_tenant_scoped() is True
    assert shape.switch_to_tenant_scoped() is False
    assert shape.resolve("/api/v1/collections/x/query") == "/api/v1/tenants/acme/databases/prod/collections/x/query"
    assert shape.headers() == {"X-Chroma-Tenant": "acme", "X-Chroma-Database": "prod"}


def test_gone_on_other_paths_does_not_switch(monkeypatch) -> None:
    gateway, _ = _gateway(monkeypatch, [HttpStatusError(410)])
    response = asyncio.run(gateway.request("post", "/api/v1/collections/c1/query", {}))
    assert response.data is None
    assert gateway.endpoint.shape is ProtocolShape.LEGACY


def test_not_found_is_absent_and_keeps_circuit_closed(monkeypatch) -> None:
    gateway, transport = _gateway(monkeypatch, [HttpStatusError(404), {"count": 3}])

    async def _run():
        missing = await gateway.request("post", "/api/v1/collections/nope/get", {})
        count = await gateway.count("c1")
        return missing, count

    missing, count = asyncio.run(_run())
    assert missing.not_found is True
    assert missing.data is None
    assert count == 3
    assert gateway.available
    assert len(transport.calls) == 2


def test_server_error_trips_circuit_and_stops_io(monkeypatch) -> None:
    gateway, transport = _gateway(monkeypatch, [HttpStatusError(500), HttpStatusError(500)])

    async def _run():
        first = await gateway.list_collections()
        second = await gateway.list_collections()
        upserted = await gateway.upsert("c1", ids=["a"], documents=["d"], metadatas=[{}], embeddings=[[0.1]])
        return first, second, upserted

    first, second, upserted = asyncio.run(_run())
    assert first == [] and second == []
    assert upserted is False
    assert not gateway.available
    # two attempts for the first call, nothing afterwards
    assert len(transport.calls) == 2


def test_connection_refused_trips_circuit(monkeypatch) -> None:
    gateway, transport = _gateway(monkeypatch, [ConnectionRefusedError("refused")])
    asyncio.run(gateway.list_collections())
    assert not gateway.available
    assert len(transport.calls) == 1


def test_timeouts_are_retried_but_do_not_trip(monkeypatch) -> None:
    gateway, transport = _gateway(monkeypatch, [asyncio.TimeoutError(), asyncio.TimeoutError()])
    response = asyncio.run(gateway.request("get", "/api/v1/collections"))
    assert response.ok is False
    assert gateway.available
    assert len(transport.calls) == 2


def test_reprobe_policy_reopens_after_interval(monkeypatch) -> None:
    now = [100.0]
    circuit = AvailabilityCircuit(reprobe_after=30.0, clock=lambda: now[0])
    gateway, transport = _gateway(
        monkeypatch,
        [aiohttp.ClientConnectionError("reset"), [{"id": "c1", "name": "fibz_messages"}]],
        circuit=circuit,
    )

    async def _run():
        await gateway.list_collections()
        blocked = await gateway.list_collections()
        now[0] += 31.0
        probed = await gateway.list_collections()
        return blocked, probed

    blocked, probed = asyncio.run(_run())
    assert blocked == []
    assert probed == [{"id": "c1", "name": "fibz_messages"}]
    assert gateway.available
    assert len(transport.calls) == 2


def test_default_circuit_never_reprobes() -> None:
    now = [0.0]
    circuit = AvailabilityCircuit(clock=lambda: now[0])
    circuit.trip("down")
    now[0] += 10_000.0
    assert circuit.allow() is False


def test_upsert_requires_parallel_arrays(monkeypatch) -> None:
    gateway, _ = _gateway(monkeypatch, [])
    with pytest.raises(ValueError):
        asyncio.run(gateway.upsert("c1", ids=["a", "b"], documents=["d"], metadatas=[{}], embeddings=[[0.1]]))


def test_query_omits_empty_where(monkeypatch) -> None:
    gateway, transport = _gateway(monkeypatch, [{"documents": [[]]}])
    asyncio.run(gateway.query("c1", query_embeddings=[[0.1, 0.2]], n_results=3))
    body = transport.calls[0]["body"]
    assert "where" not in body
    assert body["n_results"] == 3
    assert body["include"] == ["documents", "metadatas", "distances"]


def test_delete_refuses_empty_where(monkeypatch) -> None:
    gateway, transport = _gateway(monkeypatch, [])
    with pytest.raises(ValueError):
        asyncio.run(gateway.delete("c1", where={}))
    assert transport.calls == []
