from __future__ import annotations


class MemoryKeeperError(RuntimeError):
    """Base class for errors raised inside the memory subsystem."""


class HttpStatusError(MemoryKeeperError):
    def __init__(self, status: int, body: str = "", *, method: str = "", url: str = "") -> None:
        self.status = int(status)
        self.body = body
        self.method = method
        self.url = url
        label = f"{method.upper()} {url}".strip()
        snippet = (body or "")[:300]
        super().__init__(f"HTTP {self.status} {label}: {snippet}".strip())


class MalformedResponseError(MemoryKeeperError):
    """A provider answered, but not with the JSON shape we asked for."""
