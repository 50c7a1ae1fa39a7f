"""CacheBackend protocol — the best-effort key/value store behind MetadataCache."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class CacheBackend(Protocol):
    """Key/value store with per-entry TTL.

    Implementations raise ``TransientCacheError`` (or any other
    exception) when the backend is unavailable; ``MetadataCache`` treats
    every failure as a miss.
    ``None`` is never stored, so ``get`` returning ``None`` means absent.
    """

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...
