"""InMemoryCache — process-local TTL cache."""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable


class InMemoryCache:
    """Dict-backed ``CacheBackend`` with lazy expiry.

    Suitable for a single process and for tests.  ``clock`` returns
    seconds and defaults to ``time.monotonic``; tests inject a fake
    clock to move time forward.  When ``max_entries`` is set, the
    least recently written entry is evicted first.
    """

    def __init__(
        self,
        *,
        max_entries: int | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self._max_entries = max_entries
        self._clock = clock or time.monotonic

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        if ttl_seconds <= 0 or value is None:
            self._entries.pop(key, None)
            return
        self._entries.pop(key, None)
        self._entries[key] = (self._clock() + ttl_seconds, value)
        if self._max_entries is not None:
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def ttl(self, key: str) -> float | None:
        """Seconds until *key* expires, or ``None`` if absent."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        remaining = entry[0] - self._clock()
        return remaining if remaining > 0 else None

    def __contains__(self, key: str) -> bool:
        return self.ttl(key) is not None

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()
