"""MetadataCache — side cache for records, download URLs and public shares.

The relational store is the source of truth.  Every read through this
cache tolerates misses and backend failures by falling back to the
loader; every mutation path invalidates the affected keys before it
reports success.  A load that overlaps an invalidation of its key is
returned to its caller but not written back, so a read that started
before a commit cannot re-cache the pre-commit value.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Any, TypeVar

from bytecloud.config import Settings
from bytecloud.utils import as_utc, now_utc

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from bytecloud.types import ShareDescriptor

    from .protocol import CacheBackend

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MetadataCache:
    """TTL-based cache in front of store lookups.

    With ``backend=None`` the cache is disabled and every lookup goes
    straight to its loader.
    """

    def __init__(
        self,
        backend: CacheBackend | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._backend = backend
        self._settings = settings or Settings()
        # key -> [loads in flight, invalidation generation]
        self._loads: dict[str, list[int]] = {}

    @property
    def enabled(self) -> bool:
        return self._backend is not None

    @property
    def metadata_ttl(self) -> int:
        return self._settings.file_metadata_ttl

    @property
    def download_url_ttl(self) -> int:
        return self._settings.download_url_ttl

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    @staticmethod
    def file_key(file_id: int) -> str:
        return f"file:{file_id}"

    @staticmethod
    def download_key(file_id: int) -> str:
        return f"download:{file_id}"

    @staticmethod
    def thumbnail_key(file_id: int) -> str:
        return f"thumbnail:{file_id}"

    @staticmethod
    def folder_key(folder_id: int) -> str:
        return f"folder:{folder_id}"

    @staticmethod
    def grant_key(folder_id: int, user_id: int) -> str:
        return f"grant:{folder_id}:{user_id}"

    @staticmethod
    def public_key(token: str) -> str:
        return f"public:{token}"

    # ------------------------------------------------------------------
    # Backend access (failures are misses)
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Any | None:
        if self._backend is None:
            return None
        try:
            return await self._backend.get(key)
        except Exception:
            logger.warning("Cache GET failed for %s; falling back to store", key, exc_info=True)
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        if self._backend is None or value is None or ttl_seconds <= 0:
            return
        try:
            await self._backend.set(key, value, ttl_seconds)
        except Exception:
            logger.warning("Cache SET failed for %s", key, exc_info=True)

    async def invalidate(self, *keys: str) -> None:
        """Delete *keys*.  A failed delete is logged and the next key is tried."""
        if self._backend is None:
            return
        for key in keys:
            state = self._loads.get(key)
            if state is not None:
                state[1] += 1
            try:
                await self._backend.delete(key)
            except Exception:
                logger.warning("Cache DEL failed for %s", key, exc_info=True)

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[T | None]],
        ttl_seconds: int,
    ) -> T | None:
        """Return the cached value for *key*, or load, cache and return it.

        ``None`` results from the loader are returned but never cached.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached
        return await self._load(key, loader, lambda _: ttl_seconds)

    async def _load(
        self,
        key: str,
        loader: Callable[[], Awaitable[T | None]],
        ttl_for: Callable[[T], int],
    ) -> T | None:
        if self._backend is None:
            return await loader()
        state = self._loads.setdefault(key, [0, 0])
        state[0] += 1
        generation = state[1]
        try:
            value = await loader()
        finally:
            state[0] -= 1
            if state[0] == 0:
                del self._loads[key]
        if value is None:
            return None
        if state[1] != generation:
            logger.debug("Not caching %s: invalidated while loading", key)
            return value
        await self.set(key, value, ttl_for(value))
        return value

    # ------------------------------------------------------------------
    # File group
    # ------------------------------------------------------------------

    async def invalidate_file_group(self, file_id: int) -> None:
        """Drop the metadata and every derived URL entry of a file in one call."""
        await self.invalidate(
            self.file_key(file_id),
            self.download_key(file_id),
            self.thumbnail_key(file_id),
        )

    async def get_download_url(
        self,
        file_id: int,
        signer: Callable[[], Awaitable[str]],
        *,
        thumbnail: bool = False,
    ) -> str:
        """Signed URL for a file's blob, reused only within ``download_url_ttl``.

        ``download_url_ttl`` is always shorter than the signature validity,
        so a cached URL is never served past its own expiry.
        """
        key = self.thumbnail_key(file_id) if thumbnail else self.download_key(file_id)
        url = await self.get_or_load(key, signer, self.download_url_ttl)
        assert url is not None
        return url

    # ------------------------------------------------------------------
    # Public shares
    # ------------------------------------------------------------------

    def public_share_ttl(self, descriptor: ShareDescriptor) -> int:
        """Remaining share lifetime in whole seconds, capped at the configured maximum."""
        cap = self._settings.public_share_max_ttl
        expires_at = as_utc(descriptor.expires_at)
        if expires_at is None:
            return cap
        remaining = (expires_at - now_utc()).total_seconds()
        if remaining <= 0:
            return 0
        return min(cap, math.floor(remaining))

    async def get_public_share(self, token: str) -> ShareDescriptor | None:
        """Cached descriptor for *token*, discarding it if the share has expired."""
        key = self.public_key(token)
        descriptor = await self.get(key)
        if descriptor is None:
            return None
        expires_at = as_utc(descriptor.expires_at)
        if expires_at is not None and expires_at <= now_utc():
            await self.invalidate(key)
            return None
        return descriptor

    async def load_public_share(
        self,
        token: str,
        loader: Callable[[], Awaitable[ShareDescriptor | None]],
    ) -> ShareDescriptor | None:
        """Cached descriptor for *token*, or load it and cache it for the share's lifetime."""
        descriptor = await self.get_public_share(token)
        if descriptor is not None:
            return descriptor
        return await self._load(self.public_key(token), loader, self.public_share_ttl)
