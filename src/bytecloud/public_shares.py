"""PublicShareService — time-bounded public links to single files.

A token is valid exactly while the file row carries it with
``is_public`` set and ``share_expires_at`` in the future.  Cached
descriptors never outlive the share: their TTL is capped by the
remaining lifetime and revocation deletes the cache entry before the
revoke call returns.
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from typing import TYPE_CHECKING

from .access import AccessLevel
from .config import Settings
from .exceptions import NotFoundError
from .types import PublicShareResult, ShareDescriptor
from .utils import now_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from .cache.metadata import MetadataCache
    from .permissions import PermissionResolver
    from .store import MetadataStore
    from .types import FileRecord

logger = logging.getLogger(__name__)

TOKEN_BYTES = 24


def new_share_token() -> str:
    """Unguessable URL-safe token (192 bits of entropy)."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def descriptor_for(file: FileRecord) -> ShareDescriptor:
    return ShareDescriptor(
        file_id=file.id,
        file_name=file.original_name,
        mime_type=file.mime_type,
        size=file.size,
        owner_id=file.owner_id,
        has_thumbnail=file.has_thumbnail,
        download_count=file.download_count,
        expires_at=file.share_expires_at,
    )


class PublicShareService:
    """Create, revoke and resolve public share tokens."""

    def __init__(
        self,
        store: MetadataStore,
        resolver: PermissionResolver,
        cache: MetadataCache,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._cache = cache
        self._settings = settings or Settings()

    async def create(
        self,
        session: AsyncSession,
        caller_id: int,
        file_id: int,
        expires_in_hours: int | None = None,
    ) -> PublicShareResult:
        """Publish a file (owner or ``edit``). Replaces any existing token.

        Flushes but does not commit; the caller invalidates
        ``previous_token`` once the transaction is committed.
        """
        hours = self._settings.default_share_hours if expires_in_hours is None else expires_in_hours
        if hours <= 0 or hours > self._settings.max_share_hours:
            raise ValueError(
                f"expires_in_hours must be between 1 and {self._settings.max_share_hours}"
            )
        file, _ = await self._resolver.require_file(session, caller_id, file_id, AccessLevel.EDIT)

        token = new_share_token()
        expires_at = now_utc() + timedelta(hours=hours)
        await self._store.set_public_share(session, file.id, token, expires_at)
        logger.info("File %s published by user %s for %d hours", file.id, caller_id, hours)
        return PublicShareResult(
            token=token,
            file_id=file.id,
            expires_at=expires_at,
            expires_in_hours=hours,
            previous_token=file.public_share_token,
        )

    async def revoke(self, session: AsyncSession, caller_id: int, file_id: int) -> str | None:
        """Unpublish a file (owner only). Returns the revoked token, if any."""
        file, _ = await self._resolver.require_file(session, caller_id, file_id, AccessLevel.OWNER)
        # The cached record may lag behind a share created moments ago.
        current = await self._store.get_file(session, file.id)
        token = current.public_share_token if current is not None else file.public_share_token
        await self._store.set_public_share(session, file.id, None)
        logger.info("Public share of file %s revoked by user %s", file.id, caller_id)
        return token

    async def resolve(self, session: AsyncSession, token: str) -> ShareDescriptor:
        """Descriptor for a live token. Raises ``NotFoundError`` otherwise."""

        async def load() -> ShareDescriptor | None:
            file = await self._store.get_public_file(session, token)
            if file is None or (
                file.share_expires_at is not None and file.share_expires_at <= now_utc()
            ):
                return None
            return descriptor_for(file)

        descriptor = await self._cache.load_public_share(token, load)
        if descriptor is None:
            raise NotFoundError("File not found or share link expired")
        return descriptor

    async def info(self, session: AsyncSession, token: str) -> ShareDescriptor:
        """Public metadata of a shared file; ``is_image``/``is_video`` come with the descriptor."""
        return await self.resolve(session, token)
