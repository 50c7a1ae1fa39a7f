"""MaintenanceService — background repair jobs.

* ``sweep_orphans`` retries deleting blobs whose metadata row is already
  gone (recorded when a file delete could not remove its blob).
* ``expire_shares`` clears public shares whose expiry has passed so the
  token column never holds dead tokens for long.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import delete as sa_delete
from sqlalchemy import update

from .types import SweepResult
from .utils import now_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from .blobs.protocol import BlobStore
    from .store import MetadataStore

logger = logging.getLogger(__name__)


class MaintenanceService:
    def __init__(self, store: MetadataStore, blobs: BlobStore) -> None:
        self._store = store
        self._blobs = blobs

    async def sweep_orphans(
        self,
        session: AsyncSession,
        *,
        limit: int = 100,
    ) -> SweepResult:
        """Retry up to *limit* orphaned blob deletions. Flushes but does not commit."""
        result = SweepResult()
        model = self._store.orphan_model
        for orphan in await self._store.list_orphans(session, limit):
            try:
                await self._blobs.delete(orphan.blob_id, orphan.blob_name)
            except Exception as exc:
                logger.warning(
                    "Orphaned blob %s still cannot be deleted (attempt %d): %s",
                    orphan.blob_name,
                    orphan.attempts + 1,
                    exc,
                )
                await session.execute(
                    update(model)
                    .where(model.id == orphan.id)
                    .values(attempts=model.attempts + 1, last_error=str(exc))
                )
                continue
            await session.execute(sa_delete(model).where(model.id == orphan.id))
            result.orphans_deleted += 1
            logger.info("Removed orphaned blob %s", orphan.blob_name)
        await session.flush()
        result.orphans_remaining = await self._store.count_orphans(session)
        return result

    async def expire_shares(self, session: AsyncSession) -> list[tuple[int, str]]:
        """Unpublish every expired share. Returns the cleared ``(file_id, token)`` pairs."""
        expired = await self._store.expire_public_shares(session, now_utc())
        if expired:
            logger.info("Expired %d public share(s)", len(expired))
        return expired
