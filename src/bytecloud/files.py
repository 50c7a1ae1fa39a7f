"""FileService — batch upload and delete, with quota accounting.

Blob, row and ledger effects are ordered so that ``storage_used`` always
matches the rows that exist:

* upload: reserve the whole batch against the quota, then per file put
  the blob and insert the row, giving back the size of any file whose
  put failed;
* delete: drop cached entries, delete the blob, delete the row and
  subtract its size.  The row is authoritative: a blob that cannot be
  deleted is recorded as orphaned for the maintenance sweep and never
  blocks the delete.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .access import AccessLevel
from .config import Settings
from .exceptions import NotFoundOrDeniedError, PermissionDeniedError
from .thumbnails import generate_thumbnail_safely, thumbnail_blob_name
from .types import DeleteResult, FileInfo, UploadFailure, UploadResult
from .utils import unique_blob_name

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from .blobs.protocol import BlobStore, StoredBlob
    from .cache.metadata import MetadataCache
    from .permissions import PermissionResolver
    from .quota import QuotaLedger
    from .store import MetadataStore
    from .thumbnails import ThumbnailGenerator
    from .types import FileRecord, UploadItem

logger = logging.getLogger(__name__)


class FileService:
    """Upload, inspect, list and delete files."""

    def __init__(
        self,
        store: MetadataStore,
        resolver: PermissionResolver,
        ledger: QuotaLedger,
        blobs: BlobStore,
        cache: MetadataCache,
        *,
        thumbnails: ThumbnailGenerator | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._ledger = ledger
        self._blobs = blobs
        self._cache = cache
        self._thumbnails = thumbnails
        self._settings = settings or Settings()

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def upload(
        self,
        session: AsyncSession,
        caller_id: int,
        items: Sequence[UploadItem],
        folder_id: int | None = None,
    ) -> UploadResult:
        """Store a batch of files owned by *caller_id*.

        The folder check and the quota admission cover the whole batch;
        after admission each file succeeds or fails on its own.  Flushes
        but does not commit.
        """
        if not items:
            raise ValueError("No files uploaded")
        if len(items) > self._settings.max_batch_files:
            raise ValueError(
                f"Too many files in one upload (max {self._settings.max_batch_files})"
            )
        if folder_id is not None:
            await self._resolver.require_folder(session, caller_id, folder_id, AccessLevel.CREATE)

        await self._ledger.require(session, caller_id, [item.size for item in items])

        result = UploadResult()
        stored: list[StoredBlob] = []
        try:
            for item in items:
                name = unique_blob_name(item.original_name)
                try:
                    blob = await self._blobs.put(item.data, name, item.mime_type)
                except Exception as exc:
                    logger.warning("Failed to upload %s: %s", item.original_name, exc)
                    result.failed.append(UploadFailure(item.original_name, str(exc)))
                    await self._ledger.commit(session, caller_id, -item.size)
                    continue
                stored.append(blob)

                thumb = await self._put_thumbnail(item, name)
                if thumb is not None:
                    stored.append(thumb)

                record = await self._store.insert_file(
                    session,
                    owner_id=caller_id,
                    folder_id=folder_id,
                    name=name,
                    original_name=item.original_name,
                    mime_type=item.mime_type,
                    size=item.size,
                    blob_id=blob.blob_id,
                    blob_url=blob.url,
                    thumbnail_name=thumb.name if thumb else None,
                    thumbnail_blob_id=thumb.blob_id if thumb else None,
                    has_thumbnail=thumb is not None,
                )
                result.successful.append(record)
        except Exception:
            # The transaction will be rolled back; don't leave its blobs behind.
            await self._discard(stored)
            raise

        logger.info(
            "User %s uploaded %d file(s) to folder %s (%d failed)",
            caller_id,
            len(result.successful),
            folder_id,
            len(result.failed),
        )
        return result

    async def _put_thumbnail(self, item: UploadItem, name: str) -> StoredBlob | None:
        thumbnail = await generate_thumbnail_safely(
            self._thumbnails, item.data, item.mime_type, item.original_name
        )
        if thumbnail is None:
            return None
        try:
            return await self._blobs.put(
                thumbnail.data, thumbnail_blob_name(name, thumbnail), thumbnail.mime_type
            )
        except Exception:
            logger.warning("Thumbnail upload failed for %s", item.original_name, exc_info=True)
            return None

    async def _discard(self, blobs: list[StoredBlob]) -> None:
        for blob in blobs:
            try:
                await self._blobs.delete(blob.blob_id, blob.name)
            except Exception:
                logger.warning(
                    "Could not remove blob %s after failed upload", blob.name, exc_info=True
                )

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_info(self, session: AsyncSession, caller_id: int, file_id: int) -> FileInfo:
        file, level = await self._resolver.require_file(session, caller_id, file_id)
        return FileInfo(file=file, access=level)

    async def list_files(
        self,
        session: AsyncSession,
        caller_id: int,
        folder_id: int | None = None,
    ) -> list[FileInfo]:
        """Files in a folder the caller can see, or the caller's own root files."""
        if folder_id is None:
            files = await self._store.list_files(session, owner_id=caller_id)
            return [FileInfo(file=f, access=AccessLevel.OWNER) for f in files]
        _, level = await self._resolver.require_folder(session, caller_id, folder_id)
        return [
            FileInfo(file=f, access=AccessLevel.OWNER if f.owner_id == caller_id else level)
            for f in await self._store.list_files(session, folder_id=folder_id)
        ]

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete(self, session: AsyncSession, caller_id: int, file_id: int) -> DeleteResult:
        """Delete one file (owner or ``edit``). Flushes but does not commit."""
        file, _ = await self._resolver.require_file(session, caller_id, file_id, AccessLevel.EDIT)
        result = DeleteResult()
        await self._remove(session, file, result)
        return result

    async def bulk_delete(
        self,
        session: AsyncSession,
        caller_id: int,
        file_ids: Sequence[int],
    ) -> DeleteResult:
        """Delete several files; all-or-nothing on authorization.

        Ids the caller cannot see are reported in ``not_found``.  If any
        visible file needs more than the caller holds, nothing is deleted.
        """
        if not file_ids:
            raise ValueError("file_ids must be a non-empty sequence")
        result = DeleteResult()
        deletable: list[FileRecord] = []
        unauthorized: list[str] = []
        for file_id in dict.fromkeys(file_ids):
            try:
                file, level = await self._resolver.require_file(session, caller_id, file_id)
            except NotFoundOrDeniedError:
                result.not_found.append(file_id)
                continue
            if level.satisfies(AccessLevel.EDIT):
                deletable.append(file)
            else:
                unauthorized.append(file.original_name)
        if unauthorized:
            raise PermissionDeniedError(
                f"Insufficient permissions for some files: {', '.join(unauthorized)}"
            )
        for file in deletable:
            await self._remove(session, file, result)
        logger.info(
            "Bulk delete by user %s: %d deleted, %d not found",
            caller_id,
            len(result.deleted),
            len(result.not_found),
        )
        return result

    async def _remove(self, session: AsyncSession, file: FileRecord, result: DeleteResult) -> None:
        await self._cache.invalidate_file_group(file.id)
        if file.public_share_token:
            await self._cache.invalidate(self._cache.public_key(file.public_share_token))

        blob_gone = await self._delete_blob(session, file, file.blob_id, file.name, file.size)
        if file.thumbnail_name and file.thumbnail_blob_id:
            await self._delete_blob(session, file, file.thumbnail_blob_id, file.thumbnail_name, 0)

        if not await self._store.delete_file(session, file.id):
            result.not_found.append(file.id)
            return
        await self._ledger.commit(session, file.owner_id, -file.size)
        if not blob_gone:
            result.orphaned_blobs += 1
        result.deleted.append(file.id)
        logger.info("Deleted file %s (%s, %d bytes)", file.id, file.original_name, file.size)

    async def _delete_blob(
        self,
        session: AsyncSession,
        file: FileRecord,
        blob_id: str,
        blob_name: str,
        size: int,
    ) -> bool:
        try:
            deleted = await self._blobs.delete(blob_id, blob_name)
        except Exception as exc:
            logger.warning(
                "Blob delete failed for %s (file %s); recording orphan: %s",
                blob_name,
                file.id,
                exc,
            )
            await self._store.add_orphan(session, file.owner_id, blob_id, blob_name, size, str(exc))
            return False
        if not deleted:
            logger.warning("Blob %s was already missing for file %s", blob_name, file.id)
        return True
