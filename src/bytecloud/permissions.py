"""PermissionResolver — effective access of a caller on a folder or file.

This is the only place that combines ownership and folder grants.
Grants are per folder and are NOT inherited by child folders: a grant
on ``/a`` says nothing about ``/a/b``.  A file takes the access of the
folder that directly contains it; files at the root (no folder) are
visible to their owner only.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .access import AccessLevel
from .exceptions import NotFoundError, NotFoundOrDeniedError, PermissionDeniedError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from .cache.metadata import MetadataCache
    from .store import MetadataStore
    from .types import FileRecord, FolderRecord, GrantRecord

logger = logging.getLogger(__name__)


class PermissionResolver:
    """Resolves ``AccessLevel`` from ownership and ``(folder, grantee)`` grants.

    Record and grant lookups go through the ``MetadataCache`` when one
    is configured; every mutation of folders, files or grants
    invalidates the matching keys.
    """

    def __init__(self, store: MetadataStore, cache: MetadataCache | None = None) -> None:
        self._store = store
        self._cache = cache

    # ------------------------------------------------------------------
    # Cached lookups
    # ------------------------------------------------------------------

    async def load_folder(self, session: AsyncSession, folder_id: int) -> FolderRecord | None:
        if self._cache is None:
            return await self._store.get_folder(session, folder_id)
        return await self._cache.get_or_load(
            self._cache.folder_key(folder_id),
            lambda: self._store.get_folder(session, folder_id),
            self._cache.metadata_ttl,
        )

    async def load_file(self, session: AsyncSession, file_id: int) -> FileRecord | None:
        if self._cache is None:
            return await self._store.get_file(session, file_id)
        return await self._cache.get_or_load(
            self._cache.file_key(file_id),
            lambda: self._store.get_file(session, file_id),
            self._cache.metadata_ttl,
        )

    async def _load_grant(
        self,
        session: AsyncSession,
        folder_id: int,
        user_id: int,
    ) -> GrantRecord | None:
        if self._cache is None:
            return await self._store.get_grant(session, folder_id, user_id)
        return await self._cache.get_or_load(
            self._cache.grant_key(folder_id, user_id),
            lambda: self._store.get_grant(session, folder_id, user_id),
            self._cache.metadata_ttl,
        )

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def access_for_folder(
        self,
        session: AsyncSession,
        caller_id: int,
        folder: FolderRecord,
    ) -> AccessLevel:
        """Access level of *caller_id* on an already loaded folder."""
        if folder.owner_id == caller_id:
            return AccessLevel.OWNER
        grant = await self._load_grant(session, folder.id, caller_id)
        return AccessLevel.from_grant(grant.permission_type if grant else None)

    async def access_for_file(
        self,
        session: AsyncSession,
        caller_id: int,
        file: FileRecord,
    ) -> AccessLevel:
        """Access level of *caller_id* on an already loaded file."""
        if file.owner_id == caller_id:
            return AccessLevel.OWNER
        if file.folder_id is None:
            return AccessLevel.NONE
        grant = await self._load_grant(session, file.folder_id, caller_id)
        return AccessLevel.from_grant(grant.permission_type if grant else None)

    async def folder_access(
        self,
        session: AsyncSession,
        caller_id: int,
        folder_id: int,
    ) -> AccessLevel:
        """Resolve access on a folder. Raises ``NotFoundError`` if it does not exist."""
        folder = await self.load_folder(session, folder_id)
        if folder is None:
            raise NotFoundError(f"Folder {folder_id} not found")
        return await self.access_for_folder(session, caller_id, folder)

    async def file_access(
        self,
        session: AsyncSession,
        caller_id: int,
        file_id: int,
    ) -> AccessLevel:
        """Resolve access on a file. Raises ``NotFoundError`` if it does not exist."""
        file = await self.load_file(session, file_id)
        if file is None:
            raise NotFoundError(f"File {file_id} not found")
        return await self.access_for_file(session, caller_id, file)

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    async def require_folder(
        self,
        session: AsyncSession,
        caller_id: int,
        folder_id: int,
        required: AccessLevel = AccessLevel.VIEW,
    ) -> tuple[FolderRecord, AccessLevel]:
        """Return ``(folder, level)`` if *caller_id* holds at least *required*.

        Missing folders and callers without any access both raise
        ``NotFoundOrDeniedError``; callers who can see the folder but lack
        *required* get ``PermissionDeniedError``.
        """
        folder = await self.load_folder(session, folder_id)
        if folder is None:
            raise NotFoundOrDeniedError("Folder")
        level = await self.access_for_folder(session, caller_id, folder)
        _check(level, required, "folder", folder_id, caller_id)
        return folder, level

    async def require_file(
        self,
        session: AsyncSession,
        caller_id: int,
        file_id: int,
        required: AccessLevel = AccessLevel.VIEW,
    ) -> tuple[FileRecord, AccessLevel]:
        """Return ``(file, level)`` if *caller_id* holds at least *required* on the file."""
        file = await self.load_file(session, file_id)
        if file is None:
            raise NotFoundOrDeniedError("File")
        level = await self.access_for_file(session, caller_id, file)
        _check(level, required, "file", file_id, caller_id)
        return file, level


def _check(
    level: AccessLevel,
    required: AccessLevel,
    kind: str,
    entity_id: int,
    caller_id: int,
) -> None:
    if level is AccessLevel.NONE:
        logger.debug("Caller %s has no access to %s %s", caller_id, kind, entity_id)
        raise NotFoundOrDeniedError(kind.capitalize())
    if not level.satisfies(required):
        logger.debug(
            "Caller %s holds %s on %s %s, needs %s",
            caller_id,
            level.value,
            kind,
            entity_id,
            required.value,
        )
        raise PermissionDeniedError(f"Insufficient permissions for this {kind}")
