"""FolderService — folder lifecycle.

Folders form a tree per owner.  A caller may create a folder at the
root, or inside a folder they own or hold ``create``/``edit`` on; the
new folder belongs to its creator.  Folders are deleted only by their
owner and only when empty.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .access import AccessLevel
from .exceptions import InvalidStateError, NotFoundOrDeniedError, PermissionDeniedError
from .types import FolderDeleteResult, FolderInfo
from .utils import clean_name

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from .permissions import PermissionResolver
    from .store import MetadataStore
    from .types import FolderRecord, GrantRecord

logger = logging.getLogger(__name__)


class FolderService:
    """Create, inspect, list, rename, move and delete folders."""

    def __init__(self, store: MetadataStore, resolver: PermissionResolver) -> None:
        self._store = store
        self._resolver = resolver

    async def _ensure_unique(
        self,
        session: AsyncSession,
        owner_id: int,
        parent_folder_id: int | None,
        name: str,
        *,
        exclude_id: int | None = None,
    ) -> None:
        existing = await self._store.find_folder(session, owner_id, parent_folder_id, name)
        if existing is not None and existing.id != exclude_id:
            raise InvalidStateError(f"A folder named {name!r} already exists here")

    async def create(
        self,
        session: AsyncSession,
        caller_id: int,
        name: str,
        parent_folder_id: int | None = None,
    ) -> FolderRecord:
        name = clean_name(name)
        if parent_folder_id is not None:
            await self._resolver.require_folder(
                session, caller_id, parent_folder_id, AccessLevel.CREATE
            )
        await self._ensure_unique(session, caller_id, parent_folder_id, name)
        folder = await self._store.insert_folder(session, caller_id, name, parent_folder_id)
        logger.info("User %s created folder %s (%s)", caller_id, folder.id, name)
        return folder

    async def get(self, session: AsyncSession, caller_id: int, folder_id: int) -> FolderInfo:
        folder, level = await self._resolver.require_folder(session, caller_id, folder_id)
        subfolders, files = await self._store.count_children(session, folder_id)
        return FolderInfo(folder=folder, access=level, subfolder_count=subfolders, file_count=files)

    async def list_folders(
        self,
        session: AsyncSession,
        caller_id: int,
        parent_folder_id: int | None = None,
    ) -> list[FolderInfo]:
        """Folders directly under *parent_folder_id* that *caller_id* can access.

        With no parent this lists the caller's root folders together with
        any root folders shared with them.
        """
        if parent_folder_id is None:
            candidates = await self._store.list_root_folders_for(session, caller_id)
        else:
            await self._resolver.require_folder(session, caller_id, parent_folder_id)
            candidates = await self._store.list_child_folders(session, parent_folder_id)
        infos: list[FolderInfo] = []
        for folder in candidates:
            level = await self._resolver.access_for_folder(session, caller_id, folder)
            if level is AccessLevel.NONE:
                continue
            subfolders, files = await self._store.count_children(session, folder.id)
            infos.append(
                FolderInfo(
                    folder=folder, access=level, subfolder_count=subfolders, file_count=files
                )
            )
        return infos

    async def rename(
        self,
        session: AsyncSession,
        caller_id: int,
        folder_id: int,
        name: str,
    ) -> FolderRecord:
        name = clean_name(name)
        folder, _ = await self._resolver.require_folder(
            session, caller_id, folder_id, AccessLevel.EDIT
        )
        await self._ensure_unique(
            session, folder.owner_id, folder.parent_folder_id, name, exclude_id=folder.id
        )
        updated = await self._store.update_folder(session, folder_id, name=name)
        assert updated is not None
        logger.info("Folder %s renamed to %s by user %s", folder_id, name, caller_id)
        return updated

    async def move(
        self,
        session: AsyncSession,
        caller_id: int,
        folder_id: int,
        new_parent_id: int | None,
    ) -> FolderRecord:
        """Re-parent a folder. Owner only; the target must accept new children from the caller."""
        folder, _ = await self._resolver.require_folder(
            session, caller_id, folder_id, AccessLevel.OWNER
        )
        if new_parent_id is not None:
            await self._resolver.require_folder(
                session, caller_id, new_parent_id, AccessLevel.CREATE
            )
            await self._check_not_descendant(session, folder_id, new_parent_id)
        await self._ensure_unique(
            session, folder.owner_id, new_parent_id, folder.name, exclude_id=folder.id
        )
        updated = await self._store.update_folder(
            session, folder_id, parent_folder_id=new_parent_id
        )
        assert updated is not None
        logger.info("Folder %s moved under %s", folder_id, new_parent_id)
        return updated

    async def _check_not_descendant(
        self,
        session: AsyncSession,
        folder_id: int,
        new_parent_id: int,
    ) -> None:
        current: int | None = new_parent_id
        seen: set[int] = set()
        while current is not None and current not in seen:
            if current == folder_id:
                raise InvalidStateError("Cannot move a folder into itself or its descendants")
            seen.add(current)
            parent = await self._store.get_folder(session, current)
            current = parent.parent_folder_id if parent is not None else None

    async def delete(
        self,
        session: AsyncSession,
        caller_id: int,
        folder_id: int,
    ) -> list[GrantRecord]:
        """Delete an empty folder and its grants. Returns the removed grants."""
        await self._resolver.require_folder(session, caller_id, folder_id, AccessLevel.OWNER)
        subfolders, files = await self._store.count_children(session, folder_id)
        if subfolders or files:
            raise InvalidStateError("Cannot delete folder that contains files or subfolders")
        grants = await self._store.list_grants_on_folder(session, folder_id)
        await self._store.delete_folder(session, folder_id)
        logger.info("Folder %s deleted by user %s", folder_id, caller_id)
        return grants

    async def authorize_bulk_delete(
        self,
        session: AsyncSession,
        caller_id: int,
        folder_ids: Sequence[int],
    ) -> tuple[list[FolderRecord], list[int]]:
        """Split *folder_ids* into folders the caller owns and ids they cannot see.

        Raises ``PermissionDeniedError`` naming every visible folder the
        caller does not own; nothing has been changed at that point.
        """
        owned: list[FolderRecord] = []
        not_found: list[int] = []
        unauthorized: list[str] = []
        for folder_id in dict.fromkeys(folder_ids):
            try:
                folder, level = await self._resolver.require_folder(session, caller_id, folder_id)
            except NotFoundOrDeniedError:
                not_found.append(folder_id)
                continue
            if level is AccessLevel.OWNER:
                owned.append(folder)
            else:
                unauthorized.append(folder.name)
        if unauthorized:
            raise PermissionDeniedError(
                f"Only folder owners can delete folders: {', '.join(unauthorized)}"
            )
        return owned, not_found

    async def delete_owned(
        self,
        session: AsyncSession,
        folders: Iterable[FolderRecord],
        not_found: Iterable[int] = (),
    ) -> FolderDeleteResult:
        """Delete the empty folders among *folders*, already authorized.

        Passes repeat while they make progress, so a parent listed with
        its only subfolder goes too.  Folders still holding anything are
        reported in ``non_empty``.
        """
        result = FolderDeleteResult(not_found=list(not_found))
        pending = list(folders)
        while pending:
            remaining: list[FolderRecord] = []
            for folder in pending:
                subfolders, files = await self._store.count_children(session, folder.id)
                if subfolders or files:
                    remaining.append(folder)
                    continue
                result.revoked_grants.extend(
                    await self._store.list_grants_on_folder(session, folder.id)
                )
                await self._store.delete_folder(session, folder.id)
                result.deleted.append(folder.id)
                logger.info("Folder %s (%s) deleted", folder.id, folder.name)
            if len(remaining) == len(pending):
                break
            pending = remaining
        result.non_empty = [folder.id for folder in pending]
        return result

    async def bulk_delete(
        self,
        session: AsyncSession,
        caller_id: int,
        folder_ids: Sequence[int],
    ) -> FolderDeleteResult:
        """Delete several empty folders; all-or-nothing on ownership."""
        if not folder_ids:
            raise ValueError("folder_ids must be a non-empty sequence")
        owned, not_found = await self.authorize_bulk_delete(session, caller_id, folder_ids)
        result = await self.delete_owned(session, owned, not_found)
        logger.info(
            "Bulk folder delete by user %s: %d deleted, %d non-empty, %d not found",
            caller_id,
            len(result.deleted),
            len(result.non_empty),
            len(result.not_found),
        )
        return result
