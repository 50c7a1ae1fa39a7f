"""GrantService — folder grant CRUD.

Stateless service that receives the store and the permission resolver
at construction and a session at call time.  Only a folder's owner can
share it, list its grants or revoke them.  Cache invalidation of the
affected ``grant:`` keys is done by the caller after commit.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .access import GRANT_PERMISSIONS, AccessLevel
from .exceptions import InvalidStateError, NotFoundError
from .types import GrantResult

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from .permissions import PermissionResolver
    from .store import MetadataStore
    from .types import FolderRecord, GrantRecord

logger = logging.getLogger(__name__)


def validate_permission(permission_type: str) -> str:
    permission_type = (permission_type or "").lower()
    if permission_type not in GRANT_PERMISSIONS:
        raise ValueError(
            f"Invalid permission: {permission_type!r}. "
            f"Must be one of {', '.join(GRANT_PERMISSIONS)}."
        )
    return permission_type


class GrantService:
    """Manages ``(folder, grantee)`` grants."""

    def __init__(self, store: MetadataStore, resolver: PermissionResolver) -> None:
        self._store = store
        self._resolver = resolver

    async def _owned_folder(
        self,
        session: AsyncSession,
        caller_id: int,
        folder_id: int,
    ) -> FolderRecord:
        folder, _ = await self._resolver.require_folder(
            session, caller_id, folder_id, AccessLevel.OWNER
        )
        return folder

    async def share_folder(
        self,
        session: AsyncSession,
        caller_id: int,
        folder_id: int,
        grantee_email: str,
        permission_type: str = "view",
    ) -> GrantResult:
        """Grant *grantee_email* access to a folder, or update the existing grant.

        Flushes but does not commit.
        """
        permission_type = validate_permission(permission_type)
        folder = await self._owned_folder(session, caller_id, folder_id)

        grantee = await self._store.get_user_by_email(session, grantee_email)
        if grantee is None:
            raise NotFoundError("User not found")
        if grantee.id == caller_id:
            raise InvalidStateError("Cannot share with yourself")

        grant, created = await self._store.upsert_grant(
            session, folder.id, grantee.id, permission_type, caller_id
        )
        logger.info(
            "Folder %s shared with user %s (%s, %s)",
            folder.id,
            grantee.id,
            permission_type,
            "created" if created else "updated",
        )
        return GrantResult(
            grant=grant,
            created=created,
            grantee_email=grantee.email,
            folder_name=folder.name,
        )

    async def revoke_grant(
        self,
        session: AsyncSession,
        caller_id: int,
        folder_id: int,
        grantee_id: int,
    ) -> None:
        """Remove a grant. Raises ``NotFoundError`` if there was none."""
        await self._owned_folder(session, caller_id, folder_id)
        removed = await self._store.delete_grant(session, folder_id, grantee_id)
        if not removed:
            raise NotFoundError("Permission not found")
        logger.info("Revoked grant on folder %s for user %s", folder_id, grantee_id)

    async def list_grants(
        self,
        session: AsyncSession,
        caller_id: int,
        folder_id: int,
    ) -> list[GrantRecord]:
        """All grants on a folder (owner only)."""
        await self._owned_folder(session, caller_id, folder_id)
        return await self._store.list_grants_on_folder(session, folder_id)

    async def list_shared_with(
        self,
        session: AsyncSession,
        caller_id: int,
    ) -> list[tuple[FolderRecord, GrantRecord]]:
        """Folders other users have shared with *caller_id*."""
        shared: list[tuple[FolderRecord, GrantRecord]] = []
        for grant in await self._store.list_grants_for_grantee(session, caller_id):
            folder = await self._store.get_folder(session, grant.folder_id)
            if folder is not None:
                shared.append((folder, grant))
        return shared
