"""MetadataStore — authoritative reads and writes against the relational store.

Stateless service that receives the concrete models at construction
and a session at call time.  Reads return frozen record snapshots;
writes flush but never commit — the caller owns the transaction.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import case, func, or_, update
from sqlalchemy import delete as sa_delete
from sqlmodel import select

from .dialect import upsert
from .types import FileRecord, FolderRecord, GrantRecord, UserRecord
from .utils import as_utc, now_utc

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from bytecloud.models.files import OrphanedBlobBase, StoredFileBase
    from bytecloud.models.folders import FolderBase, FolderGrantBase
    from bytecloud.models.users import UserBase

logger = logging.getLogger(__name__)


class MetadataStore:
    """Typed access to users, folders, grants, files and orphaned blobs.

    Constructor receives the concrete table models so callers can use
    custom SQLModel subclasses with different table names.
    """

    def __init__(
        self,
        *,
        user_model: type[UserBase] | None = None,
        folder_model: type[FolderBase] | None = None,
        grant_model: type[FolderGrantBase] | None = None,
        file_model: type[StoredFileBase] | None = None,
        orphan_model: type[OrphanedBlobBase] | None = None,
    ) -> None:
        from bytecloud.models import Folder, FolderGrant, OrphanedBlob, StoredFile, User

        self.user_model: type[UserBase] = user_model or User
        self.folder_model: type[FolderBase] = folder_model or Folder
        self.grant_model: type[FolderGrantBase] = grant_model or FolderGrant
        self.file_model: type[StoredFileBase] = file_model or StoredFile
        self.orphan_model: type[OrphanedBlobBase] = orphan_model or OrphanedBlob

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    @staticmethod
    def user_to_record(u: UserBase) -> UserRecord:
        assert u.id is not None
        return UserRecord(
            id=u.id,
            email=u.email,
            name=u.name,
            storage_quota=int(u.storage_quota),
            storage_used=int(u.storage_used),
        )

    @staticmethod
    def folder_to_record(f: FolderBase) -> FolderRecord:
        assert f.id is not None
        return FolderRecord(
            id=f.id,
            owner_id=f.owner_id,
            name=f.name,
            parent_folder_id=f.parent_folder_id,
            created_at=as_utc(f.created_at),
            updated_at=as_utc(f.updated_at),
        )

    @staticmethod
    def file_to_record(f: StoredFileBase) -> FileRecord:
        assert f.id is not None
        return FileRecord(
            id=f.id,
            owner_id=f.owner_id,
            folder_id=f.folder_id,
            name=f.name,
            original_name=f.original_name,
            mime_type=f.mime_type,
            size=int(f.size),
            blob_id=f.blob_id,
            thumbnail_name=f.thumbnail_name,
            thumbnail_blob_id=f.thumbnail_blob_id,
            has_thumbnail=f.has_thumbnail,
            download_count=f.download_count,
            public_share_token=f.public_share_token,
            is_public=f.is_public,
            share_expires_at=as_utc(f.share_expires_at),
            created_at=as_utc(f.created_at),
        )

    @staticmethod
    def grant_to_record(g: FolderGrantBase) -> GrantRecord:
        return GrantRecord(
            folder_id=g.folder_id,
            grantee_id=g.grantee_id,
            permission_type=g.permission_type,
            granted_by=g.granted_by,
            created_at=as_utc(g.created_at),
        )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def create_user(
        self,
        session: AsyncSession,
        email: str,
        name: str = "",
        *,
        storage_quota: int | None = None,
        storage_used: int = 0,
    ) -> UserRecord:
        """Insert a user. Flushes but does not commit."""
        values: dict[str, Any] = {
            "email": email.lower(),
            "name": name,
            "storage_used": storage_used,
        }
        if storage_quota is not None:
            values["storage_quota"] = storage_quota
        user = self.user_model(**values)
        session.add(user)
        await session.flush()
        return self.user_to_record(user)

    async def get_user(self, session: AsyncSession, user_id: int) -> UserRecord | None:
        model = self.user_model
        result = await session.execute(
            select(model).where(model.id == user_id).execution_options(populate_existing=True)
        )
        user = result.scalar_one_or_none()
        return self.user_to_record(user) if user is not None else None

    async def get_user_by_email(self, session: AsyncSession, email: str) -> UserRecord | None:
        model = self.user_model
        result = await session.execute(select(model).where(model.email == email.lower()))
        user = result.scalar_one_or_none()
        return self.user_to_record(user) if user is not None else None

    async def lock_user(self, session: AsyncSession, user_id: int) -> UserRecord | None:
        """Read a user row with ``SELECT ... FOR UPDATE`` (ignored by SQLite)."""
        model = self.user_model
        result = await session.execute(
            select(model)
            .where(model.id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        user = result.scalar_one_or_none()
        return self.user_to_record(user) if user is not None else None

    async def update_used(self, session: AsyncSession, user_id: int, used: int) -> None:
        model = self.user_model
        await session.execute(
            update(model).where(model.id == user_id).values(storage_used=used)
        )

    async def add_used(self, session: AsyncSession, user_id: int, delta: int) -> bool:
        """Atomically apply *delta* to ``storage_used``, clamped at zero.

        Returns False if the user does not exist.
        """
        model = self.user_model
        new_value = model.storage_used + delta
        result = await session.execute(
            update(model)
            .where(model.id == user_id)
            .values(storage_used=case((new_value < 0, 0), else_=new_value))
        )
        return bool(result.rowcount)

    async def reserve_used(self, session: AsyncSession, user_id: int, amount: int) -> bool:
        """Add *amount* to ``storage_used`` only if the result stays within quota.

        Check and increment are one conditional ``UPDATE``.  Returns False
        if the user does not exist or the amount does not fit.
        """
        model = self.user_model
        result = await session.execute(
            update(model)
            .where(
                model.id == user_id,
                model.storage_used + amount <= model.storage_quota,
            )
            .values(storage_used=model.storage_used + amount)
        )
        return bool(result.rowcount)

    async def add_quota(self, session: AsyncSession, user_id: int, delta: int) -> None:
        model = self.user_model
        await session.execute(
            update(model)
            .where(model.id == user_id)
            .values(storage_quota=model.storage_quota + delta)
        )

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    async def get_folder(self, session: AsyncSession, folder_id: int) -> FolderRecord | None:
        model = self.folder_model
        result = await session.execute(
            select(model).where(model.id == folder_id).execution_options(populate_existing=True)
        )
        folder = result.scalar_one_or_none()
        return self.folder_to_record(folder) if folder is not None else None

    async def find_folder(
        self,
        session: AsyncSession,
        owner_id: int,
        parent_folder_id: int | None,
        name: str,
    ) -> FolderRecord | None:
        """Find a sibling folder by name (names are unique per owner and parent)."""
        model = self.folder_model
        parent_clause = (
            model.parent_folder_id.is_(None)  # type: ignore[union-attr]
            if parent_folder_id is None
            else model.parent_folder_id == parent_folder_id
        )
        result = await session.execute(
            select(model).where(
                model.owner_id == owner_id,
                model.name == name,
                parent_clause,
            )
        )
        folder = result.scalars().first()
        return self.folder_to_record(folder) if folder is not None else None

    async def insert_folder(
        self,
        session: AsyncSession,
        owner_id: int,
        name: str,
        parent_folder_id: int | None = None,
    ) -> FolderRecord:
        folder = self.folder_model(
            owner_id=owner_id,
            name=name,
            parent_folder_id=parent_folder_id,
        )
        session.add(folder)
        await session.flush()
        return self.folder_to_record(folder)

    async def update_folder(
        self,
        session: AsyncSession,
        folder_id: int,
        **values: Any,
    ) -> FolderRecord | None:
        model = self.folder_model
        values["updated_at"] = now_utc()
        await session.execute(update(model).where(model.id == folder_id).values(**values))
        await session.flush()
        return await self.get_folder(session, folder_id)

    async def delete_folder(self, session: AsyncSession, folder_id: int) -> bool:
        model = self.folder_model
        grants = self.grant_model
        await session.execute(sa_delete(grants).where(grants.folder_id == folder_id))
        result = await session.execute(sa_delete(model).where(model.id == folder_id))
        return bool(result.rowcount)

    async def count_children(self, session: AsyncSession, folder_id: int) -> tuple[int, int]:
        """Return ``(subfolder_count, file_count)`` for a folder."""
        fm = self.folder_model
        sub = await session.execute(
            select(func.count()).select_from(fm).where(fm.parent_folder_id == folder_id)
        )
        files = self.file_model
        fc = await session.execute(
            select(func.count()).select_from(files).where(files.folder_id == folder_id)
        )
        return int(sub.scalar_one()), int(fc.scalar_one())

    async def list_child_folders(
        self,
        session: AsyncSession,
        parent_folder_id: int | None,
    ) -> list[FolderRecord]:
        model = self.folder_model
        parent_clause = (
            model.parent_folder_id.is_(None)  # type: ignore[union-attr]
            if parent_folder_id is None
            else model.parent_folder_id == parent_folder_id
        )
        result = await session.execute(
            select(model).where(parent_clause).order_by(model.created_at.desc())  # type: ignore[union-attr]
        )
        return [self.folder_to_record(f) for f in result.scalars().all()]

    async def list_root_folders_for(
        self,
        session: AsyncSession,
        user_id: int,
    ) -> list[FolderRecord]:
        """Root folders *user_id* owns or holds a grant on."""
        model = self.folder_model
        grants = self.grant_model
        result = await session.execute(
            select(model)
            .outerjoin(
                grants,
                (grants.folder_id == model.id) & (grants.grantee_id == user_id),  # type: ignore[arg-type]
            )
            .where(
                model.parent_folder_id.is_(None),  # type: ignore[union-attr]
                or_(model.owner_id == user_id, grants.grantee_id == user_id),
            )
            .order_by(model.created_at.desc())  # type: ignore[union-attr]
        )
        return [self.folder_to_record(f) for f in result.scalars().all()]

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    async def get_grant(
        self,
        session: AsyncSession,
        folder_id: int,
        user_id: int,
    ) -> GrantRecord | None:
        model = self.grant_model
        result = await session.execute(
            select(model).where(
                model.folder_id == folder_id,
                model.grantee_id == user_id,
            )
        )
        grant = result.scalar_one_or_none()
        return self.grant_to_record(grant) if grant is not None else None

    async def upsert_grant(
        self,
        session: AsyncSession,
        folder_id: int,
        grantee_id: int,
        permission_type: str,
        granted_by: int,
    ) -> tuple[GrantRecord, bool]:
        """Insert or update the grant keyed by ``(folder_id, grantee_id)``.

        Returns ``(grant, created)``.
        """
        existing = await self.get_grant(session, folder_id, grantee_id)
        await upsert(
            session,
            self.grant_model,
            {
                "folder_id": folder_id,
                "grantee_id": grantee_id,
                "permission_type": permission_type,
                "granted_by": granted_by,
                "created_at": now_utc(),
            },
            conflict_keys=["folder_id", "grantee_id"],
            update_keys=["permission_type", "granted_by"],
        )
        # The ORM identity map may hold the pre-upsert row
        session.expire_all()
        grant = await self.get_grant(session, folder_id, grantee_id)
        assert grant is not None
        return grant, existing is None

    async def delete_grant(self, session: AsyncSession, folder_id: int, grantee_id: int) -> bool:
        model = self.grant_model
        result = await session.execute(
            sa_delete(model).where(
                model.folder_id == folder_id,
                model.grantee_id == grantee_id,
            )
        )
        return bool(result.rowcount)

    async def list_grants_on_folder(
        self,
        session: AsyncSession,
        folder_id: int,
    ) -> list[GrantRecord]:
        model = self.grant_model
        result = await session.execute(
            select(model)
            .where(model.folder_id == folder_id)
            .order_by(model.created_at.desc())  # type: ignore[union-attr]
        )
        return [self.grant_to_record(g) for g in result.scalars().all()]

    async def list_grants_for_grantee(
        self,
        session: AsyncSession,
        grantee_id: int,
    ) -> list[GrantRecord]:
        model = self.grant_model
        result = await session.execute(
            select(model)
            .where(model.grantee_id == grantee_id)
            .order_by(model.created_at.desc())  # type: ignore[union-attr]
        )
        return [self.grant_to_record(g) for g in result.scalars().all()]

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def get_file(self, session: AsyncSession, file_id: int) -> FileRecord | None:
        model = self.file_model
        result = await session.execute(
            select(model).where(model.id == file_id).execution_options(populate_existing=True)
        )
        file = result.scalar_one_or_none()
        return self.file_to_record(file) if file is not None else None

    async def get_public_file(self, session: AsyncSession, token: str) -> FileRecord | None:
        """Look up a file by share token, only if it is currently flagged public."""
        model = self.file_model
        result = await session.execute(
            select(model).where(
                model.public_share_token == token,
                model.is_public.is_(True),  # type: ignore[union-attr]
            )
        )
        file = result.scalar_one_or_none()
        return self.file_to_record(file) if file is not None else None

    async def insert_file(self, session: AsyncSession, **values: Any) -> FileRecord:
        file = self.file_model(**values)
        session.add(file)
        await session.flush()
        return self.file_to_record(file)

    async def delete_file(self, session: AsyncSession, file_id: int) -> bool:
        model = self.file_model
        result = await session.execute(sa_delete(model).where(model.id == file_id))
        return bool(result.rowcount)

    async def increment_download_count(self, session: AsyncSession, file_id: int) -> None:
        model = self.file_model
        await session.execute(
            update(model)
            .where(model.id == file_id)
            .values(download_count=model.download_count + 1)
        )

    async def set_public_share(
        self,
        session: AsyncSession,
        file_id: int,
        token: str | None,
        expires_at: datetime | None = None,
    ) -> None:
        """Publish (token set) or revoke (token ``None``) a file.

        ``is_public`` always follows the token so a revoked file never keeps
        a dangling token.
        """
        model = self.file_model
        await session.execute(
            update(model)
            .where(model.id == file_id)
            .values(
                public_share_token=token,
                is_public=token is not None,
                share_expires_at=expires_at if token is not None else None,
                updated_at=now_utc(),
            )
        )

    async def list_files(
        self,
        session: AsyncSession,
        *,
        folder_id: int | None = None,
        owner_id: int | None = None,
    ) -> list[FileRecord]:
        """List files in a folder (``folder_id``) or a user's root files (``owner_id``)."""
        model = self.file_model
        conditions = []
        if folder_id is not None:
            conditions.append(model.folder_id == folder_id)
        else:
            conditions.append(model.folder_id.is_(None))  # type: ignore[union-attr]
        if owner_id is not None:
            conditions.append(model.owner_id == owner_id)
        result = await session.execute(
            select(model).where(*conditions).order_by(model.created_at.desc())  # type: ignore[union-attr]
        )
        return [self.file_to_record(f) for f in result.scalars().all()]

    async def sum_file_sizes(self, session: AsyncSession, owner_id: int) -> int:
        model = self.file_model
        result = await session.execute(
            select(func.coalesce(func.sum(model.size), 0)).where(model.owner_id == owner_id)
        )
        return int(result.scalar_one())

    async def usage_by_mime_type(
        self,
        session: AsyncSession,
        owner_id: int,
    ) -> list[tuple[str, int, int]]:
        """Return ``(mime_type, count, bytes)`` rows for a user's files."""
        model = self.file_model
        result = await session.execute(
            select(
                model.mime_type,
                func.count(),
                func.coalesce(func.sum(model.size), 0),
            )
            .where(model.owner_id == owner_id)
            .group_by(model.mime_type)
        )
        return [(mime or "", int(count), int(total)) for mime, count, total in result.all()]

    async def expire_public_shares(
        self,
        session: AsyncSession,
        now: datetime,
    ) -> list[tuple[int, str]]:
        """Clear shares whose expiry has passed. Returns ``(file_id, token)`` pairs."""
        model = self.file_model
        result = await session.execute(
            select(model).where(
                model.is_public.is_(True),  # type: ignore[union-attr]
                model.share_expires_at.is_not(None),  # type: ignore[union-attr]
            )
        )
        expired: list[tuple[int, str]] = []
        for file in result.scalars().all():
            exp = as_utc(file.share_expires_at)
            if exp is not None and exp <= now and file.id is not None:
                expired.append((file.id, file.public_share_token or ""))
        for file_id, _ in expired:
            await self.set_public_share(session, file_id, None)
        return expired

    # ------------------------------------------------------------------
    # Orphaned blobs
    # ------------------------------------------------------------------

    async def add_orphan(
        self,
        session: AsyncSession,
        owner_id: int,
        blob_id: str,
        blob_name: str,
        size: int,
        error: str | None = None,
    ) -> None:
        orphan = self.orphan_model(
            owner_id=owner_id,
            blob_id=blob_id,
            blob_name=blob_name,
            size=size,
            attempts=1,
            last_error=error,
        )
        session.add(orphan)
        await session.flush()

    async def list_orphans(self, session: AsyncSession, limit: int = 100) -> list[OrphanedBlobBase]:
        model = self.orphan_model
        result = await session.execute(
            select(model).order_by(model.created_at).limit(limit)  # type: ignore[arg-type]
        )
        return list(result.scalars().all())

    async def count_orphans(self, session: AsyncSession) -> int:
        model = self.orphan_model
        result = await session.execute(select(func.count()).select_from(model))
        return int(result.scalar_one())
