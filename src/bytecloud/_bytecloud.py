"""ByteCloud — async facade wiring store, cache, blobs and services."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import SQLModel

from bytecloud.blobs.memory import InMemoryBlobStore
from bytecloud.cache.metadata import MetadataCache
from bytecloud.config import Settings
from bytecloud.coupons import CouponService
from bytecloud.delivery import BlobLocator, DeliveryPolicy, DeliveryProxy
from bytecloud.exceptions import InvalidStateError, NotFoundError
from bytecloud.files import FileService
from bytecloud.folders import FolderService
from bytecloud.maintenance import MaintenanceService
from bytecloud.notifications import (
    LoggingNotificationSender,
    deliver_with_retry,
    folder_shared_notice,
)
from bytecloud.permissions import PermissionResolver
from bytecloud.public_shares import PublicShareService
from bytecloud.quota import QuotaLedger
from bytecloud.sharing import GrantService
from bytecloud.store import MetadataStore
from bytecloud.types import MixedDeleteResult
from bytecloud.utils import is_inline_type

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Callable, Sequence
    from datetime import datetime

    import aiohttp
    from sqlalchemy.ext.asyncio import AsyncEngine

    from bytecloud.blobs.protocol import BlobStore
    from bytecloud.cache.protocol import CacheBackend
    from bytecloud.delivery import DeliveryResult, ResponseSink
    from bytecloud.models.users import CouponBase
    from bytecloud.notifications import Notification, NotificationSender
    from bytecloud.thumbnails import ThumbnailGenerator
    from bytecloud.types import (
        DeleteResult,
        FileInfo,
        FileRecord,
        FolderDeleteResult,
        FolderInfo,
        FolderRecord,
        GrantRecord,
        GrantResult,
        PublicShareResult,
        RedeemResult,
        ShareDescriptor,
        StorageStats,
        SweepResult,
        UploadItem,
        UploadResult,
        UserRecord,
    )

logger = logging.getLogger(__name__)


class ByteCloud:
    """Async facade over the access control and delivery services.

    Every operation runs in its own transaction: committed on success,
    rolled back on error.  Cache entries touched by a mutation are
    invalidated after the commit and before the call returns.

    Engine-based setup::

        engine = create_async_engine("postgresql+asyncpg://...")
        cloud = ByteCloud(engine=engine, blobs=S3BlobStore("bucket"))
        await cloud.create_tables()
        user = await cloud.create_user("alice@example.com")
    """

    def __init__(
        self,
        *,
        engine: AsyncEngine | None = None,
        session_factory: Callable[..., AsyncSession] | None = None,
        blobs: BlobStore | None = None,
        cache: CacheBackend | None = None,
        thumbnails: ThumbnailGenerator | None = None,
        notifier: NotificationSender | None = None,
        settings: Settings | None = None,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        if engine is not None and session_factory is not None:
            raise ValueError("Provide engine or session_factory, not both")
        if engine is None and session_factory is None:
            raise ValueError("Provide engine or session_factory")
        self._engine = engine
        self._session_factory: Callable[..., AsyncSession] = session_factory or async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )
        self._settings = settings or Settings()
        self._blobs: BlobStore = blobs if blobs is not None else InMemoryBlobStore()
        self._notifier: NotificationSender = notifier or LoggingNotificationSender()
        self._pending: set[asyncio.Task[bool]] = set()
        self._closed = False

        self._store = MetadataStore()
        self._cache = MetadataCache(cache, self._settings)
        self._resolver = PermissionResolver(self._store, self._cache)
        self._ledger = QuotaLedger(self._store)
        self._folders = FolderService(self._store, self._resolver)
        self._grants = GrantService(self._store, self._resolver)
        self._files = FileService(
            self._store,
            self._resolver,
            self._ledger,
            self._blobs,
            self._cache,
            thumbnails=thumbnails,
            settings=self._settings,
        )
        self._shares = PublicShareService(self._store, self._resolver, self._cache, self._settings)
        self._coupons = CouponService(self._store)
        self._maintenance = MaintenanceService(self._store, self._blobs)
        self._proxy = DeliveryProxy(
            self._blobs, self._cache, self._settings, http_session=http_session
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession]:
        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def create_tables(self) -> None:
        """Create the ByteCloud tables if they do not exist (engine setups only)."""
        if self._engine is None:
            raise InvalidStateError("create_tables requires an engine")
        import bytecloud.models  # noqa: F401

        async with self._engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    # ------------------------------------------------------------------
    # Users and quota
    # ------------------------------------------------------------------

    async def create_user(
        self,
        email: str,
        name: str = "",
        *,
        storage_quota: int | None = None,
    ) -> UserRecord:
        quota = self._settings.default_quota_bytes if storage_quota is None else storage_quota
        async with self._session() as session:
            if await self._store.get_user_by_email(session, email) is not None:
                raise InvalidStateError("User already exists")
            user = await self._store.create_user(session, email, name, storage_quota=quota)
        logger.info("Created user %s (%s)", user.id, user.email)
        return user

    async def get_user(self, user_id: int) -> UserRecord:
        async with self._session() as session:
            user = await self._store.get_user(session, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    async def storage_stats(self, user_id: int) -> StorageStats:
        async with self._session() as session:
            return await self._ledger.stats(session, user_id)

    async def reconcile(self, user_id: int) -> int:
        async with self._session() as session:
            return await self._ledger.reconcile(session, user_id)

    async def create_coupon(
        self,
        code: str,
        storage_bonus: int,
        *,
        name: str = "",
        max_uses: int = 1,
        expires_at: datetime | None = None,
    ) -> CouponBase:
        async with self._session() as session:
            return await self._coupons.create_coupon(
                session, code, storage_bonus, name=name, max_uses=max_uses, expires_at=expires_at
            )

    async def redeem_coupon(self, user_id: int, code: str) -> RedeemResult:
        async with self._session() as session:
            return await self._coupons.redeem(session, user_id, code)

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    async def create_folder(
        self,
        caller_id: int,
        name: str,
        parent_folder_id: int | None = None,
    ) -> FolderRecord:
        async with self._session() as session:
            return await self._folders.create(session, caller_id, name, parent_folder_id)

    async def get_folder(self, caller_id: int, folder_id: int) -> FolderInfo:
        async with self._session() as session:
            return await self._folders.get(session, caller_id, folder_id)

    async def list_folders(
        self,
        caller_id: int,
        parent_folder_id: int | None = None,
    ) -> list[FolderInfo]:
        async with self._session() as session:
            return await self._folders.list_folders(session, caller_id, parent_folder_id)

    async def rename_folder(self, caller_id: int, folder_id: int, name: str) -> FolderRecord:
        async with self._session() as session:
            folder = await self._folders.rename(session, caller_id, folder_id, name)
        await self._cache.invalidate(self._cache.folder_key(folder_id))
        return folder

    async def move_folder(
        self,
        caller_id: int,
        folder_id: int,
        new_parent_id: int | None,
    ) -> FolderRecord:
        async with self._session() as session:
            folder = await self._folders.move(session, caller_id, folder_id, new_parent_id)
        await self._cache.invalidate(self._cache.folder_key(folder_id))
        return folder

    async def delete_folder(self, caller_id: int, folder_id: int) -> None:
        async with self._session() as session:
            grants = await self._folders.delete(session, caller_id, folder_id)
        await self._cache.invalidate(
            self._cache.folder_key(folder_id),
            *(self._cache.grant_key(folder_id, g.grantee_id) for g in grants),
        )

    async def delete_folders(self, caller_id: int, folder_ids: Sequence[int]) -> FolderDeleteResult:
        """Delete several empty folders the caller owns."""
        async with self._session() as session:
            result = await self._folders.bulk_delete(session, caller_id, folder_ids)
        await self._invalidate_folders(result)
        return result

    async def _invalidate_folders(self, result: FolderDeleteResult) -> None:
        if not result.deleted:
            return
        await self._cache.invalidate(
            *(self._cache.folder_key(folder_id) for folder_id in result.deleted),
            *(self._cache.grant_key(g.folder_id, g.grantee_id) for g in result.revoked_grants),
        )

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    async def share_folder(
        self,
        caller_id: int,
        folder_id: int,
        grantee_email: str,
        permission_type: str = "view",
    ) -> GrantResult:
        """Grant a user access to a folder and notify them (in the background)."""
        async with self._session() as session:
            result = await self._grants.share_folder(
                session, caller_id, folder_id, grantee_email, permission_type
            )
            sharer = await self._store.get_user(session, caller_id)
        await self._cache.invalidate(self._cache.grant_key(folder_id, result.grant.grantee_id))
        self._notify(
            folder_shared_notice(
                result.grantee_email,
                folder_id=folder_id,
                folder_name=result.folder_name,
                permission_type=result.grant.permission_type,
                shared_by=(sharer.name or sharer.email) if sharer else str(caller_id),
            )
        )
        return result

    async def revoke_grant(self, caller_id: int, folder_id: int, grantee_id: int) -> None:
        async with self._session() as session:
            await self._grants.revoke_grant(session, caller_id, folder_id, grantee_id)
        await self._cache.invalidate(self._cache.grant_key(folder_id, grantee_id))

    async def list_grants(self, caller_id: int, folder_id: int) -> list[GrantRecord]:
        async with self._session() as session:
            return await self._grants.list_grants(session, caller_id, folder_id)

    async def list_shared_with(self, caller_id: int) -> list[tuple[FolderRecord, GrantRecord]]:
        async with self._session() as session:
            return await self._grants.list_shared_with(session, caller_id)

    def _notify(self, notification: Notification) -> None:
        task = asyncio.ensure_future(
            deliver_with_retry(
                self._notifier,
                notification,
                attempts=self._settings.notification_attempts,
                backoff=self._settings.notification_backoff,
            )
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def upload_files(
        self,
        caller_id: int,
        items: Sequence[UploadItem],
        folder_id: int | None = None,
    ) -> UploadResult:
        async with self._session() as session:
            return await self._files.upload(session, caller_id, items, folder_id)

    async def get_file(self, caller_id: int, file_id: int) -> FileInfo:
        async with self._session() as session:
            return await self._files.get_info(session, caller_id, file_id)

    async def list_files(self, caller_id: int, folder_id: int | None = None) -> list[FileInfo]:
        async with self._session() as session:
            return await self._files.list_files(session, caller_id, folder_id)

    async def delete_file(self, caller_id: int, file_id: int) -> DeleteResult:
        async with self._session() as session:
            result = await self._files.delete(session, caller_id, file_id)
        await self._invalidate_files(result.deleted)
        return result

    async def delete_files(self, caller_id: int, file_ids: Sequence[int]) -> DeleteResult:
        async with self._session() as session:
            result = await self._files.bulk_delete(session, caller_id, file_ids)
        await self._invalidate_files(result.deleted)
        return result

    async def delete_items(
        self,
        caller_id: int,
        file_ids: Sequence[int] = (),
        folder_ids: Sequence[int] = (),
    ) -> MixedDeleteResult:
        """Delete files and then folders in one transaction.

        Folder ownership is checked before any file is touched, and files
        go first so a folder emptied by this call is deleted with it.
        """
        if not file_ids and not folder_ids:
            raise ValueError("At least one of file_ids or folder_ids must be non-empty")
        result = MixedDeleteResult()
        async with self._session() as session:
            owned, missing = await self._folders.authorize_bulk_delete(
                session, caller_id, folder_ids
            )
            if file_ids:
                result.files = await self._files.bulk_delete(session, caller_id, file_ids)
            result.folders = await self._folders.delete_owned(session, owned, missing)
        await self._invalidate_files(result.files.deleted)
        await self._invalidate_folders(result.folders)
        return result

    async def _invalidate_files(self, file_ids: Sequence[int]) -> None:
        for file_id in file_ids:
            await self._cache.invalidate_file_group(file_id)

    # ------------------------------------------------------------------
    # Public shares
    # ------------------------------------------------------------------

    async def create_public_share(
        self,
        caller_id: int,
        file_id: int,
        expires_in_hours: int | None = None,
    ) -> PublicShareResult:
        async with self._session() as session:
            result = await self._shares.create(session, caller_id, file_id, expires_in_hours)
        await self._cache.invalidate(self._cache.file_key(file_id))
        if result.previous_token:
            await self._cache.invalidate(self._cache.public_key(result.previous_token))
        return result

    async def revoke_public_share(self, caller_id: int, file_id: int) -> None:
        async with self._session() as session:
            token = await self._shares.revoke(session, caller_id, file_id)
        await self._cache.invalidate(self._cache.file_key(file_id))
        if token:
            await self._cache.invalidate(self._cache.public_key(token))

    async def resolve_share(self, token: str) -> ShareDescriptor:
        async with self._session() as session:
            return await self._shares.resolve(session, token)

    async def public_file_info(self, token: str) -> ShareDescriptor:
        async with self._session() as session:
            return await self._shares.info(session, token)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def download(
        self,
        caller_id: int,
        file_id: int,
        out: ResponseSink,
        *,
        cancel: asyncio.Event | None = None,
    ) -> DeliveryResult:
        """Stream a file the caller can view, counting the download first."""
        async with self._session() as session:
            file, _ = await self._resolver.require_file(session, caller_id, file_id)
            await self._store.increment_download_count(session, file.id)
        await self._cache.invalidate(self._cache.file_key(file.id))
        policy = DeliveryPolicy.for_file(file.mime_type, file.original_name)
        return await self._deliver(file, out, policy, cancel)

    async def view(
        self,
        caller_id: int,
        file_id: int,
        out: ResponseSink,
        *,
        cancel: asyncio.Event | None = None,
    ) -> DeliveryResult:
        """Stream an image, video or PDF for inline display."""
        async with self._session() as session:
            file, _ = await self._resolver.require_file(session, caller_id, file_id)
        return await self._deliver_inline(file, out, cancel)

    async def thumbnail(
        self,
        caller_id: int,
        file_id: int,
        out: ResponseSink,
        *,
        cancel: asyncio.Event | None = None,
    ) -> DeliveryResult:
        async with self._session() as session:
            file, _ = await self._resolver.require_file(session, caller_id, file_id)
        return await self._deliver_thumbnail(file, out, cancel)

    async def public_download(
        self,
        token: str,
        out: ResponseSink,
        *,
        cancel: asyncio.Event | None = None,
    ) -> DeliveryResult:
        async with self._session() as session:
            file = await self._public_file(session, token)
            await self._store.increment_download_count(session, file.id)
        await self._cache.invalidate(self._cache.file_key(file.id))
        policy = DeliveryPolicy.for_file(file.mime_type, file.original_name)
        return await self._deliver(file, out, policy, cancel)

    async def public_view(
        self,
        token: str,
        out: ResponseSink,
        *,
        cancel: asyncio.Event | None = None,
    ) -> DeliveryResult:
        async with self._session() as session:
            file = await self._public_file(session, token)
        return await self._deliver_inline(file, out, cancel)

    async def public_thumbnail(
        self,
        token: str,
        out: ResponseSink,
        *,
        cancel: asyncio.Event | None = None,
    ) -> DeliveryResult:
        async with self._session() as session:
            file = await self._public_file(session, token)
        return await self._deliver_thumbnail(file, out, cancel)

    async def _public_file(self, session: AsyncSession, token: str) -> FileRecord:
        descriptor = await self._shares.resolve(session, token)
        file = await self._resolver.load_file(session, descriptor.file_id)
        if file is None:
            raise NotFoundError("File not found or share link expired")
        return file

    async def _deliver(
        self,
        file: FileRecord,
        out: ResponseSink,
        policy: DeliveryPolicy,
        cancel: asyncio.Event | None,
    ) -> DeliveryResult:
        locator = BlobLocator(file_id=file.id, blob_name=file.name, size=file.size)
        return await self._proxy.stream(locator, out, policy, cancel=cancel)

    async def _deliver_inline(
        self,
        file: FileRecord,
        out: ResponseSink,
        cancel: asyncio.Event | None,
    ) -> DeliveryResult:
        if not is_inline_type(file.mime_type):
            raise InvalidStateError("File type not supported for inline viewing")
        policy = DeliveryPolicy.for_file(file.mime_type, file.original_name)
        return await self._deliver(file, out, policy, cancel)

    async def _deliver_thumbnail(
        self,
        file: FileRecord,
        out: ResponseSink,
        cancel: asyncio.Event | None,
    ) -> DeliveryResult:
        if not file.has_thumbnail or not file.thumbnail_name:
            raise NotFoundError("Thumbnail not available")
        locator = BlobLocator(file_id=file.id, blob_name=file.thumbnail_name, thumbnail=True)
        policy = DeliveryPolicy.for_thumbnail(file.original_name)
        return await self._proxy.stream(locator, out, policy, cancel=cancel)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def sweep(self, *, limit: int = 100) -> SweepResult:
        """Retry orphaned blob deletions and clear expired public shares."""
        async with self._session() as session:
            result = await self._maintenance.sweep_orphans(session, limit=limit)
            expired = await self._maintenance.expire_shares(session)
        for file_id, token in expired:
            await self._cache.invalidate(
                self._cache.file_key(file_id), self._cache.public_key(token)
            )
        result.shares_expired = len(expired)
        return result

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        await self._proxy.close()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def store(self) -> MetadataStore:
        return self._store

    @property
    def cache(self) -> MetadataCache:
        return self._cache

    @property
    def blobs(self) -> BlobStore:
        return self._blobs

    @property
    def resolver(self) -> PermissionResolver:
        return self._resolver

    @property
    def session_factory(self) -> Callable[..., AsyncSession]:
        return self._session_factory
