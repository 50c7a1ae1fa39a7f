"""QuotaLedger — per-user byte accounting against a storage quota.

``storage_used`` is persisted for fast reads but is derived data: it must
equal the sum of sizes of the files a user owns.  ``reserve`` charges an
upload batch before its blobs are written, ``commit`` gives back what was
not stored and subtracts deletes, and ``reconcile`` heals any drift left
behind by partial failures.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlmodel import select

from .exceptions import NotFoundError, QuotaExceededError
from .types import (
    Admission,
    CategoryUsage,
    RedemptionInfo,
    StorageStats,
)
from .utils import MIME_CATEGORIES, as_utc, mime_category

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncSession

    from bytecloud.models.users import CouponBase, CouponRedemptionBase

    from .store import MetadataStore

logger = logging.getLogger(__name__)

_UNITS = ("B", "KB", "MB", "GB", "TB", "PB")


def format_bytes(size: int) -> str:
    """Human readable size using binary multiples, e.g. ``"97.66 KB"``."""
    value = float(size)
    negative = value < 0
    value = abs(value)
    unit = _UNITS[0]
    for unit in _UNITS:
        if value < 1024 or unit == _UNITS[-1]:
            break
        value /= 1024
    text = f"{int(value)} B" if unit == "B" else f"{value:.2f} {unit}"
    return f"-{text}" if negative else text


def _requested(sizes: Iterable[int] | int) -> int:
    requested = sizes if isinstance(sizes, int) else sum(sizes)
    if requested < 0:
        raise ValueError("requested size cannot be negative")
    return requested


class QuotaLedger:
    """Admission, commit and reconciliation of storage usage.

    All methods take the caller's session and never commit; batch
    admission and the blob operations it guards are orchestrated by the
    file service.
    """

    def __init__(
        self,
        store: MetadataStore,
        *,
        coupon_model: type[CouponBase] | None = None,
        redemption_model: type[CouponRedemptionBase] | None = None,
    ) -> None:
        from bytecloud.models.users import Coupon, CouponRedemption

        self._store = store
        self._coupon_model = coupon_model or Coupon
        self._redemption_model = redemption_model or CouponRedemption

    async def admit(
        self,
        session: AsyncSession,
        user_id: int,
        sizes: Iterable[int] | int,
    ) -> Admission:
        """Report whether a whole batch would fit in the remaining quota.

        Read-only: nothing is charged, so the answer can be stale by the
        time the caller acts on it.  Uploads go through ``reserve``.
        """
        requested = _requested(sizes)
        user = await self._store.get_user(session, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        available = user.storage_quota - user.storage_used
        admitted = user.storage_used + requested <= user.storage_quota
        if not admitted:
            logger.warning(
                "Quota exceeded for user %s: need %d, have %d available",
                user_id,
                requested,
                available,
            )
        return Admission(
            admitted=admitted,
            requested=requested,
            available=available,
            quota=user.storage_quota,
            used=user.storage_used,
        )

    async def reserve(
        self,
        session: AsyncSession,
        user_id: int,
        sizes: Iterable[int] | int,
    ) -> Admission:
        """Admit a whole batch and charge it to ``storage_used`` in one step.

        The batch is one unit: admitted iff ``used + sum(sizes) <= quota``,
        evaluated by the same conditional ``UPDATE`` that adds the bytes, so
        two batches can never both claim the same remaining space.  Bytes
        of files that end up not being stored are given back with a
        negative ``commit``.
        """
        requested = _requested(sizes)
        reserved = await self._store.reserve_used(session, user_id, requested)
        user = await self._store.get_user(session, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        if reserved:
            logger.debug("Reserved %d bytes for user %s", requested, user_id)
            used = user.storage_used - requested
            return Admission(
                admitted=True,
                requested=requested,
                available=user.storage_quota - used,
                quota=user.storage_quota,
                used=used,
            )
        available = user.storage_quota - user.storage_used
        logger.warning(
            "Quota exceeded for user %s: need %d, have %d available",
            user_id,
            requested,
            available,
        )
        return Admission(
            admitted=False,
            requested=requested,
            available=available,
            quota=user.storage_quota,
            used=user.storage_used,
        )

    async def require(
        self,
        session: AsyncSession,
        user_id: int,
        sizes: Iterable[int] | int,
    ) -> Admission:
        """Like ``reserve`` but raises ``QuotaExceededError`` on rejection."""
        admission = await self.reserve(session, user_id, sizes)
        if not admission.admitted:
            raise QuotaExceededError(
                requested=admission.requested,
                available=max(admission.available, 0),
                quota=admission.quota,
            )
        return admission

    async def commit(self, session: AsyncSession, user_id: int, delta: int) -> None:
        """Apply a signed *delta* to ``storage_used``.

        Unconditional: increases are not checked against the quota, so
        uploads charge through ``reserve`` and use this only to give bytes
        back.  Deletes call it once the row is gone.
        """
        if delta == 0:
            return
        found = await self._store.add_used(session, user_id, delta)
        if not found:
            raise NotFoundError(f"User {user_id} not found")
        logger.debug("Applied usage delta %+d bytes for user %s", delta, user_id)

    async def reconcile(self, session: AsyncSession, user_id: int) -> int:
        """Recompute ``storage_used`` from the files the user owns and persist it if it drifted."""
        user = await self._store.lock_user(session, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        actual = await self._store.sum_file_sizes(session, user_id)
        if actual != user.storage_used:
            await self._store.update_used(session, user_id, actual)
            logger.info(
                "Reconciled usage for user %s: %d -> %d bytes",
                user_id,
                user.storage_used,
                actual,
            )
        return actual

    async def stats(self, session: AsyncSession, user_id: int) -> StorageStats:
        """Storage status for a user: reconciles first, then reports usage and breakdown."""
        used = await self.reconcile(session, user_id)
        user = await self._store.get_user(session, user_id)
        assert user is not None
        quota = user.storage_quota

        breakdown = {name: CategoryUsage() for name in MIME_CATEGORIES}
        total_files = 0
        for mime, count, size in await self._store.usage_by_mime_type(session, user_id):
            bucket = breakdown[mime_category(mime)]
            bucket.count += count
            bucket.size += size
            total_files += count

        percentage = round(used * 100 / quota) if quota > 0 else 100
        return StorageStats(
            quota=quota,
            used=used,
            available=quota - used,
            percentage=percentage,
            total_files=total_files,
            breakdown=breakdown,
            recent_coupons=await self._recent_redemptions(session, user_id),
        )

    async def _recent_redemptions(
        self,
        session: AsyncSession,
        user_id: int,
        limit: int = 5,
    ) -> list[RedemptionInfo]:
        cm = self._coupon_model
        rm = self._redemption_model
        result = await session.execute(
            select(cm.code, cm.name, rm.storage_granted, rm.redeemed_at)
            .join(cm, cm.id == rm.coupon_id)  # type: ignore[arg-type]
            .where(rm.user_id == user_id)
            .order_by(rm.redeemed_at.desc(), rm.id.desc())  # type: ignore[union-attr]
            .limit(limit)
        )
        return [
            RedemptionInfo(
                code=code,
                name=name,
                storage_granted=int(granted),
                redeemed_at=as_utc(redeemed_at),
            )
            for code, name, granted, redeemed_at in result.all()
        ]
