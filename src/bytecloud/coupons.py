"""CouponService — storage bonus coupons.

Redemption is one transaction: the caller's session is committed by the
facade only after the use counter, the quota credit and the redemption
row have all been written.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from .exceptions import CouponError, NotFoundError
from .quota import format_bytes
from .types import RedeemResult
from .utils import as_utc, now_utc

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from bytecloud.models.users import CouponBase, CouponRedemptionBase

    from .store import MetadataStore

logger = logging.getLogger(__name__)


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


class CouponService:
    """Creates and redeems coupons.

    Constructor receives the concrete models so callers can use custom
    SQLModel subclasses with different table names.
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

    async def create_coupon(
        self,
        session: AsyncSession,
        code: str,
        storage_bonus: int,
        *,
        name: str = "",
        max_uses: int = 1,
        expires_at: datetime | None = None,
        is_active: bool = True,
    ) -> CouponBase:
        """Create a coupon. Flushes but does not commit."""
        code = normalize_code(code)
        if not code:
            raise ValueError("Coupon code is required")
        if storage_bonus <= 0:
            raise ValueError("storage_bonus must be positive")
        if max_uses < 1:
            raise ValueError("max_uses must be at least 1")
        coupon = self._coupon_model(
            code=code,
            name=name or code,
            storage_bonus=storage_bonus,
            max_uses=max_uses,
            expires_at=expires_at,
            is_active=is_active,
        )
        session.add(coupon)
        await session.flush()
        return coupon

    async def redeem(self, session: AsyncSession, user_id: int, code: str) -> RedeemResult:
        """Credit a coupon's storage bonus to *user_id*, at most once per user.

        Raises ``CouponError`` with reason ``invalid_or_expired`` or
        ``already_redeemed``.  The use counter is incremented with a
        conditional UPDATE so concurrent redemptions can never push it
        past ``max_uses``.
        """
        code = normalize_code(code)
        cm = self._coupon_model
        rm = self._redemption_model

        user = await self._store.get_user(session, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")

        result = await session.execute(select(cm).where(cm.code == code))
        coupon = result.scalar_one_or_none()
        if coupon is None or not self._is_valid(coupon):
            raise CouponError(CouponError.INVALID_OR_EXPIRED)
        assert coupon.id is not None
        coupon_id = coupon.id
        bonus = int(coupon.storage_bonus)
        coupon_name = coupon.name

        existing = await session.execute(
            select(rm.id).where(rm.user_id == user_id, rm.coupon_id == coupon_id)
        )
        if existing.first() is not None:
            raise CouponError(CouponError.ALREADY_REDEEMED)

        claimed = await session.execute(
            update(cm)
            .where(
                cm.id == coupon_id,
                cm.is_active.is_(True),  # type: ignore[union-attr]
                cm.current_uses < cm.max_uses,
            )
            .values(current_uses=cm.current_uses + 1)
        )
        if not claimed.rowcount:
            raise CouponError(CouponError.INVALID_OR_EXPIRED)

        # A concurrent redemption by the same user trips the unique constraint;
        # the caller rolls the whole transaction back, counter included.
        session.add(rm(user_id=user_id, coupon_id=coupon_id, storage_granted=bonus))
        try:
            await session.flush()
        except IntegrityError as exc:
            raise CouponError(CouponError.ALREADY_REDEEMED) from exc

        await self._store.add_quota(session, user_id, bonus)
        updated = await self._store.get_user(session, user_id)
        assert updated is not None
        logger.info("User %s redeemed coupon %s (+%d bytes)", user_id, code, bonus)
        return RedeemResult(
            code=code,
            name=coupon_name,
            storage_granted=bonus,
            storage_granted_formatted=format_bytes(bonus),
            new_quota=updated.storage_quota,
        )

    @staticmethod
    def _is_valid(coupon: CouponBase) -> bool:
        if not coupon.is_active:
            return False
        if coupon.current_uses >= coupon.max_uses:
            return False
        expires_at = as_utc(coupon.expires_at)
        return expires_at is None or expires_at > now_utc()
