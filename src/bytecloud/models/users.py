"""User, Coupon and CouponRedemption models.

Provides non-table base classes and concrete tables.  Subclass the base
with ``table=True`` and a custom ``__tablename__`` to use a different
table name per deployment.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import BigInteger, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

DEFAULT_QUOTA_BYTES: int = 5 * 1024 * 1024 * 1024
"""5 GiB — quota for users created without an explicit value."""


class UserBase(SQLModel):
    """Base fields for a user account. Subclass with ``table=True`` for a concrete table."""

    id: int | None = Field(default=None, primary_key=True)
    email: str = Field(index=True, unique=True)
    name: str = Field(default="")
    storage_quota: int = Field(default=DEFAULT_QUOTA_BYTES, sa_type=BigInteger)
    storage_used: int = Field(default=0, sa_type=BigInteger)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )


class User(UserBase, table=True):
    """Default user table — ``bc_users``."""

    __tablename__ = "bc_users"


class CouponBase(SQLModel):
    """Base fields for a storage coupon."""

    id: int | None = Field(default=None, primary_key=True)
    code: str = Field(index=True, unique=True)
    name: str = Field(default="")
    storage_bonus: int = Field(default=0, sa_type=BigInteger)
    max_uses: int = Field(default=1)
    current_uses: int = Field(default=0)
    is_active: bool = Field(default=True)
    expires_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )


class Coupon(CouponBase, table=True):
    """Default coupon table — ``bc_coupons``."""

    __tablename__ = "bc_coupons"


class CouponRedemptionBase(SQLModel):
    """Base fields for a coupon redemption record."""

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    coupon_id: int = Field(index=True)
    storage_granted: int = Field(default=0, sa_type=BigInteger)
    redeemed_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )


class CouponRedemption(CouponRedemptionBase, table=True):
    """Default redemption table — ``bc_coupon_redemptions``.

    One row per (user, coupon); the unique constraint is the final guard
    against double crediting.
    """

    __tablename__ = "bc_coupon_redemptions"
    __table_args__ = (UniqueConstraint("user_id", "coupon_id"),)
