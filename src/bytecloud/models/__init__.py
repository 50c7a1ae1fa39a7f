"""SQLModel database models for ByteCloud."""

from bytecloud.models.files import OrphanedBlob, StoredFile
from bytecloud.models.folders import Folder, FolderGrant
from bytecloud.models.users import (
    DEFAULT_QUOTA_BYTES,
    Coupon,
    CouponRedemption,
    User,
)

__all__ = [
    "DEFAULT_QUOTA_BYTES",
    "Coupon",
    "CouponRedemption",
    "Folder",
    "FolderGrant",
    "OrphanedBlob",
    "StoredFile",
    "User",
]
