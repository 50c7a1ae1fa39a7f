"""ByteCloud: access control and delivery core for multi-tenant file storage.

Folder grants, quota accounting, metadata caching, public share links and
streaming delivery from an object store.
"""

__version__ = "0.1.0"

from bytecloud._bytecloud import ByteCloud
from bytecloud.access import AccessLevel
from bytecloud.blobs import BlobStore, InMemoryBlobStore, S3BlobStore, StoredBlob
from bytecloud.cache import CacheBackend, InMemoryCache, MetadataCache
from bytecloud.config import Settings
from bytecloud.delivery import (
    AiohttpResponseSink,
    BlobLocator,
    DeliveryPolicy,
    DeliveryProxy,
    DeliveryResult,
    DeliveryState,
    ResponseSink,
)
from bytecloud.exceptions import (
    ByteCloudError,
    CouponError,
    InvalidStateError,
    NotFoundError,
    NotFoundOrDeniedError,
    PermissionDeniedError,
    QuotaExceededError,
    TransientCacheError,
    TransientDeliveryError,
    UpstreamError,
    UpstreamTimeoutError,
)
from bytecloud.notifications import (
    LoggingNotificationSender,
    Notification,
    NotificationSender,
)
from bytecloud.permissions import PermissionResolver
from bytecloud.quota import QuotaLedger, format_bytes
from bytecloud.thumbnails import Thumbnail, ThumbnailGenerator
from bytecloud.types import (
    DeleteResult,
    FileInfo,
    FileRecord,
    FolderDeleteResult,
    FolderInfo,
    FolderRecord,
    GrantRecord,
    GrantResult,
    MixedDeleteResult,
    PublicShareResult,
    RedeemResult,
    ShareDescriptor,
    StorageStats,
    SweepResult,
    UploadItem,
    UploadResult,
    UserRecord,
)

__all__ = [
    "AccessLevel",
    "AiohttpResponseSink",
    "BlobLocator",
    "BlobStore",
    "ByteCloud",
    "ByteCloudError",
    "CacheBackend",
    "CouponError",
    "DeleteResult",
    "DeliveryPolicy",
    "DeliveryProxy",
    "DeliveryResult",
    "DeliveryState",
    "FileInfo",
    "FileRecord",
    "FolderDeleteResult",
    "FolderInfo",
    "FolderRecord",
    "GrantRecord",
    "GrantResult",
    "InMemoryBlobStore",
    "InMemoryCache",
    "InvalidStateError",
    "LoggingNotificationSender",
    "MetadataCache",
    "MixedDeleteResult",
    "NotFoundError",
    "NotFoundOrDeniedError",
    "Notification",
    "NotificationSender",
    "PermissionDeniedError",
    "PermissionResolver",
    "PublicShareResult",
    "QuotaExceededError",
    "QuotaLedger",
    "RedeemResult",
    "ResponseSink",
    "S3BlobStore",
    "Settings",
    "ShareDescriptor",
    "StorageStats",
    "StoredBlob",
    "SweepResult",
    "Thumbnail",
    "ThumbnailGenerator",
    "TransientCacheError",
    "TransientDeliveryError",
    "UploadItem",
    "UploadResult",
    "UpstreamError",
    "UpstreamTimeoutError",
    "UserRecord",
    "__version__",
    "format_bytes",
]
