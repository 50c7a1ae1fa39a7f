"""Record snapshots and result types."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime

    from .access import AccessLevel


# ---------------------------------------------------------------------------
# Record snapshots (immutable, session-independent, safe to cache)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UserRecord:
    """User quota fields."""

    id: int
    email: str
    name: str
    storage_quota: int
    storage_used: int


@dataclass(frozen=True)
class FolderRecord:
    """Folder metadata."""

    id: int
    owner_id: int
    name: str
    parent_folder_id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class FileRecord:
    """File metadata."""

    id: int
    owner_id: int
    folder_id: int | None
    name: str
    original_name: str
    mime_type: str
    size: int
    blob_id: str
    thumbnail_name: str | None = None
    thumbnail_blob_id: str | None = None
    has_thumbnail: bool = False
    download_count: int = 0
    public_share_token: str | None = None
    is_public: bool = False
    share_expires_at: datetime | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class GrantRecord:
    """A (folder, grantee, permission) authorization row."""

    folder_id: int
    grantee_id: int
    permission_type: str
    granted_by: int
    created_at: datetime | None = None


@dataclass(frozen=True)
class ShareDescriptor:
    """Public view of a shared file, valid while the file is public."""

    file_id: int
    file_name: str
    mime_type: str
    size: int
    owner_id: int
    has_thumbnail: bool = False
    download_count: int = 0
    expires_at: datetime | None = None

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    @property
    def is_video(self) -> bool:
        return self.mime_type.startswith("video/")


# ---------------------------------------------------------------------------
# Quota
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Admission:
    """Outcome of a batch quota admission check."""

    admitted: bool
    requested: int
    available: int
    quota: int
    used: int


@dataclass
class CategoryUsage:
    """File count and bytes for one MIME category."""

    count: int = 0
    size: int = 0


@dataclass
class RedemptionInfo:
    """A past coupon redemption."""

    code: str
    name: str
    storage_granted: int
    redeemed_at: datetime | None = None


@dataclass
class StorageStats:
    """Result of a storage status query."""

    quota: int
    used: int
    available: int
    percentage: int
    total_files: int = 0
    breakdown: dict[str, CategoryUsage] = field(default_factory=dict)
    recent_coupons: list[RedemptionInfo] = field(default_factory=list)


@dataclass
class RedeemResult:
    """Result of a successful coupon redemption."""

    code: str
    name: str
    storage_granted: int
    storage_granted_formatted: str
    new_quota: int


# ---------------------------------------------------------------------------
# Folders, grants and files
# ---------------------------------------------------------------------------


@dataclass
class FolderInfo:
    """Folder metadata as seen by a particular caller."""

    folder: FolderRecord
    access: AccessLevel
    subfolder_count: int = 0
    file_count: int = 0


@dataclass
class GrantResult:
    """Result of a share-folder call."""

    grant: GrantRecord
    created: bool
    grantee_email: str = ""
    folder_name: str = ""


@dataclass
class FileInfo:
    """File metadata as seen by a particular caller."""

    file: FileRecord
    access: AccessLevel


@dataclass
class UploadItem:
    """One file of an upload batch."""

    original_name: str
    data: bytes
    mime_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class UploadFailure:
    """A file of a batch that could not be stored."""

    original_name: str
    error: str


@dataclass
class UploadResult:
    """Result of a batch upload."""

    successful: list[FileRecord] = field(default_factory=list)
    failed: list[UploadFailure] = field(default_factory=list)

    @property
    def message(self) -> str:
        return (
            f"Upload completed. {len(self.successful)} files uploaded successfully, "
            f"{len(self.failed)} failed."
        )


@dataclass
class DeleteResult:
    """Result of a single or bulk delete."""

    deleted: list[int] = field(default_factory=list)
    not_found: list[int] = field(default_factory=list)
    orphaned_blobs: int = 0


@dataclass
class FolderDeleteResult:
    """Result of a bulk folder delete."""

    deleted: list[int] = field(default_factory=list)
    not_found: list[int] = field(default_factory=list)
    non_empty: list[int] = field(default_factory=list)
    revoked_grants: list[GrantRecord] = field(default_factory=list, repr=False)


@dataclass
class MixedDeleteResult:
    """Result of deleting files and folders in one call."""

    files: DeleteResult = field(default_factory=DeleteResult)
    folders: FolderDeleteResult = field(default_factory=FolderDeleteResult)


@dataclass
class PublicShareResult:
    """Result of creating a public share link."""

    token: str
    file_id: int
    expires_at: datetime
    expires_in_hours: int
    previous_token: str | None = None


@dataclass
class SweepResult:
    """Result of a maintenance sweep."""

    orphans_deleted: int = 0
    orphans_remaining: int = 0
    shares_expired: int = 0
