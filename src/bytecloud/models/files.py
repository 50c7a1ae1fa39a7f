"""StoredFile and OrphanedBlob models."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import BigInteger, DateTime
from sqlmodel import Field, SQLModel


class StoredFileBase(SQLModel):
    """Base fields for an uploaded file. Subclass with ``table=True`` for a concrete table.

    ``name`` is the unique blob name in the object store;
    ``original_name`` is what the uploader called the file.
    """

    id: int | None = Field(default=None, primary_key=True)
    owner_id: int = Field(index=True)
    folder_id: int | None = Field(default=None, index=True)
    name: str = Field(index=True, unique=True)
    original_name: str
    mime_type: str = Field(default="application/octet-stream")
    size: int = Field(default=0, sa_type=BigInteger)
    blob_id: str = Field(default="")
    blob_url: str | None = Field(default=None)
    thumbnail_name: str | None = Field(default=None)
    thumbnail_blob_id: str | None = Field(default=None)
    has_thumbnail: bool = Field(default=False)
    download_count: int = Field(default=0)
    public_share_token: str | None = Field(default=None, index=True, unique=True)
    is_public: bool = Field(default=False)
    share_expires_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )


class StoredFile(StoredFileBase, table=True):
    """Default file table — ``bc_files``."""

    __tablename__ = "bc_files"


class OrphanedBlobBase(SQLModel):
    """A blob whose metadata row is gone but whose deletion failed.

    Rows are drained by ``MaintenanceService.sweep_orphans``.
    """

    id: int | None = Field(default=None, primary_key=True)
    owner_id: int = Field(index=True)
    blob_id: str
    blob_name: str
    size: int = Field(default=0, sa_type=BigInteger)
    attempts: int = Field(default=0)
    last_error: str | None = Field(default=None)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )


class OrphanedBlob(OrphanedBlobBase, table=True):
    """Default orphan table — ``bc_orphaned_blobs``."""

    __tablename__ = "bc_orphaned_blobs"
