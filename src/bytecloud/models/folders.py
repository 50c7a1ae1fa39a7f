"""Folder and FolderGrant models."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel


class FolderBase(SQLModel):
    """Base fields for a folder. Subclass with ``table=True`` for a concrete table."""

    id: int | None = Field(default=None, primary_key=True)
    owner_id: int = Field(index=True)
    name: str
    parent_folder_id: int | None = Field(default=None, index=True)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )


class Folder(FolderBase, table=True):
    """Default folder table — ``bc_folders``."""

    __tablename__ = "bc_folders"


class FolderGrantBase(SQLModel):
    """Base fields for a folder grant.

    A grant gives ``grantee_id`` access to one folder and the files
    directly inside it.  Child folders are governed by their own grants.
    """

    id: int | None = Field(default=None, primary_key=True)
    folder_id: int = Field(index=True)
    grantee_id: int = Field(index=True)
    permission_type: str = Field(default="view")
    granted_by: int
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )


class FolderGrant(FolderGrantBase, table=True):
    """Default grant table — ``bc_folder_grants``."""

    __tablename__ = "bc_folder_grants"
    __table_args__ = (UniqueConstraint("folder_id", "grantee_id"),)
