"""Small helpers shared across services."""

from __future__ import annotations

import posixpath
import uuid
from datetime import UTC, datetime

INLINE_MIME_PREFIXES = ("image/", "video/")
INLINE_MIME_TYPES = frozenset({"application/pdf"})

_DOCUMENT_MARKERS = ("document", "sheet", "presentation")

MIME_CATEGORIES = ("images", "videos", "audio", "documents", "archives", "other")


def now_utc() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def is_inline_type(mime_type: str) -> bool:
    """True for MIME types eligible for inline display: images, videos and PDF."""
    mime = (mime_type or "").lower()
    return mime.startswith(INLINE_MIME_PREFIXES) or mime in INLINE_MIME_TYPES


def mime_category(mime_type: str) -> str:
    """Bucket a MIME type into one of ``MIME_CATEGORIES``."""
    mime = (mime_type or "").lower()
    if mime.startswith("image/"):
        return "images"
    if mime.startswith("video/"):
        return "videos"
    if mime.startswith("audio/"):
        return "audio"
    if mime == "application/pdf" or any(m in mime for m in _DOCUMENT_MARKERS):
        return "documents"
    if mime.startswith(("application/zip", "application/x-")):
        return "archives"
    return "other"


def unique_blob_name(original_name: str) -> str:
    """Return ``{uuid4}{ext}`` so blob names never collide across users."""
    _, ext = posixpath.splitext(original_name)
    return f"{uuid.uuid4()}{ext.lower()}"


def clean_name(name: str | None) -> str:
    """Strip a user-supplied folder name; raise ``ValueError`` if empty."""
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValueError("Folder name is required")
    if "/" in cleaned or "\0" in cleaned:
        raise ValueError("Folder name contains invalid characters")
    return cleaned
