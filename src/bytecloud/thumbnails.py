"""Thumbnail generation collaborator.

Generating a thumbnail is best effort: an upload never fails because
its thumbnail could not be produced.
"""

from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Thumbnail:
    data: bytes
    mime_type: str = "image/jpeg"


@runtime_checkable
class ThumbnailGenerator(Protocol):
    """Produces a preview image for supported MIME types."""

    def supports(self, mime_type: str) -> bool: ...

    async def generate(self, data: bytes, mime_type: str) -> Thumbnail: ...


def thumbnail_blob_name(blob_name: str, thumbnail: Thumbnail) -> str:
    stem, _ = posixpath.splitext(blob_name)
    ext = ".png" if thumbnail.mime_type == "image/png" else ".jpg"
    return f"thumb_{stem}{ext}"


async def generate_thumbnail_safely(
    generator: ThumbnailGenerator | None,
    data: bytes,
    mime_type: str,
    original_name: str,
) -> Thumbnail | None:
    """Return a thumbnail, or None when unsupported or when generation fails."""
    if generator is None or not generator.supports(mime_type):
        return None
    try:
        return await generator.generate(data, mime_type)
    except Exception:
        logger.warning("Thumbnail generation failed for %s", original_name, exc_info=True)
        return None
