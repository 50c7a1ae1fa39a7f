"""BlobStore protocol — the opaque object store behind files and thumbnails."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class StoredBlob:
    """Identity of a blob after a successful ``put``."""

    blob_id: str
    name: str
    url: str
    size: int


@runtime_checkable
class BlobStore(Protocol):
    """Put, sign and delete blobs addressed by ``(blob_id, name)``.

    ``put`` must only return once the blob is durable.  ``delete``
    returns True when the blob is gone and raises ``UpstreamError`` when
    the store could not be reached.
    """

    async def put(self, data: bytes, name: str, mime_type: str) -> StoredBlob: ...

    async def get_signed_url(self, name: str, ttl_seconds: int) -> str: ...

    async def delete(self, blob_id: str, name: str) -> bool: ...
