"""InMemoryBlobStore — dict-backed blob store with HMAC-signed URLs.

Signed URLs point at ``base_url``; ``create_blob_app`` builds an aiohttp
application that verifies the signature and serves the bytes, so the
delivery proxy can be exercised end to end without a cloud account.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import time
import uuid
from typing import TYPE_CHECKING
from urllib.parse import quote

from aiohttp import web

from .protocol import StoredBlob

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class InMemoryBlobStore:
    """Implements ``BlobStore`` over a dict of ``name -> (blob_id, mime, bytes)``."""

    def __init__(
        self,
        base_url: str = "http://blobs.invalid",
        *,
        secret: bytes | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._secret = secret or secrets.token_bytes(32)
        self._clock = clock or time.time
        self._blobs: dict[str, tuple[str, str, bytes]] = {}

    # ------------------------------------------------------------------
    # BlobStore
    # ------------------------------------------------------------------

    async def put(self, data: bytes, name: str, mime_type: str) -> StoredBlob:
        blob_id = uuid.uuid4().hex
        self._blobs[name] = (blob_id, mime_type, bytes(data))
        logger.debug("Stored blob %s (%d bytes)", name, len(data))
        return StoredBlob(
            blob_id=blob_id,
            name=name,
            url=f"{self.base_url}/file/{quote(name)}",
            size=len(data),
        )

    async def get_signed_url(self, name: str, ttl_seconds: int) -> str:
        expires = int(self._clock()) + ttl_seconds
        signature = self._sign(name, expires)
        return f"{self.base_url}/file/{quote(name)}?expires={expires}&signature={signature}"

    async def delete(self, blob_id: str, name: str) -> bool:
        entry = self._blobs.get(name)
        if entry is None or entry[0] != blob_id:
            return False
        del self._blobs[name]
        return True

    # ------------------------------------------------------------------
    # Inspection helpers
    # ------------------------------------------------------------------

    def get(self, name: str) -> tuple[str, bytes] | None:
        """Return ``(mime_type, data)`` for *name*, or ``None``."""
        entry = self._blobs.get(name)
        if entry is None:
            return None
        return entry[1], entry[2]

    def __contains__(self, name: str) -> bool:
        return name in self._blobs

    def __len__(self) -> int:
        return len(self._blobs)

    def verify(self, name: str, expires: int, signature: str) -> bool:
        """True if *signature* matches and the URL has not expired."""
        if expires < int(self._clock()):
            return False
        return hmac.compare_digest(self._sign(name, expires), signature)

    def _sign(self, name: str, expires: int) -> str:
        payload = f"{name}:{expires}".encode()
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()


def create_blob_app(store: InMemoryBlobStore, *, chunk_size: int = 64 * 1024) -> web.Application:
    """aiohttp app serving ``GET /file/{name}`` for signed URLs of *store*."""

    async def serve(request: web.Request) -> web.StreamResponse:
        name = request.match_info["name"]
        try:
            expires = int(request.query.get("expires", "0"))
        except ValueError:
            expires = 0
        if not store.verify(name, expires, request.query.get("signature", "")):
            raise web.HTTPForbidden(text="invalid or expired signature")
        entry = store.get(name)
        if entry is None:
            raise web.HTTPNotFound(text="blob not found")
        mime_type, data = entry
        response = web.StreamResponse(
            status=200,
            headers={"Content-Type": mime_type, "Content-Length": str(len(data))},
        )
        await response.prepare(request)
        for start in range(0, len(data), chunk_size):
            await response.write(data[start : start + chunk_size])
        await response.write_eof()
        return response

    app = web.Application()
    app.router.add_get("/file/{name}", serve)
    return app
