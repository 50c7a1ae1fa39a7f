"""DeliveryProxy — streams blob bytes from the object store to a caller.

The proxy never redirects: it fetches a short-lived signed URL, opens an
upstream GET and copies chunks to a ``ResponseSink`` as they arrive.
Once the sink has sent its headers the status is final; any later
failure can only cut the response short.

State progression::

    AUTHORIZING -> RESOLVING_URL -> CONNECTING -> STREAMING
        -> COMPLETED | ABORTED | TIMED_OUT | UPSTREAM_ERROR
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Protocol, runtime_checkable
from urllib.parse import quote

import aiohttp
from aiohttp import web

from .config import Settings
from .exceptions import UpstreamError
from .utils import is_inline_type

if TYPE_CHECKING:
    from collections.abc import Mapping

    from .blobs.protocol import BlobStore
    from .cache.metadata import MetadataCache

logger = logging.getLogger(__name__)


class DeliveryState(str, Enum):
    AUTHORIZING = "authorizing"
    RESOLVING_URL = "resolving_url"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    TIMED_OUT = "timed_out"
    UPSTREAM_ERROR = "upstream_error"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset(
    {
        DeliveryState.COMPLETED,
        DeliveryState.ABORTED,
        DeliveryState.TIMED_OUT,
        DeliveryState.UPSTREAM_ERROR,
    }
)


def _ascii_fallback(filename: str) -> str:
    cleaned = "".join(
        ch if 32 <= ord(ch) < 127 and ch not in '"\\' else "_" for ch in filename
    )
    return cleaned or "download"


@dataclass(frozen=True)
class DeliveryPolicy:
    """Response headers for one delivery.

    The same policy applies to authenticated and public downloads: images,
    videos and PDFs are shown inline, everything else is an attachment.
    """

    mime_type: str
    filename: str
    inline: bool
    cache_control: str = "private, max-age=0"

    @classmethod
    def for_file(cls, mime_type: str, filename: str) -> DeliveryPolicy:
        mime_type = mime_type or "application/octet-stream"
        return cls(mime_type=mime_type, filename=filename, inline=is_inline_type(mime_type))

    @classmethod
    def for_thumbnail(cls, filename: str, mime_type: str = "image/jpeg") -> DeliveryPolicy:
        return cls(
            mime_type=mime_type,
            filename=f"thumb_{filename}",
            inline=True,
            cache_control="private, max-age=3600",
        )

    @property
    def content_disposition(self) -> str:
        """``Content-Disposition`` with an ASCII fallback and an RFC 5987 ``filename*``."""
        kind = "inline" if self.inline else "attachment"
        fallback = _ascii_fallback(self.filename)
        encoded = quote(self.filename, safe="")
        return f"{kind}; filename=\"{fallback}\"; filename*=UTF-8''{encoded}"

    def headers(self, content_length: int | None) -> dict[str, str]:
        headers = {
            "Content-Type": self.mime_type,
            "Content-Disposition": self.content_disposition,
            "Cache-Control": self.cache_control,
        }
        if content_length is not None:
            headers["Content-Length"] = str(content_length)
        return headers


@dataclass(frozen=True)
class BlobLocator:
    """Which blob to stream: a file's content or its thumbnail."""

    file_id: int
    blob_name: str
    size: int | None = None
    thumbnail: bool = False


@dataclass
class DeliveryResult:
    state: DeliveryState = DeliveryState.AUTHORIZING
    bytes_sent: int = 0
    status: int | None = None
    error: str | None = None


@runtime_checkable
class ResponseSink(Protocol):
    """Downstream side of a delivery (an HTTP response being written)."""

    @property
    def prepared(self) -> bool:
        """True once status and headers have been sent."""
        ...

    async def prepare(self, status: int, headers: Mapping[str, str]) -> None: ...

    async def write(self, chunk: bytes) -> None: ...

    async def write_eof(self) -> None: ...

    async def abort(self) -> None:
        """Cut the response short after headers were sent."""
        ...


class AiohttpResponseSink:
    """``ResponseSink`` over an ``aiohttp.web.StreamResponse``."""

    def __init__(self, request: web.Request) -> None:
        self._request = request
        self.response: web.StreamResponse | None = None

    @property
    def prepared(self) -> bool:
        return self.response is not None and self.response.prepared

    async def prepare(self, status: int, headers: Mapping[str, str]) -> None:
        self.response = web.StreamResponse(status=status, headers=dict(headers))
        await self.response.prepare(self._request)

    async def write(self, chunk: bytes) -> None:
        assert self.response is not None
        await self.response.write(chunk)

    async def write_eof(self) -> None:
        assert self.response is not None
        await self.response.write_eof()

    async def abort(self) -> None:
        if self.response is not None:
            self.response.force_close()
        transport = self._request.transport
        if transport is not None and not transport.is_closing():
            transport.close()


class DeliveryProxy:
    """Pass-through streaming from signed blob URLs with timeouts and cancellation.

    Owns its ``aiohttp.ClientSession`` unless one is injected.
    """

    def __init__(
        self,
        blobs: BlobStore,
        cache: MetadataCache,
        settings: Settings | None = None,
        *,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._blobs = blobs
        self._cache = cache
        self._settings = settings or Settings()
        self._http = http_session
        self._owns_http = http_session is None

    def _session(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
            self._owns_http = True
        return self._http

    async def close(self) -> None:
        if self._owns_http and self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None

    @property
    def timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(
            total=None,
            sock_connect=self._settings.upstream_connect_timeout,
            sock_read=self._settings.upstream_read_timeout,
        )

    async def resolve_url(self, locator: BlobLocator) -> str:
        """Signed URL for the locator, reused from cache within its short TTL."""
        ttl = self._settings.signed_url_ttl
        return await self._cache.get_download_url(
            locator.file_id,
            lambda: self._blobs.get_signed_url(locator.blob_name, ttl),
            thumbnail=locator.thumbnail,
        )

    async def stream(
        self,
        locator: BlobLocator,
        out: ResponseSink,
        policy: DeliveryPolicy,
        *,
        cancel: asyncio.Event | None = None,
    ) -> DeliveryResult:
        """Copy the blob behind *locator* to *out*.

        Setting *cancel*, or cancelling the task awaiting this call, tears
        the upstream connection down promptly.  Task cancellation is
        re-raised after cleanup; the event yields an ``ABORTED`` result.
        """
        result = DeliveryResult()
        transfer = asyncio.ensure_future(self._transfer(locator, out, policy, result))
        if cancel is None:
            await transfer
            return result

        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({transfer, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            transfer.cancel()
            raise
        finally:
            waiter.cancel()

        if not transfer.done():
            transfer.cancel()
            await asyncio.gather(transfer, return_exceptions=True)
            logger.info("Delivery of file %s cancelled by caller", locator.file_id)
            self._set_state(result, locator, DeliveryState.ABORTED)
            result.error = "cancelled"
            await self._cut(out)
            return result
        transfer.result()
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _set_state(result: DeliveryResult, locator: BlobLocator, state: DeliveryState) -> None:
        logger.debug(
            "Delivery of file %s: %s -> %s", locator.file_id, result.state.value, state.value
        )
        result.state = state

    async def _transfer(
        self,
        locator: BlobLocator,
        out: ResponseSink,
        policy: DeliveryPolicy,
        result: DeliveryResult,
    ) -> None:
        self._set_state(result, locator, DeliveryState.RESOLVING_URL)
        try:
            url = await self.resolve_url(locator)
        except UpstreamError as exc:
            logger.error("Could not sign URL for file %s: %s", locator.file_id, exc)
            self._set_state(result, locator, DeliveryState.UPSTREAM_ERROR)
            result.error = str(exc)
            await self._fail(out, result, 502, "Failed to access file")
            return

        self._set_state(result, locator, DeliveryState.CONNECTING)
        try:
            async with self._session().get(url, timeout=self.timeout) as upstream:
                if upstream.status != 200:
                    await self._upstream_status(locator, out, result, upstream.status)
                    return

                length = upstream.content_length
                if length is None and not locator.thumbnail:
                    length = locator.size
                try:
                    await out.prepare(200, policy.headers(length))
                except ConnectionError as exc:
                    self._client_gone(locator, result, exc)
                    return
                result.status = 200
                self._set_state(result, locator, DeliveryState.STREAMING)

                async for chunk in upstream.content.iter_chunked(self._settings.stream_chunk_size):
                    try:
                        await out.write(chunk)
                    except ConnectionError as exc:
                        self._client_gone(locator, result, exc)
                        return
                    result.bytes_sent += len(chunk)
                try:
                    await out.write_eof()
                except ConnectionError as exc:
                    self._client_gone(locator, result, exc)
                    return
        except asyncio.TimeoutError:
            logger.error("Upstream timeout delivering file %s", locator.file_id)
            self._set_state(result, locator, DeliveryState.TIMED_OUT)
            result.error = "timeout"
            await self._fail(out, result, 504, "Request timeout")
            return
        except aiohttp.ClientError as exc:
            logger.error("Upstream error delivering file %s: %s", locator.file_id, exc)
            self._set_state(result, locator, DeliveryState.UPSTREAM_ERROR)
            result.error = str(exc)
            await self._fail(out, result, 502, "Failed to access file")
            return

        self._set_state(result, locator, DeliveryState.COMPLETED)
        logger.debug("Delivered file %s (%d bytes)", locator.file_id, result.bytes_sent)

    async def _upstream_status(
        self,
        locator: BlobLocator,
        out: ResponseSink,
        result: DeliveryResult,
        status: int,
    ) -> None:
        logger.warning("Upstream returned %d for file %s", status, locator.file_id)
        if status in (401, 403):
            # A rejected signature must not be served again from cache.
            key = (
                self._cache.thumbnail_key(locator.file_id)
                if locator.thumbnail
                else self._cache.download_key(locator.file_id)
            )
            await self._cache.invalidate(key)
        self._set_state(result, locator, DeliveryState.UPSTREAM_ERROR)
        result.error = f"upstream status {status}"
        if status == 404:
            await self._fail(out, result, 404, "File not found")
        else:
            await self._fail(out, result, 502, "Failed to access file")

    def _client_gone(self, locator: BlobLocator, result: DeliveryResult, exc: Exception) -> None:
        logger.info("Client went away during delivery of file %s: %s", locator.file_id, exc)
        self._set_state(result, locator, DeliveryState.ABORTED)
        result.error = "client disconnected"

    async def _fail(
        self,
        out: ResponseSink,
        result: DeliveryResult,
        status: int,
        message: str,
    ) -> None:
        """Send an error status if still possible, otherwise truncate the response."""
        if out.prepared:
            await self._cut(out)
            return
        body = json.dumps({"error": message}).encode()
        result.status = status
        try:
            await out.prepare(
                status,
                {"Content-Type": "application/json", "Content-Length": str(len(body))},
            )
            await out.write(body)
            await out.write_eof()
        except ConnectionError:
            logger.debug("Client went away before error %d could be sent", status)

    @staticmethod
    async def _cut(out: ResponseSink) -> None:
        if not out.prepared:
            return
        try:
            await out.abort()
        except Exception:
            logger.debug("Error while aborting response", exc_info=True)
