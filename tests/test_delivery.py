"""Tests for the DeliveryProxy and the download/view/thumbnail entry points."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from bytecloud import ByteCloud, InMemoryCache, Settings, Thumbnail, UploadItem
from bytecloud.blobs.protocol import StoredBlob
from bytecloud.cache.metadata import MetadataCache
from bytecloud.delivery import (
    AiohttpResponseSink,
    BlobLocator,
    DeliveryPolicy,
    DeliveryProxy,
    DeliveryState,
    ResponseSink,
)
from bytecloud.exceptions import InvalidStateError, NotFoundError, NotFoundOrDeniedError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncEngine

    from bytecloud import InMemoryBlobStore
    from bytecloud.types import UserRecord


PAYLOAD = bytes(range(256)) * 40  # 10 KiB


# ---------------------------------------------------------------------------
# Scripted upstream
# ---------------------------------------------------------------------------


class ScriptedBlobStore:
    """Signs every name to ``{base_url}/{name}`` on the scripted upstream."""

    def __init__(self) -> None:
        self.base_url = ""
        self.signed: list[str] = []

    async def put(self, data: bytes, name: str, mime_type: str) -> StoredBlob:
        return StoredBlob(blob_id=name, name=name, url=f"{self.base_url}/{name}", size=len(data))

    async def get_signed_url(self, name: str, ttl_seconds: int) -> str:
        self.signed.append(name)
        return f"{self.base_url}/{name}"

    async def delete(self, blob_id: str, name: str) -> bool:
        return True


def scripted_app(release: asyncio.Event) -> web.Application:
    async def ok(request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(headers={"Content-Length": str(len(PAYLOAD))})
        await response.prepare(request)
        for start in range(0, len(PAYLOAD), 1024):
            await response.write(PAYLOAD[start : start + 1024])
        await response.write_eof()
        return response

    async def missing(request: web.Request) -> web.Response:
        raise web.HTTPNotFound()

    async def broken(request: web.Request) -> web.Response:
        raise web.HTTPInternalServerError()

    async def forbidden(request: web.Request) -> web.Response:
        raise web.HTTPForbidden()

    async def slow_headers(request: web.Request) -> web.Response:
        await asyncio.wait_for(release.wait(), 5)
        return web.Response(body=PAYLOAD)

    async def stall(request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(headers={"Content-Length": str(len(PAYLOAD))})
        await response.prepare(request)
        await response.write(PAYLOAD[:1024])
        await asyncio.wait_for(release.wait(), 5)
        return response

    async def endless(request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse()
        await response.prepare(request)
        while not release.is_set():
            await response.write(b"x" * 1024)
            await asyncio.sleep(0.01)
        return response

    app = web.Application()
    app.router.add_get("/ok", ok)
    app.router.add_get("/missing", missing)
    app.router.add_get("/broken", broken)
    app.router.add_get("/forbidden", forbidden)
    app.router.add_get("/slow", slow_headers)
    app.router.add_get("/stall", stall)
    app.router.add_get("/endless", endless)
    return app


@pytest.fixture
async def upstream() -> AsyncIterator[tuple[ScriptedBlobStore, asyncio.Event]]:
    release = asyncio.Event()
    server = TestServer(scripted_app(release))
    await server.start_server()
    blobs = ScriptedBlobStore()
    blobs.base_url = str(server.make_url("")).rstrip("/")
    yield blobs, release
    release.set()
    await server.close()


@pytest.fixture
def proxy_cache() -> InMemoryCache:
    return InMemoryCache()


@pytest.fixture
async def proxy(
    upstream: tuple[ScriptedBlobStore, asyncio.Event],
    proxy_cache: InMemoryCache,
    http_session: aiohttp.ClientSession,
) -> DeliveryProxy:
    settings = Settings(upstream_read_timeout=0.3, stream_chunk_size=1024)
    blobs, _ = upstream
    return DeliveryProxy(
        blobs, MetadataCache(proxy_cache, settings), settings, http_session=http_session
    )


POLICY = DeliveryPolicy.for_file("application/octet-stream", "data.bin")


async def wait_for_bytes(sink, minimum: int = 1) -> None:
    for _ in range(500):
        if len(sink.chunks) >= minimum:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("no bytes delivered")


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


class TestDeliveryPolicy:
    @pytest.mark.parametrize(
        ("mime", "inline"),
        [
            ("image/png", True),
            ("video/mp4", True),
            ("application/pdf", True),
            ("application/zip", False),
            ("text/plain", False),
        ],
    )
    def test_inline_types(self, mime, inline):
        assert DeliveryPolicy.for_file(mime, "f").inline is inline

    def test_disposition_encodes_unicode_names(self):
        policy = DeliveryPolicy.for_file("application/pdf", 'résumé "final".pdf')
        assert policy.content_disposition == (
            "inline; filename=\"r_sum_ _final_.pdf\"; "
            "filename*=UTF-8''r%C3%A9sum%C3%A9%20%22final%22.pdf"
        )

    def test_attachment(self):
        policy = DeliveryPolicy.for_file("application/zip", "backup.zip")
        assert policy.content_disposition.startswith('attachment; filename="backup.zip"')

    def test_thumbnail_policy(self):
        policy = DeliveryPolicy.for_thumbnail("cat.png")
        headers = policy.headers(None)
        assert headers["Content-Type"] == "image/jpeg"
        assert headers["Cache-Control"] == "private, max-age=3600"
        assert 'filename="thumb_cat.png"' in headers["Content-Disposition"]
        assert "Content-Length" not in headers

    def test_terminal_states(self):
        assert DeliveryState.COMPLETED.terminal
        assert DeliveryState.TIMED_OUT.terminal
        assert not DeliveryState.STREAMING.terminal


# ---------------------------------------------------------------------------
# Proxy against a scripted upstream
# ---------------------------------------------------------------------------


class TestProxy:
    async def test_pass_through(self, proxy: DeliveryProxy, sink):
        result = await proxy.stream(BlobLocator(1, "ok"), sink, POLICY)

        assert result.state is DeliveryState.COMPLETED
        assert result.status == 200
        assert result.bytes_sent == len(PAYLOAD)
        assert sink.body == PAYLOAD
        assert sink.eof
        assert sink.headers["Content-Length"] == str(len(PAYLOAD))

    async def test_signed_url_reused_from_cache(
        self, proxy: DeliveryProxy, upstream, make_sink
    ):
        blobs, _ = upstream
        await proxy.stream(BlobLocator(1, "ok"), make_sink(), POLICY)
        await proxy.stream(BlobLocator(1, "ok"), make_sink(), POLICY)
        assert blobs.signed == ["ok"]

    async def test_upstream_404(self, proxy: DeliveryProxy, sink):
        result = await proxy.stream(BlobLocator(1, "missing"), sink, POLICY)

        assert result.state is DeliveryState.UPSTREAM_ERROR
        assert sink.status == 404
        assert json.loads(sink.body) == {"error": "File not found"}

    async def test_upstream_500_is_bad_gateway(self, proxy: DeliveryProxy, sink):
        result = await proxy.stream(BlobLocator(1, "broken"), sink, POLICY)

        assert result.state is DeliveryState.UPSTREAM_ERROR
        assert result.status == 502
        assert json.loads(sink.body) == {"error": "Failed to access file"}

    async def test_rejected_signature_drops_cached_url(
        self, proxy: DeliveryProxy, proxy_cache: InMemoryCache, sink
    ):
        result = await proxy.stream(BlobLocator(9, "forbidden"), sink, POLICY)

        assert result.status == 502
        assert "download:9" not in proxy_cache

    async def test_timeout_before_headers(self, proxy: DeliveryProxy, sink):
        result = await proxy.stream(BlobLocator(1, "slow"), sink, POLICY)

        assert result.state is DeliveryState.TIMED_OUT
        assert sink.status == 504
        assert json.loads(sink.body) == {"error": "Request timeout"}

    async def test_stall_after_headers_cuts_response(self, proxy: DeliveryProxy, sink):
        result = await proxy.stream(BlobLocator(1, "stall"), sink, POLICY)

        assert result.state is DeliveryState.TIMED_OUT
        assert sink.status == 200
        assert sink.aborted
        assert not sink.eof
        assert result.bytes_sent == 1024

    async def test_client_disconnect(self, proxy: DeliveryProxy, make_sink):
        sink = make_sink(fail_after=1)
        result = await proxy.stream(BlobLocator(1, "ok"), sink, POLICY)

        assert result.state is DeliveryState.ABORTED
        assert result.error == "client disconnected"
        assert len(sink.chunks) == 1
        assert result.bytes_sent == len(sink.body) < len(PAYLOAD)

    async def test_cancel_event(self, proxy: DeliveryProxy, sink):
        cancel = asyncio.Event()
        task = asyncio.ensure_future(
            proxy.stream(BlobLocator(1, "endless"), sink, POLICY, cancel=cancel)
        )
        await wait_for_bytes(sink)
        cancel.set()

        result = await asyncio.wait_for(task, 2)

        assert result.state is DeliveryState.ABORTED
        assert result.error == "cancelled"
        assert sink.aborted

    async def test_task_cancellation_propagates(self, proxy: DeliveryProxy, sink):
        task = asyncio.ensure_future(proxy.stream(BlobLocator(1, "endless"), sink, POLICY))
        await wait_for_bytes(sink)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

    async def test_timeout_configuration(self, proxy: DeliveryProxy):
        timeout = proxy.timeout
        assert timeout.total is None
        assert timeout.sock_read == 0.3
        assert timeout.sock_connect == 10.0


# ---------------------------------------------------------------------------
# Facade entry points
# ---------------------------------------------------------------------------


class TestDownload:
    async def test_round_trip(self, cloud: ByteCloud, alice: UserRecord, sink):
        result = await cloud.upload_files(
            alice.id, [UploadItem("résumé.pdf", PAYLOAD, "application/pdf")]
        )
        file = result.successful[0]

        delivered = await cloud.download(alice.id, file.id, sink)

        assert delivered.state is DeliveryState.COMPLETED
        assert sink.body == PAYLOAD
        assert sink.headers["Content-Type"] == "application/pdf"
        assert sink.headers["Content-Length"] == str(len(PAYLOAD))
        assert sink.headers["Content-Disposition"].startswith("inline;")
        assert "filename*=UTF-8''r%C3%A9sum%C3%A9.pdf" in sink.headers["Content-Disposition"]

    async def test_counts_downloads(self, cloud: ByteCloud, alice: UserRecord, make_sink):
        result = await cloud.upload_files(alice.id, [UploadItem("a.zip", b"PK", "application/zip")])
        file = result.successful[0]

        await cloud.download(alice.id, file.id, make_sink())
        await cloud.download(alice.id, file.id, make_sink())

        info = await cloud.get_file(alice.id, file.id)
        assert info.file.download_count == 2

    async def test_attachment_for_other_types(self, cloud: ByteCloud, alice: UserRecord, sink):
        result = await cloud.upload_files(alice.id, [UploadItem("a.zip", b"PK", "application/zip")])
        await cloud.download(alice.id, result.successful[0].id, sink)
        assert sink.headers["Content-Disposition"].startswith('attachment; filename="a.zip"')

    async def test_stranger_cannot_download(
        self, cloud: ByteCloud, alice: UserRecord, bob: UserRecord, sink
    ):
        result = await cloud.upload_files(alice.id, [UploadItem("a.txt", b"secret")])
        with pytest.raises(NotFoundOrDeniedError):
            await cloud.download(bob.id, result.successful[0].id, sink)
        assert not sink.prepared

    async def test_view_grantee_can_download(
        self, cloud: ByteCloud, alice: UserRecord, bob: UserRecord, sink
    ):
        folder = await cloud.create_folder(alice.id, "Shared")
        await cloud.share_folder(alice.id, folder.id, bob.email, "view")
        result = await cloud.upload_files(alice.id, [UploadItem("a.txt", b"hello")], folder.id)

        delivered = await cloud.download(bob.id, result.successful[0].id, sink)

        assert delivered.state is DeliveryState.COMPLETED
        assert sink.body == b"hello"

    async def test_missing_blob_is_404(
        self, cloud: ByteCloud, alice: UserRecord, blob_store: InMemoryBlobStore, sink
    ):
        result = await cloud.upload_files(alice.id, [UploadItem("a.txt", b"hello")])
        file = result.successful[0]
        await blob_store.delete(file.blob_id, file.name)

        delivered = await cloud.download(alice.id, file.id, sink)

        assert delivered.state is DeliveryState.UPSTREAM_ERROR
        assert sink.status == 404


class TestView:
    async def test_view_does_not_count(self, cloud: ByteCloud, alice: UserRecord, sink):
        result = await cloud.upload_files(alice.id, [UploadItem("p.png", b"\x89PNG", "image/png")])
        file = result.successful[0]

        delivered = await cloud.view(alice.id, file.id, sink)

        assert delivered.state is DeliveryState.COMPLETED
        assert sink.headers["Content-Disposition"].startswith("inline;")
        assert (await cloud.get_file(alice.id, file.id)).file.download_count == 0

    async def test_view_rejects_non_inline_types(self, cloud: ByteCloud, alice: UserRecord, sink):
        result = await cloud.upload_files(alice.id, [UploadItem("a.txt", b"x", "text/plain")])
        with pytest.raises(InvalidStateError):
            await cloud.view(alice.id, result.successful[0].id, sink)
        assert not sink.prepared

    async def test_thumbnail_not_available(self, cloud: ByteCloud, alice: UserRecord, sink):
        result = await cloud.upload_files(alice.id, [UploadItem("p.png", b"x", "image/png")])
        with pytest.raises(NotFoundError, match="Thumbnail not available"):
            await cloud.thumbnail(alice.id, result.successful[0].id, sink)


class StaticThumbnailer:
    def supports(self, mime_type: str) -> bool:
        return mime_type.startswith("image/")

    async def generate(self, data: bytes, mime_type: str) -> Thumbnail:
        return Thumbnail(b"THUMB:" + data[:4])


class TestThumbnail:
    @pytest.fixture
    async def thumb_cloud(
        self,
        async_engine: AsyncEngine,
        blob_store: InMemoryBlobStore,
        blob_server: TestServer,
        settings: Settings,
        http_session: aiohttp.ClientSession,
    ) -> AsyncIterator[ByteCloud]:
        c = ByteCloud(
            engine=async_engine,
            blobs=blob_store,
            cache=InMemoryCache(),
            thumbnails=StaticThumbnailer(),
            settings=settings,
            http_session=http_session,
        )
        yield c
        await c.close()

    async def test_streams_thumbnail(self, thumb_cloud: ByteCloud, sink):
        user = await thumb_cloud.create_user("t@example.com")
        result = await thumb_cloud.upload_files(
            user.id, [UploadItem("cat.png", b"\x89PNGDATA", "image/png")]
        )
        file = result.successful[0]

        delivered = await thumb_cloud.thumbnail(user.id, file.id, sink)

        assert delivered.state is DeliveryState.COMPLETED
        assert sink.body == b"THUMB:\x89PNG"
        assert sink.headers["Content-Type"] == "image/jpeg"
        assert sink.headers["Cache-Control"] == "private, max-age=3600"
        assert (await thumb_cloud.get_file(user.id, file.id)).file.download_count == 0


class TestPublicDelivery:
    async def test_public_download_counts(self, cloud: ByteCloud, alice: UserRecord, sink):
        result = await cloud.upload_files(
            alice.id, [UploadItem("a.zip", b"PKDATA", "application/zip")]
        )
        file = result.successful[0]
        share = await cloud.create_public_share(alice.id, file.id)

        delivered = await cloud.public_download(share.token, sink)

        assert delivered.state is DeliveryState.COMPLETED
        assert sink.body == b"PKDATA"
        assert sink.headers["Content-Disposition"].startswith("attachment;")
        assert (await cloud.get_file(alice.id, file.id)).file.download_count == 1

    async def test_public_view(self, cloud: ByteCloud, alice: UserRecord, sink):
        result = await cloud.upload_files(alice.id, [UploadItem("p.png", b"\x89PNG", "image/png")])
        share = await cloud.create_public_share(alice.id, result.successful[0].id)

        delivered = await cloud.public_view(share.token, sink)

        assert delivered.state is DeliveryState.COMPLETED
        assert sink.body == b"\x89PNG"

    async def test_revoked_token(self, cloud: ByteCloud, alice: UserRecord, sink):
        result = await cloud.upload_files(alice.id, [UploadItem("a.txt", b"x")])
        file = result.successful[0]
        share = await cloud.create_public_share(alice.id, file.id)
        await cloud.revoke_public_share(alice.id, file.id)

        with pytest.raises(NotFoundError):
            await cloud.public_download(share.token, sink)
        assert not sink.prepared


class TestAiohttpSink:
    async def test_serves_through_aiohttp(
        self, cloud: ByteCloud, alice: UserRecord, http_session: aiohttp.ClientSession
    ):
        result = await cloud.upload_files(
            alice.id, [UploadItem("big.bin", PAYLOAD * 10, "application/octet-stream")]
        )
        file_id = result.successful[0].id

        async def handler(request: web.Request) -> web.StreamResponse:
            out = AiohttpResponseSink(request)
            assert isinstance(out, ResponseSink)
            await cloud.download(alice.id, file_id, out)
            assert out.response is not None
            return out.response

        app = web.Application()
        app.router.add_get("/download", handler)
        server = TestServer(app)
        await server.start_server()
        try:
            async with http_session.get(server.make_url("/download")) as response:
                body = await response.read()
                assert response.status == 200
                assert response.headers["Content-Disposition"].startswith("attachment;")
        finally:
            await server.close()

        assert body == PAYLOAD * 10
