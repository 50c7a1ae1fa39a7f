"""Shared fixtures for ByteCloud tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import aiohttp
import pytest
from aiohttp.test_utils import TestServer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

import bytecloud.models  # noqa: F401
from bytecloud import ByteCloud, InMemoryBlobStore, InMemoryCache, Settings
from bytecloud.blobs.memory import create_blob_app
from bytecloud.blobs.protocol import StoredBlob
from bytecloud.exceptions import UpstreamError
from bytecloud.notifications import LoggingNotificationSender
from bytecloud.store import MetadataStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

    from sqlalchemy.ext.asyncio import AsyncEngine

    from bytecloud.types import UserRecord


class RecordingSink:
    """In-memory ``ResponseSink`` that records what a delivery wrote."""

    def __init__(self, *, fail_after: int | None = None) -> None:
        self.status: int | None = None
        self.headers: dict[str, str] = {}
        self.chunks: list[bytes] = []
        self.eof = False
        self.aborted = False
        self._fail_after = fail_after

    @property
    def prepared(self) -> bool:
        return self.status is not None

    async def prepare(self, status: int, headers: Mapping[str, str]) -> None:
        self.status = status
        self.headers = dict(headers)

    async def write(self, chunk: bytes) -> None:
        if self._fail_after is not None and len(self.chunks) >= self._fail_after:
            raise ConnectionResetError("client went away")
        self.chunks.append(chunk)

    async def write_eof(self) -> None:
        self.eof = True

    async def abort(self) -> None:
        self.aborted = True

    @property
    def body(self) -> bytes:
        return b"".join(self.chunks)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def make_sink() -> type[RecordingSink]:
    return RecordingSink


@pytest.fixture
def settings() -> Settings:
    return Settings(notification_backoff=0.0)


@pytest.fixture
async def async_engine() -> AsyncIterator[AsyncEngine]:
    """Async in-memory SQLite engine with all tables created."""
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
async def async_session(async_engine: AsyncEngine) -> AsyncIterator[AsyncSession]:
    """Async SQLModel session, rolled back after each test."""
    factory = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with factory() as session:
        yield session


@pytest.fixture
def store() -> MetadataStore:
    return MetadataStore()


@pytest.fixture
def blob_store() -> InMemoryBlobStore:
    return InMemoryBlobStore(secret=b"test-secret")


@pytest.fixture
async def blob_server(blob_store: InMemoryBlobStore) -> AsyncIterator[TestServer]:
    """Serve ``blob_store`` over HTTP so signed URLs resolve to real responses."""
    server = TestServer(create_blob_app(blob_store, chunk_size=1024))
    await server.start_server()
    blob_store.base_url = str(server.make_url("")).rstrip("/")
    yield server
    await server.close()


@pytest.fixture
async def http_session() -> AsyncIterator[aiohttp.ClientSession]:
    async with aiohttp.ClientSession() as session:
        yield session


@pytest.fixture
def notifier() -> LoggingNotificationSender:
    return LoggingNotificationSender()


@pytest.fixture
def cache_backend() -> InMemoryCache:
    return InMemoryCache()


@pytest.fixture
async def cloud(
    async_engine: AsyncEngine,
    blob_store: InMemoryBlobStore,
    blob_server: TestServer,
    cache_backend: InMemoryCache,
    notifier: LoggingNotificationSender,
    settings: Settings,
    http_session: aiohttp.ClientSession,
) -> AsyncIterator[ByteCloud]:
    c = ByteCloud(
        engine=async_engine,
        blobs=blob_store,
        cache=cache_backend,
        notifier=notifier,
        settings=settings,
        http_session=http_session,
    )
    yield c
    await c.close()


@pytest.fixture
async def alice(cloud: ByteCloud) -> UserRecord:
    return await cloud.create_user("alice@example.com", "Alice")


@pytest.fixture
async def bob(cloud: ByteCloud) -> UserRecord:
    return await cloud.create_user("bob@example.com", "Bob")


@pytest.fixture
async def carol(cloud: ByteCloud) -> UserRecord:
    return await cloud.create_user("carol@example.com", "Carol")


class FlakyBlobStore(InMemoryBlobStore):
    """InMemoryBlobStore that can be told to fail puts and deletes."""

    def __init__(self) -> None:
        super().__init__(secret=b"test-secret")
        self.fail_deletes = False

    async def put(self, data: bytes, name: str, mime_type: str) -> StoredBlob:
        if data.startswith(b"FAIL"):
            raise UpstreamError("blob store rejected the upload", status=503)
        return await super().put(data, name, mime_type)

    async def delete(self, blob_id: str, name: str) -> bool:
        if self.fail_deletes:
            raise UpstreamError("blob store unreachable")
        return await super().delete(blob_id, name)


@pytest.fixture
def flaky_blobs() -> FlakyBlobStore:
    return FlakyBlobStore()


@pytest.fixture
async def flaky_cloud(
    async_engine: AsyncEngine,
    flaky_blobs: FlakyBlobStore,
    settings: Settings,
) -> AsyncIterator[ByteCloud]:
    c = ByteCloud(
        engine=async_engine,
        blobs=flaky_blobs,
        cache=InMemoryCache(),
        settings=settings,
    )
    yield c
    await c.close()
