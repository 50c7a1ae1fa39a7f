"""Tests for S3BlobStore against a moto-mocked bucket."""

from __future__ import annotations

from typing import TYPE_CHECKING
from urllib.parse import parse_qs, urlparse

import boto3
import pytest
from moto import mock_aws

from bytecloud import BlobStore, UpstreamError
from bytecloud.blobs.s3 import S3BlobStore

if TYPE_CHECKING:
    from collections.abc import Iterator

BUCKET = "bytecloud-test"


@pytest.fixture
def s3_client(monkeypatch) -> Iterator:
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    with mock_aws():
        client = boto3.client("s3", region_name="us-east-1")
        client.create_bucket(Bucket=BUCKET)
        yield client


@pytest.fixture
def s3_store(s3_client) -> S3BlobStore:
    return S3BlobStore(BUCKET, client=s3_client)


class TestS3BlobStore:
    def test_satisfies_protocol(self, s3_store: S3BlobStore):
        assert isinstance(s3_store, BlobStore)

    async def test_put(self, s3_store: S3BlobStore, s3_client):
        blob = await s3_store.put(b"hello world", "abc.txt", "text/plain")

        assert blob.name == "abc.txt"
        assert blob.size == 11
        assert blob.blob_id
        assert blob.url.endswith(f"/{BUCKET}/abc.txt")
        obj = s3_client.get_object(Bucket=BUCKET, Key="abc.txt")
        assert obj["Body"].read() == b"hello world"
        assert obj["ContentType"] == "text/plain"

    async def test_signed_url(self, s3_store: S3BlobStore):
        await s3_store.put(b"data", "doc.pdf", "application/pdf")

        url = await s3_store.get_signed_url("doc.pdf", 600)

        parsed = urlparse(url)
        assert parsed.path.endswith("/doc.pdf")
        query = parse_qs(parsed.query)
        assert query.get("X-Amz-Expires") == ["600"] or "Expires" in query

    async def test_delete(self, s3_store: S3BlobStore, s3_client):
        blob = await s3_store.put(b"data", "gone.bin", "application/octet-stream")

        assert await s3_store.delete(blob.blob_id, blob.name)

        listing = s3_client.list_objects_v2(Bucket=BUCKET)
        assert listing.get("KeyCount", 0) == 0

    async def test_client_error_becomes_upstream_error(self, s3_client):
        store = S3BlobStore("no-such-bucket", client=s3_client)
        with pytest.raises(UpstreamError) as exc_info:
            await store.put(b"x", "a.txt", "text/plain")
        assert exc_info.value.status == 404
        assert "put_object" in str(exc_info.value)
