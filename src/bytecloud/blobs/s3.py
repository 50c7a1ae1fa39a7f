"""S3BlobStore — S3-compatible object storage via boto3.

boto3 is synchronous; every call runs in a worker thread so the event
loop is never blocked on network I/O.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

import boto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    ReadTimeoutError,
)

from bytecloud.exceptions import UpstreamError, UpstreamTimeoutError

from .protocol import StoredBlob

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class S3BlobStore:
    """Implements ``BlobStore`` on an S3 bucket (AWS, MinIO, Backblaze B2 S3 API)."""

    def __init__(
        self,
        bucket: str,
        *,
        client: Any | None = None,
        region_name: str | None = None,
        endpoint_url: str | None = None,
        aws_access_key_id: str | None = None,
        aws_secret_access_key: str | None = None,
    ) -> None:
        self.bucket = bucket
        self._client = client or boto3.client(
            "s3",
            region_name=region_name,
            endpoint_url=endpoint_url,
            aws_access_key_id=aws_access_key_id,
            aws_secret_access_key=aws_secret_access_key,
        )

    async def _call(self, fn: Callable[..., Any], **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, **kwargs)
        except (ConnectTimeoutError, ReadTimeoutError) as exc:
            raise UpstreamTimeoutError(f"S3 {fn.__name__} timed out: {exc}") from exc
        except (ClientError, BotoCoreError) as exc:
            status = None
            if isinstance(exc, ClientError):
                status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            raise UpstreamError(f"S3 {fn.__name__} failed: {exc}", status=status) from exc

    async def put(self, data: bytes, name: str, mime_type: str) -> StoredBlob:
        logger.info("Uploading blob to s3://%s/%s", self.bucket, name)
        response = await self._call(
            self._client.put_object,
            Bucket=self.bucket,
            Key=name,
            Body=data,
            ContentType=mime_type,
        )
        blob_id = response.get("VersionId") or response.get("ETag", "").strip('"') or name
        url = f"{self._client.meta.endpoint_url}/{self.bucket}/{name}"
        return StoredBlob(blob_id=blob_id, name=name, url=url, size=len(data))

    async def get_signed_url(self, name: str, ttl_seconds: int) -> str:
        return await self._call(
            self._client.generate_presigned_url,
            ClientMethod="get_object",
            Params={"Bucket": self.bucket, "Key": name},
            ExpiresIn=ttl_seconds,
        )

    async def delete(self, blob_id: str, name: str) -> bool:
        logger.info("Deleting blob s3://%s/%s", self.bucket, name)
        await self._call(self._client.delete_object, Bucket=self.bucket, Key=name)
        return True
