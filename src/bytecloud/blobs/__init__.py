"""Blob stores — protocol, in-memory backend, S3 backend."""

from bytecloud.blobs.memory import InMemoryBlobStore, create_blob_app
from bytecloud.blobs.protocol import BlobStore, StoredBlob
from bytecloud.blobs.s3 import S3BlobStore

__all__ = [
    "BlobStore",
    "InMemoryBlobStore",
    "S3BlobStore",
    "StoredBlob",
    "create_blob_app",
]
