"""Cache layer — backend protocol, in-memory backend, metadata cache."""

from bytecloud.cache.memory import InMemoryCache
from bytecloud.cache.metadata import MetadataCache
from bytecloud.cache.protocol import CacheBackend

__all__ = [
    "CacheBackend",
    "InMemoryCache",
    "MetadataCache",
]
