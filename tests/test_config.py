"""Tests for Settings."""

from __future__ import annotations

import pytest

from bytecloud import Settings
from bytecloud.config import GiB


class TestDefaults:
    def test_defaults(self):
        s = Settings()
        assert s.default_quota_bytes == 5 * GiB
        assert s.download_url_ttl < s.signed_url_ttl
        assert s.max_batch_files == 20

    def test_url_cache_must_expire_before_signature(self):
        with pytest.raises(ValueError, match="download_url_ttl"):
            Settings(download_url_ttl=3600, signed_url_ttl=3600)

    def test_default_share_within_max(self):
        with pytest.raises(ValueError):
            Settings(default_share_hours=48, max_share_hours=24)


class TestFromEnv:
    def test_overrides(self):
        s = Settings.from_env(
            {
                "BYTECLOUD_DEFAULT_QUOTA_BYTES": "1024",
                "BYTECLOUD_UPSTREAM_READ_TIMEOUT": "2.5",
                "BYTECLOUD_MAX_BATCH_FILES": "",
                "UNRELATED": "x",
            }
        )
        assert s.default_quota_bytes == 1024
        assert s.upstream_read_timeout == 2.5
        assert s.max_batch_files == 20

    def test_invalid_value(self):
        with pytest.raises(ValueError, match="BYTECLOUD_SIGNED_URL_TTL"):
            Settings.from_env({"BYTECLOUD_SIGNED_URL_TTL": "soon"})

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("BYTECLOUD_STREAM_CHUNK_SIZE", "4096")
        assert Settings.from_env().stream_chunk_size == 4096
