"""Runtime settings for the ByteCloud core."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping

GiB = 1024 * 1024 * 1024

_ENV_PREFIX = "BYTECLOUD_"


@dataclass(frozen=True)
class Settings:
    """Tunables shared by the services.

    Every field can be overridden from the environment with
    ``BYTECLOUD_<FIELD_NAME_UPPER>`` via ``Settings.from_env()``.
    """

    default_quota_bytes: int = 5 * GiB
    """Quota assigned to new users (5 GiB)."""

    file_metadata_ttl: int = 3600
    """Seconds file, folder and grant records stay cached."""

    download_url_ttl: int = 300
    """Seconds a signed download URL stays cached.  Must be below ``signed_url_ttl``."""

    signed_url_ttl: int = 3600
    """Validity window requested from the blob store for signed URLs."""

    public_share_max_ttl: int = 86400
    """Upper bound on the cache lifetime of a public share descriptor."""

    default_share_hours: int = 24
    max_share_hours: int = 24 * 30

    upstream_connect_timeout: float = 10.0
    upstream_read_timeout: float = 60.0
    stream_chunk_size: int = 64 * 1024

    max_batch_files: int = 20

    notification_attempts: int = 3
    notification_backoff: float = 2.0

    def __post_init__(self) -> None:
        if self.download_url_ttl >= self.signed_url_ttl:
            raise ValueError(
                "download_url_ttl must be shorter than signed_url_ttl "
                f"({self.download_url_ttl} >= {self.signed_url_ttl})"
            )
        if self.default_share_hours > self.max_share_hours:
            raise ValueError("default_share_hours cannot exceed max_share_hours")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Build settings from ``BYTECLOUD_*`` environment variables."""
        env = os.environ if environ is None else environ
        overrides: dict[str, int | float] = {}
        for f in fields(cls):
            raw = env.get(_ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            caster = float if f.type in ("float", float) else int
            try:
                overrides[f.name] = caster(raw)
            except ValueError as exc:
                raise ValueError(
                    f"Invalid value for {_ENV_PREFIX}{f.name.upper()}: {raw!r}"
                ) from exc
        return cls(**overrides)  # type: ignore[arg-type]
