"""Custom exception hierarchy for the ByteCloud core."""

from __future__ import annotations


class ByteCloudError(Exception):
    """Base exception for all ByteCloud errors."""


class NotFoundError(ByteCloudError):
    """Raised when a user, folder, file, grant or share does not exist."""


class NotFoundOrDeniedError(NotFoundError):
    """Raised at the boundary when an entity is missing or the caller has no access.

    Both cases produce the same error so unauthorized callers cannot
    probe for the existence of other tenants' folders and files.
    """

    def __init__(self, kind: str = "Entity") -> None:
        self.kind = kind
        super().__init__(f"{kind} not found or access denied")


class PermissionDeniedError(ByteCloudError):
    """Raised when a caller can see an entity but lacks the required level."""


class QuotaExceededError(ByteCloudError):
    """Raised when an upload batch would exceed the user's storage quota."""

    def __init__(self, requested: int, available: int, quota: int) -> None:
        from .quota import format_bytes

        self.requested = requested
        self.available = available
        self.quota = quota
        super().__init__(
            f"Insufficient storage space: requested {format_bytes(requested)}, "
            f"available {format_bytes(available)} "
            f"(quota: {format_bytes(quota)})"
        )


class InvalidStateError(ByteCloudError):
    """Raised when an operation conflicts with the current state of an entity."""


class CouponError(InvalidStateError):
    """Raised when a coupon cannot be redeemed."""

    INVALID_OR_EXPIRED = "invalid_or_expired"
    ALREADY_REDEEMED = "already_redeemed"

    _MESSAGES = {
        INVALID_OR_EXPIRED: "Invalid or expired coupon code",
        ALREADY_REDEEMED: "You have already redeemed this coupon",
    }

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(self._MESSAGES.get(reason, reason))


class UpstreamError(ByteCloudError):
    """Raised when the blob store is unreachable or returns an error."""

    def __init__(self, message: str, status: int | None = None) -> None:
        self.status = status
        super().__init__(message)


class UpstreamTimeoutError(UpstreamError):
    """Raised when the blob store does not answer within the configured timeout."""


class TransientCacheError(ByteCloudError):
    """Raised by cache backends when the cache is unavailable.

    Never propagated past ``MetadataCache``; callers fall back to the store.
    """


class TransientDeliveryError(ByteCloudError):
    """Raised by notification senders on retryable network failures."""
