"""Outbound notifications (e.g. "a folder was shared with you").

Delivery is fire-and-forget from the point of view of the operation that
triggered it: failures are logged, never raised to the caller.  Only
transient network errors are retried, a bounded number of times.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import aiohttp

from .exceptions import TransientDeliveryError

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    TransientDeliveryError,
    aiohttp.ClientConnectionError,
    asyncio.TimeoutError,
)


@dataclass(frozen=True)
class Notification:
    """A message addressed to one user."""

    kind: str
    recipient_email: str
    subject: str
    payload: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class NotificationSender(Protocol):
    """Transport for notifications (SMTP relay, webhook, queue...)."""

    async def send(self, notification: Notification) -> None: ...


class LoggingNotificationSender:
    """Sender that only logs; the default when no transport is configured."""

    def __init__(self) -> None:
        self.sent: list[Notification] = []

    async def send(self, notification: Notification) -> None:
        self.sent.append(notification)
        logger.info(
            "Notification %s to %s: %s",
            notification.kind,
            notification.recipient_email,
            notification.subject,
        )


async def deliver_with_retry(
    sender: NotificationSender,
    notification: Notification,
    *,
    attempts: int = 3,
    backoff: float = 2.0,
) -> bool:
    """Send *notification*, retrying transient failures with a fixed backoff.

    Returns True on success.  Non-transient errors stop immediately;
    neither kind is propagated.
    """
    for attempt in range(1, max(attempts, 1) + 1):
        try:
            await sender.send(notification)
            return True
        except RETRYABLE_ERRORS as exc:
            if attempt >= attempts:
                logger.warning(
                    "Giving up on %s notification to %s after %d attempts: %s",
                    notification.kind,
                    notification.recipient_email,
                    attempt,
                    exc,
                )
                return False
            logger.warning(
                "Notification attempt %d/%d to %s failed (%s); retrying in %.1fs",
                attempt,
                attempts,
                notification.recipient_email,
                exc,
                backoff,
            )
            await asyncio.sleep(backoff)
        except Exception:
            logger.exception(
                "Notification %s to %s failed", notification.kind, notification.recipient_email
            )
            return False
    return False


def folder_shared_notice(
    recipient_email: str,
    *,
    folder_id: int,
    folder_name: str,
    permission_type: str,
    shared_by: str,
) -> Notification:
    return Notification(
        kind="folder_shared",
        recipient_email=recipient_email,
        subject=f'{shared_by} shared "{folder_name}" with you',
        payload={
            "folder_id": folder_id,
            "folder_name": folder_name,
            "permission_type": permission_type,
            "shared_by": shared_by,
        },
    )
