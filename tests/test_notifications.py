"""Tests for notification delivery with retry."""

from __future__ import annotations

import asyncio

import aiohttp
import pytest

from bytecloud.exceptions import TransientDeliveryError
from bytecloud.notifications import (
    LoggingNotificationSender,
    Notification,
    NotificationSender,
    deliver_with_retry,
    folder_shared_notice,
)


class ScriptedSender:
    """Raises the queued errors in order, then succeeds."""

    def __init__(self, *errors: BaseException) -> None:
        self.errors = list(errors)
        self.attempts = 0
        self.sent: list[Notification] = []

    async def send(self, notification: Notification) -> None:
        self.attempts += 1
        if self.errors:
            raise self.errors.pop(0)
        self.sent.append(notification)


@pytest.fixture
def notice() -> Notification:
    return folder_shared_notice(
        "bob@example.com",
        folder_id=1,
        folder_name="Trip",
        permission_type="edit",
        shared_by="Alice",
    )


class TestFolderSharedNotice:
    def test_fields(self, notice: Notification):
        assert notice.kind == "folder_shared"
        assert notice.subject == 'Alice shared "Trip" with you'
        assert notice.payload == {
            "folder_id": 1,
            "folder_name": "Trip",
            "permission_type": "edit",
            "shared_by": "Alice",
        }


class TestDeliverWithRetry:
    async def test_success_first_try(self, notice: Notification):
        sender = LoggingNotificationSender()
        assert isinstance(sender, NotificationSender)
        assert await deliver_with_retry(sender, notice, backoff=0)
        assert sender.sent == [notice]

    @pytest.mark.parametrize(
        "error",
        [
            TransientDeliveryError("busy"),
            aiohttp.ClientConnectionError("refused"),
            asyncio.TimeoutError(),
        ],
    )
    async def test_transient_errors_are_retried(self, notice: Notification, error):
        sender = ScriptedSender(error, error)
        assert await deliver_with_retry(sender, notice, attempts=3, backoff=0)
        assert sender.attempts == 3
        assert sender.sent == [notice]

    async def test_gives_up_after_attempts(self, notice: Notification):
        sender = ScriptedSender(*(TransientDeliveryError("busy") for _ in range(5)))
        assert not await deliver_with_retry(sender, notice, attempts=3, backoff=0)
        assert sender.attempts == 3
        assert sender.sent == []

    async def test_permanent_error_not_retried(self, notice: Notification):
        sender = ScriptedSender(ValueError("bad address"))
        assert not await deliver_with_retry(sender, notice, attempts=3, backoff=0)
        assert sender.attempts == 1

    async def test_backoff_between_attempts(self, notice: Notification, monkeypatch):
        delays: list[float] = []

        async def fake_sleep(delay: float) -> None:
            delays.append(delay)

        monkeypatch.setattr("bytecloud.notifications.asyncio.sleep", fake_sleep)
        sender = ScriptedSender(TransientDeliveryError("busy"), TransientDeliveryError("busy"))

        assert await deliver_with_retry(sender, notice, attempts=3, backoff=2.0)
        assert delays == [2.0, 2.0]
