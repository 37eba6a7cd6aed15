"""Notification fan-out to independent channels (log, Slack, Discord).

Delivery is fire-and-forget from the caller's point of view: each channel is
attempted concurrently, failures are logged and counted, and one
`NotificationLog` row records the outcome.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

import httpx

from cardrelay.common.logging import logger
from cardrelay.common.metrics import notification_failures_total
from cardrelay.services.ledger.service import LedgerError, LedgerService

BOT_NAME = "cardrelay"


class NotificationType(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


SLACK_COLORS = {
    NotificationType.SUCCESS: "#36a64f",
    NotificationType.WARNING: "#ff9900",
    NotificationType.ERROR: "#d00000",
    NotificationType.INFO: "#2196f3",
}
DISCORD_COLORS = {
    NotificationType.SUCCESS: 0x36A64F,
    NotificationType.WARNING: 0xFF9900,
    NotificationType.ERROR: 0xD00000,
    NotificationType.INFO: 0x2196F3,
}
EMOJI = {
    NotificationType.SUCCESS: "✅",
    NotificationType.WARNING: "⚠️",
    NotificationType.ERROR: "❌",
    NotificationType.INFO: "ℹ️",
}


@dataclass
class Notification:
    type: NotificationType
    title: str
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class DeliveryOutcome:
    delivered: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class Channel(Protocol):
    name: str

    async def send(self, notification: Notification) -> None: ...


class LogChannel:
    name = "log"

    async def send(self, notification: Notification) -> None:
        level = {
            NotificationType.ERROR: logger.error,
            NotificationType.WARNING: logger.warning,
        }.get(notification.type, logger.info)
        level(
            "notification type=%s title=%s message=%s",
            notification.type.value,
            notification.title,
            notification.message,
        )


class SlackChannel:
    name = "slack"

    def __init__(self, client: httpx.AsyncClient, webhook_url: str, channel: str | None = None) -> None:
        self.client = client
        self.webhook_url = webhook_url
        self.channel = channel

    def payload(self, notification: Notification) -> dict:
        attachment = {
            "color": SLACK_COLORS[notification.type],
            "title": f"{EMOJI[notification.type]} {notification.title}",
            "text": notification.message,
            "footer": BOT_NAME,
            "ts": int(time.time()),
        }
        if notification.metadata:
            attachment["fields"] = [
                {"title": key, "value": str(value), "short": True} for key, value in notification.metadata.items()
            ]
        body = {"username": BOT_NAME, "icon_emoji": ":robot_face:", "attachments": [attachment]}
        if self.channel:
            body["channel"] = self.channel
        return body

    async def send(self, notification: Notification) -> None:
        response = await self.client.post(self.webhook_url, json=self.payload(notification))
        response.raise_for_status()


class DiscordChannel:
    name = "discord"

    def __init__(self, client: httpx.AsyncClient, webhook_url: str) -> None:
        self.client = client
        self.webhook_url = webhook_url

    def payload(self, notification: Notification) -> dict:
        embed = {
            "title": f"{EMOJI[notification.type]} {notification.title}",
            "description": notification.message,
            "color": DISCORD_COLORS[notification.type],
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "footer": {"text": BOT_NAME},
        }
        if notification.metadata:
            embed["fields"] = [
                {"name": key, "value": str(value), "inline": True} for key, value in notification.metadata.items()
            ]
        return {"username": BOT_NAME, "embeds": [embed]}

    async def send(self, notification: Notification) -> None:
        response = await self.client.post(self.webhook_url, json=self.payload(notification))
        response.raise_for_status()


class NotificationService:
    """Sends each notification to every channel and records the outcome."""

    def __init__(
        self,
        channels: list[Channel],
        ledger: LedgerService | None = None,
        service_name: str = "notification",
    ) -> None:
        self.channels = channels
        self.ledger = ledger
        self.service_name = service_name

    async def send(self, notification: Notification) -> DeliveryOutcome:
        """Attempt all channels concurrently; never raises on delivery failure."""

        results = await asyncio.gather(
            *(channel.send(notification) for channel in self.channels), return_exceptions=True
        )
        outcome = DeliveryOutcome()
        for channel, result in zip(self.channels, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                outcome.failed.append(channel.name)
                logger.error(
                    "notification_delivery_failed channel=%s title=%s error=%s",
                    channel.name,
                    notification.title,
                    result,
                )
                notification_failures_total.labels(service=self.service_name, channel=channel.name).inc()
            else:
                outcome.delivered.append(channel.name)

        if self.ledger is not None:
            try:
                self.ledger.record_notification(
                    notification_type=notification.type.value,
                    title=notification.title,
                    message=notification.message,
                    delivered_channels=outcome.delivered,
                    failed_channels=outcome.failed,
                )
            except LedgerError as exc:
                logger.error("notification_log_failed title=%s error=%s", notification.title, exc)
        return outcome
