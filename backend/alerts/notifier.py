"""
Alert Notifiers — escalation channels for newly opened alerts.

Channels:
  - EmailNotifier:  SendGrid email to the on-call list
  - RedisNotifier:  Redis pub/sub for real-time dashboards
  - FanoutNotifier: sends through every configured channel

send() raises NotificationError on failure; the monitor logs it and does
not retry. Delivery guarantees beyond that belong to the channel.
"""

import json
from abc import ABC, abstractmethod

import redis.asyncio as aioredis
from redis.exceptions import RedisError
import structlog

from alerts.email import send_alert_email
from core.config import Settings
from core.errors import NotificationError
from db.models import AlertEvent

logger = structlog.get_logger()

ALERT_CHANNEL = "alerts:slots"


def alert_payload(alert: AlertEvent) -> dict:
    return {
        "type": "alert",
        "payload": {
            "alert_id": str(alert.alert_id),
            "machine_id": alert.machine_id,
            "utilization": alert.utilization,
            "location": alert.location,
            "created_at": alert.created_at.isoformat() if alert.created_at else None,
        },
    }


class Notifier(ABC):
    name = "notifier"

    @abstractmethod
    async def send(self, alert: AlertEvent) -> None:
        """Deliver one alert; raise NotificationError on failure."""
        ...

    async def aclose(self) -> None:
        return None


class EmailNotifier(Notifier):
    name = "email"

    def __init__(self, settings: Settings, recipients: list[str] | None = None):
        self.settings = settings
        self.recipients = list(recipients if recipients is not None else settings.alert_to_emails)

    async def send(self, alert: AlertEvent) -> None:
        try:
            accepted = await send_alert_email(self.settings, self.recipients, alert)
        except Exception as exc:  # noqa: BLE001
            raise NotificationError(f"SendGrid delivery failed: {exc}") from exc
        if not accepted:
            raise NotificationError("SendGrid did not accept the alert email")


class RedisNotifier(Notifier):
    name = "redis"

    def __init__(self, redis_url: str, channel: str = ALERT_CHANNEL):
        self.channel = channel
        self._redis = aioredis.from_url(redis_url)

    async def send(self, alert: AlertEvent) -> None:
        try:
            subscribers = await self._redis.publish(self.channel, json.dumps(alert_payload(alert)))
        except RedisError as exc:
            raise NotificationError(f"Redis publish failed: {exc}") from exc
        logger.debug("notify.published", channel=self.channel, subscribers=subscribers)

    async def aclose(self) -> None:
        await self._redis.aclose()


class FanoutNotifier(Notifier):
    """Send through every channel; fail only if all of them fail."""

    name = "fanout"

    def __init__(self, notifiers: list[Notifier]):
        self.notifiers = notifiers

    async def send(self, alert: AlertEvent) -> None:
        errors: list[str] = []
        for notifier in self.notifiers:
            try:
                await notifier.send(alert)
            except NotificationError as exc:
                logger.warning(
                    "notify.channel_failed",
                    channel=notifier.name,
                    machine_id=alert.machine_id,
                    error=str(exc),
                )
                errors.append(f"{notifier.name}: {exc}")
        if errors and len(errors) == len(self.notifiers):
            raise NotificationError("; ".join(errors))

    async def aclose(self) -> None:
        for notifier in self.notifiers:
            await notifier.aclose()


def build_notifier(settings: Settings) -> Notifier:
    """Email when SendGrid is configured, plus Redis pub/sub."""
    channels: list[Notifier] = []
    if settings.sendgrid_api_key and settings.alert_to_emails:
        channels.append(EmailNotifier(settings))
    channels.append(RedisNotifier(settings.redis_url))
    return FanoutNotifier(channels)
