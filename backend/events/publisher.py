"""
Lifecycle event publishing over Redis pub/sub.

Every event lands on ``{prefix}:{site_id}`` as JSON:
    {"type": ..., "site_id": ..., "occurred_at": ..., "payload": {...}}

Delivery is best-effort: the business change is already committed by the time
an event is published, so ``notify`` logs Redis failures instead of raising.
The outbox relay uses ``publish_many`` directly so a failed batch stays
unstamped and is retried on the next run.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from core.config import get_settings

logger = structlog.get_logger()


@dataclass
class LifecycleEvent:
    event_type: str
    site_id: uuid.UUID
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=datetime.utcnow)

    def to_message(self) -> str:
        return json.dumps(
            {
                "type": self.event_type,
                "site_id": str(self.site_id),
                "occurred_at": self.occurred_at.isoformat(),
                "payload": self.payload,
            },
            default=str,
        )


class EventPublisher:
    def __init__(
        self,
        redis_url: str | None = None,
        channel_prefix: str | None = None,
        enabled: bool | None = None,
    ):
        settings = get_settings()
        self.redis_url = redis_url or settings.redis_url
        self.channel_prefix = channel_prefix or settings.event_channel_prefix
        self.enabled = settings.events_enabled if enabled is None else enabled

    def channel(self, site_id: uuid.UUID) -> str:
        return f"{self.channel_prefix}:{site_id}"

    async def publish_many(self, events: list[LifecycleEvent]) -> int:
        """Publish events in order. Returns the number of subscribers reached."""
        if not events:
            return 0
        if not self.enabled:
            logger.debug("events.publish_skipped", count=len(events))
            return 0
        return await self._send_all([(self.channel(event.site_id), event.to_message()) for event in events])

    async def notify(self, event: LifecycleEvent) -> int:
        try:
            return await self.publish_many([event])
        except RedisError as exc:
            logger.warning(
                "events.publish_failed",
                event_type=event.event_type,
                site_id=str(event.site_id),
                error=str(exc),
            )
            return 0

    async def _send_all(self, messages: list[tuple[str, str]]) -> int:
        redis = aioredis.from_url(self.redis_url)
        try:
            total_subs = 0
            for channel, message in messages:
                total_subs += await redis.publish(channel, message)
            return total_subs
        finally:
            await redis.aclose()
