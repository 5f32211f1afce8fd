"""
Change Feed
Version: 1.0

Redis pub/sub wrapper. Subscriptions are explicit handles owned by the
caller and released when the `async with` block exits; nothing is kept
in a module-level registry.
NO DEPENDENCIES on other services.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

from schemas import ChangeEvent

logger = logging.getLogger(__name__)

BOOKINGS_CHANNEL = "bookings"
CACHE_CHANNEL = "cache"
ASSIGNMENTS_CHANNEL = "assignments"

BOOKINGS_CHANGED_EVENT = "bookings.changed"
CACHE_SYNCED_EVENT = "cache.synced"
GUIDE_ASSIGNED_EVENT = "guide.assigned"
GUIDE_REMOVED_EVENT = "guide.removed"


class Subscription:
    """
    Handle for one pub/sub subscription.

    Usage:
        async with feed.subscribe(BOOKINGS_CHANNEL) as sub:
            async for event in sub:
                ...
    """

    POLL_TIMEOUT = 1.0

    def __init__(self, pubsub, channels: Dict[str, str]):
        """
        Args:
            pubsub: redis.asyncio PubSub object
            channels: full redis channel name -> logical channel name
        """
        self._pubsub = pubsub
        self._channels = channels
        self.closed = False

    async def __aenter__(self) -> "Subscription":
        await self._pubsub.subscribe(*self._channels.keys())
        logger.debug(f"Subscribed to {list(self._channels.values())}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.close()
        return False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self._pubsub.unsubscribe(*self._channels.keys())
        finally:
            await self._pubsub.aclose()
        logger.debug(f"Unsubscribed from {list(self._channels.values())}")

    async def get(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """Next event, or None if nothing arrived within the timeout."""
        message = await self._pubsub.get_message(
            ignore_subscribe_messages=True,
            timeout=timeout if timeout is not None else self.POLL_TIMEOUT,
        )
        if not message or message.get("type") != "message":
            return None

        try:
            data = json.loads(message["data"])
            return ChangeEvent(**data)
        except (ValueError, TypeError) as e:
            logger.warning(f"Dropping malformed change event on {message.get('channel')}: {e}")
            return None

    async def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        while not self.closed:
            event = await self.get()
            if event is not None:
                yield event


class ChangeFeed:
    """Publishes and subscribes to scheduling change events."""

    def __init__(self, redis_client, prefix: str = "scheduler"):
        self.redis = redis_client
        self.prefix = prefix

    def _channel(self, name: str) -> str:
        return f"{self.prefix}:{name}"

    async def publish(self, channel: str, event: str, payload: Optional[Dict[str, Any]] = None) -> int:
        """
        Publish an event. Delivery is best effort.

        Returns:
            Number of subscribers that received it
        """
        message = ChangeEvent(
            event=event,
            payload=payload or {},
            published_at=datetime.now(timezone.utc),
        )
        try:
            return await self.redis.publish(self._channel(channel), message.model_dump_json())
        except Exception as e:
            logger.warning(f"Change feed publish failed ({event}): {e}")
            return 0

    def subscribe(self, *channels: str) -> Subscription:
        """Create a subscription handle; enter it with `async with`."""
        if not channels:
            raise ValueError("subscribe() needs at least one channel")
        return Subscription(
            self.redis.pubsub(),
            {self._channel(name): name for name in channels},
        )
