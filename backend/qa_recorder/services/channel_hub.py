"""
Channel hub - Fans out channel messages to WebSocket subscribers.

Channels are named ``<kind>:<id>`` where kind is one of recording, validation,
conversation, healing or playback. Delivery is at-most-once: a subscriber whose
outbound queue is full misses the message.

When REDIS_URL is configured, messages go through Redis pub/sub so every API
process sees them; otherwise they are delivered in-process.
"""

import asyncio
import json
import logging
from typing import Any

import redis.asyncio as aioredis

from qa_recorder.errors import InvalidInputError
from qa_recorder.schemas import CHANNEL_PATTERN

logger = logging.getLogger(__name__)

REDIS_CHANNEL_PREFIX = "qa_recorder:"


def recording_channel(recording_id: str) -> str:
    return f"recording:{recording_id}"


def validation_channel(recording_id: str) -> str:
    return f"validation:{recording_id}"


def healing_channel(recording_id: str) -> str:
    return f"healing:{recording_id}"


def playback_channel(playback_id: str) -> str:
    return f"playback:{playback_id}"


class Subscriber:
    """One connection's view of the hub: its channels and outbound queue."""

    def __init__(self, maxsize: int):
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self.channels: set[str] = set()
        self.dropped = 0

    def offer(self, message: dict[str, Any]) -> bool:
        try:
            self.queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            return False


class ChannelHub:
    """Routes ``{type, channel, data}`` envelopes to channel subscribers."""

    def __init__(self, redis_url: str | None = None, queue_size: int = 256):
        self.redis_url = redis_url or None
        self.queue_size = queue_size
        self._subscribers: dict[str, set[Subscriber]] = {}
        self._redis: aioredis.Redis | None = None
        self._pubsub = None
        self._relay_task: asyncio.Task | None = None

    async def start(self) -> None:
        """Connect to Redis and start relaying messages, if configured."""
        if not self.redis_url:
            return
        try:
            self._redis = aioredis.from_url(self.redis_url, decode_responses=True)
            self._pubsub = self._redis.pubsub()
            await self._pubsub.psubscribe(f"{REDIS_CHANNEL_PREFIX}*")
            self._relay_task = asyncio.create_task(self._relay_loop())
            logger.info("Channel hub relaying through Redis")
        except Exception as e:
            logger.warning(f"Redis unavailable, falling back to in-process delivery: {e}")
            await self._close_redis()

    async def close(self) -> None:
        if self._relay_task:
            self._relay_task.cancel()
            try:
                await self._relay_task
            except asyncio.CancelledError:
                pass
            self._relay_task = None
        await self._close_redis()

    async def _close_redis(self) -> None:
        if self._pubsub is not None:
            try:
                await self._pubsub.punsubscribe()
                await self._pubsub.aclose()
            except Exception as e:
                logger.debug(f"Error closing Redis pubsub: {e}")
            self._pubsub = None
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except Exception as e:
                logger.debug(f"Error closing Redis connection: {e}")
            self._redis = None

    def create_subscriber(self) -> Subscriber:
        return Subscriber(self.queue_size)

    def subscribe(self, subscriber: Subscriber, channel: str) -> None:
        if not CHANNEL_PATTERN.match(channel):
            raise InvalidInputError(f"Unknown channel: {channel}")
        self._subscribers.setdefault(channel, set()).add(subscriber)
        subscriber.channels.add(channel)

    def unsubscribe(self, subscriber: Subscriber, channel: str) -> None:
        subscribers = self._subscribers.get(channel)
        if subscribers is not None:
            subscribers.discard(subscriber)
            if not subscribers:
                del self._subscribers[channel]
        subscriber.channels.discard(channel)

    def remove_subscriber(self, subscriber: Subscriber) -> None:
        for channel in list(subscriber.channels):
            self.unsubscribe(subscriber, channel)

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    async def publish(self, channel: str, message_type: str, data: dict[str, Any]) -> int:
        """Publish a message and return the number of local deliveries.

        Best-effort: Redis failures are logged and the message is delivered
        in-process instead.
        """
        envelope = {"type": message_type, "channel": channel, "data": data}

        if self._redis is not None:
            try:
                await self._redis.publish(
                    f"{REDIS_CHANNEL_PREFIX}{channel}", json.dumps(envelope, default=str)
                )
                return 0
            except Exception as e:
                logger.error(f"Failed to publish to Redis channel {channel}: {e}")

        return self._deliver(channel, envelope)

    def _deliver(self, channel: str, envelope: dict[str, Any]) -> int:
        delivered = 0
        for subscriber in list(self._subscribers.get(channel, ())):
            if subscriber.offer(envelope):
                delivered += 1
            else:
                logger.debug(f"Dropped {envelope['type']} for a slow subscriber on {channel}")
        return delivered

    async def _relay_loop(self) -> None:
        while True:
            try:
                message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Redis relay error: {e}")
                await asyncio.sleep(1.0)
                continue

            if not message or message.get("type") != "pmessage":
                continue

            channel = message["channel"][len(REDIS_CHANNEL_PREFIX):]
            try:
                envelope = json.loads(message["data"])
            except ValueError:
                logger.warning(f"Discarding malformed relay message on {channel}")
                continue
            self._deliver(channel, envelope)
