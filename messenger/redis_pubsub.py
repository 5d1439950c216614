"""Redis Pub/Sub transport for running the delivery router against a shared Redis."""

import asyncio
from typing import Set

import redis.asyncio as aioredis
import structlog

from .broker import Broker, Subscription

logger = structlog.get_logger(__name__)


class RedisSubscription(Subscription):
    def __init__(self, redis):
        self._pubsub = redis.pubsub()
        self._channels: Set[str] = set()
        self._closed = False

    @property
    def channels(self) -> Set[str]:
        return set(self._channels)

    async def subscribe(self, *channels: str) -> None:
        if not channels:
            return
        await self._pubsub.subscribe(*channels)
        self._channels.update(channels)
        logger.debug("redis_subscribed", channels=list(channels))

    async def unsubscribe(self, *channels: str) -> None:
        if not channels:
            return
        await self._pubsub.unsubscribe(*channels)
        self._channels.difference_update(channels)

    async def __aiter__(self):
        while not self._closed:
            if not self._channels:
                await asyncio.sleep(0.05)
                continue
            msg = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if msg is None:
                continue
            if msg["type"] == "message":
                yield msg["channel"], msg["data"]

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._pubsub.aclose()


class RedisBroker(Broker):
    def __init__(self, url: str):
        self._redis = aioredis.from_url(url, encoding="utf-8", decode_responses=True)
        logger.info("redis_broker_configured", url=url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    def subscription(self) -> RedisSubscription:
        return RedisSubscription(self._redis)

    async def close(self) -> None:
        await self._redis.aclose()
