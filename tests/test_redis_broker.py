"""Tests for the Redis Pub/Sub broker."""

import asyncio
import os

import pytest

from messenger import redis_pubsub
from messenger.redis_pubsub import RedisBroker

REDIS_URL = os.getenv("REDIS_URL")


class FakePubSub:
    def __init__(self, inbox):
        self.inbox = inbox
        self.subscribed = set()
        self.closed = False

    async def subscribe(self, *channels):
        self.subscribed.update(channels)

    async def unsubscribe(self, *channels):
        self.subscribed.difference_update(channels)

    async def get_message(self, ignore_subscribe_messages=False, timeout=0.0):
        if not self.inbox:
            await asyncio.sleep(0)
            return None
        channel, data = self.inbox.pop(0)
        if channel not in self.subscribed:
            return None
        return {"type": "message", "channel": channel, "data": data}

    async def aclose(self):
        self.closed = True


class FakeRedis:
    def __init__(self):
        self.inbox = []
        self.pubsubs = []
        self.closed = False

    def pubsub(self):
        pubsub = FakePubSub(self.inbox)
        self.pubsubs.append(pubsub)
        return pubsub

    async def publish(self, channel, message):
        self.inbox.append((channel, message))

    async def aclose(self):
        self.closed = True


@pytest.fixture
def fake_redis(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(redis_pubsub.aioredis, "from_url", lambda url, **kwargs: fake)
    return fake


async def test_publish_and_receive_through_pubsub(fake_redis):
    broker = RedisBroker("redis://example:6379/0")
    sub = broker.subscription()
    await sub.subscribe("chat.1", "user.1.messages")
    assert sub.channels == {"chat.1", "user.1.messages"}

    await broker.publish("chat.2", "not for us")
    await broker.publish("chat.1", "one")
    await broker.publish("user.1.messages", "two")

    received = []

    async def consume():
        async for item in sub:
            received.append(item)
            if len(received) == 2:
                break

    await asyncio.wait_for(consume(), timeout=1.0)
    assert received == [("chat.1", "one"), ("user.1.messages", "two")]

    await sub.unsubscribe("chat.1")
    assert fake_redis.pubsubs[0].subscribed == {"user.1.messages"}

    await sub.close()
    await broker.close()
    assert fake_redis.pubsubs[0].closed
    assert fake_redis.closed


@pytest.mark.skipif(not REDIS_URL, reason="REDIS_URL not set")
async def test_roundtrip_against_real_redis():
    broker = RedisBroker(REDIS_URL)
    sub = broker.subscription()
    await sub.subscribe("test:messenger:chat")

    async def consume():
        async for channel, message in sub:
            return channel, message

    task = asyncio.create_task(consume())
    await asyncio.sleep(0.1)
    await broker.publish("test:messenger:chat", "hello")

    assert await asyncio.wait_for(task, timeout=2.0) == ("test:messenger:chat", "hello")
    await sub.close()
    await broker.close()
