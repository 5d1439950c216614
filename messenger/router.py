"""
Delivery router: addresses events to chat topics and per-user queues.

Group chats fan out on ``chat.<id>``; private chats and every chat-list
notification go to ``user.<id>.<queue>``. Delivery is best effort to
currently connected subscribers. A failing publish is logged and never
reaches the caller.
"""

from dataclasses import dataclass
from typing import Iterable, List, Sequence

import structlog
from pydantic import BaseModel

from .broker import Broker
from .schemas import Envelope

logger = structlog.get_logger(__name__)

QUEUE_MESSAGES = "messages"
QUEUE_CHAT_LIST = "chat-list"
QUEUE_UNREAD = "unread"
QUEUE_CHAT_DELETE = "chat-delete"
QUEUE_ERRORS = "errors"

USER_QUEUES = (QUEUE_MESSAGES, QUEUE_CHAT_LIST, QUEUE_UNREAD, QUEUE_CHAT_DELETE, QUEUE_ERRORS)


def topic(chat_id: int) -> str:
    return f"chat.{chat_id}"


def user_queue(user_id: int, queue: str) -> str:
    return f"user.{user_id}.{queue}"


def user_channels(user_id: int) -> List[str]:
    return [user_queue(user_id, q) for q in USER_QUEUES]


def destination(channel: str) -> str:
    """Client-facing address: ``/topic/chat.5`` or ``/user/queue/messages``."""
    if channel.startswith("chat."):
        return f"/topic/{channel}"
    _, _, queue = channel.split(".", 2)
    return f"/user/queue/{queue}"


@dataclass(frozen=True)
class Delivery:
    channel: str
    event: BaseModel


def to_topic(chat_id: int, event: BaseModel) -> Delivery:
    return Delivery(topic(chat_id), event)


def to_user(user_id: int, queue: str, event: BaseModel) -> Delivery:
    return Delivery(user_queue(user_id, queue), event)


def to_users(user_ids: Iterable[int], queue: str, event: BaseModel) -> List[Delivery]:
    return [to_user(user_id, queue, event) for user_id in user_ids]


def encode(channel: str, event: BaseModel) -> str:
    payload = event.model_dump(mode="json")
    envelope = Envelope(destination=destination(channel), event=payload.pop("event"), payload=payload)
    return envelope.model_dump_json()


class DeliveryRouter:
    def __init__(self, broker: Broker):
        self.broker = broker

    async def publish(self, delivery: Delivery) -> bool:
        try:
            await self.broker.publish(delivery.channel, encode(delivery.channel, delivery.event))
        except Exception:
            logger.exception("publish_failed", channel=delivery.channel)
            return False
        return True

    async def dispatch(self, deliveries: Sequence[Delivery]) -> int:
        """Publish in order; returns how many were handed to the broker."""
        sent = 0
        for delivery in deliveries:
            if await self.publish(delivery):
                sent += 1
        return sent
