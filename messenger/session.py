"""
WebSocket session: handshake authentication and the per-connection pump.

A connection holds exactly one broker subscription. It starts with the
user's private queues and the topics of the user's group chats, and grows
when a group chat shows up on the user's chat-list queue.
"""

import asyncio
import json
from typing import Annotated, Optional

import structlog
from fastapi import WebSocket
from pydantic import Field, TypeAdapter, ValidationError

from .auth import Principal, bearer_token, principal_from_token
from .broker import Broker, Subscription
from .chats import ChatService
from .config import Settings
from .errors import AccessDenied, ChatError, InternalError, InvalidToken, ValidationFailed
from .models import ChatType
from .router import QUEUE_ERRORS, DeliveryRouter, encode, to_user, topic, user_channels, user_queue
from .schemas import DeleteMessages, EditMessage, ErrorEvent, Frame, MarkRead, SendMessage, Subscribe

logger = structlog.get_logger(__name__)

FrameAdapter = TypeAdapter(Annotated[Frame, Field(discriminator="type")])


def handshake_token(websocket: WebSocket) -> Optional[str]:
    token = bearer_token(websocket.headers.get("authorization"))
    if token is None:
        token = websocket.query_params.get("token") or None
    return token


def authenticate_handshake(websocket: WebSocket, settings: Settings) -> Optional[Principal]:
    """Principal for the handshake credentials; None when missing or invalid."""
    token = handshake_token(websocket)
    if token is None:
        return None
    try:
        return principal_from_token(token, settings)
    except InvalidToken:
        return None


def parse_frame(raw: str):
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        raise ValidationFailed("frame is not valid JSON")
    try:
        return FrameAdapter.validate_python(data)
    except ValidationError as exc:
        errors = exc.errors()
        detail = errors[0].get("msg", "invalid frame") if errors else "invalid frame"
        raise ValidationFailed(detail)


class Connection:
    def __init__(self, websocket: WebSocket, principal: Optional[Principal], chats: ChatService,
                 broker: Broker, router: DeliveryRouter, locale: str = "en"):
        self.websocket = websocket
        self.principal = principal
        self.chats = chats
        self.broker = broker
        self.router = router
        self.locale = locale
        self.subscription: Optional[Subscription] = None
        self._pump: Optional[asyncio.Task] = None
        self._send_lock = asyncio.Lock()

    async def open(self) -> None:
        if self.principal is None:
            return
        user_id = self.principal.user_id
        self.subscription = self.broker.subscription()
        group_topics = [topic(chat_id) for chat_id in await self.chats.group_chat_ids(user_id)]
        await self.subscription.subscribe(*user_channels(user_id), *group_topics)
        self._pump = asyncio.create_task(self._pump_events())
        logger.info("connection_opened", user_id=user_id, topics=len(group_topics))

    async def close(self) -> None:
        if self.subscription is not None:
            await self.subscription.close()
        if self._pump is not None:
            self._pump.cancel()
            try:
                await self._pump
            except asyncio.CancelledError:
                pass
        if self.principal is not None:
            logger.info("connection_closed", user_id=self.principal.user_id)

    async def send_text(self, text: str) -> None:
        async with self._send_lock:
            await self.websocket.send_text(text)

    async def _pump_events(self) -> None:
        try:
            async for channel, message in self.subscription:
                await self._follow(message)
                await self.send_text(message)
        except Exception:
            # The socket went away under us; the receive loop cleans up.
            logger.warning("connection_pump_stopped", user_id=self.principal.user_id, exc_info=True)

    async def _follow(self, message: str) -> None:
        """Track group topics announced on the chat-list and chat-delete queues."""
        envelope = json.loads(message)
        event, payload = envelope.get("event"), envelope.get("payload") or {}
        chat_id = payload.get("chat_id")
        if chat_id is None:
            return
        channel = topic(chat_id)
        if event == "ChatListChanged" and payload.get("chat_type") == ChatType.GROUP.value:
            if channel not in self.subscription.channels:
                await self.subscription.subscribe(channel)
        elif event == "ChatDeleted" and channel in self.subscription.channels:
            await self.subscription.unsubscribe(channel)

    async def send_error(self, error: ChatError) -> None:
        event = ErrorEvent(**error.to_dict(self.locale))
        if self.principal is not None:
            if await self.router.publish(to_user(self.principal.user_id, QUEUE_ERRORS, event)):
                return
            channel = user_queue(self.principal.user_id, QUEUE_ERRORS)
        else:
            channel = user_queue(0, QUEUE_ERRORS)
        await self.send_text(encode(channel, event))

    async def handle(self, raw: str) -> None:
        try:
            frame = parse_frame(raw)
            if self.principal is None:
                raise InvalidToken()
            await self.dispatch(frame)
        except ChatError as exc:
            logger.info("frame_rejected", code=int(exc.code), error=str(exc))
            await self.send_error(exc)
        except Exception:
            # The socket stays open; the client gets a generic error frame.
            logger.exception("frame_failed", user_id=self.principal.user_id if self.principal else None)
            await self.send_error(InternalError())

    async def dispatch(self, frame) -> None:
        principal = self.principal
        if isinstance(frame, SendMessage):
            await self.chats.send_message(principal, frame)
        elif isinstance(frame, MarkRead):
            await self.chats.mark_read(principal, frame.chat_id, frame.message_ids)
        elif isinstance(frame, EditMessage):
            await self.chats.edit_message(principal, frame.chat_id, frame.message_id, frame.content)
        elif isinstance(frame, DeleteMessages):
            await self.chats.delete_messages(principal, frame.chat_id, frame.message_ids)
        elif isinstance(frame, Subscribe):
            if not await self.chats.is_member(frame.chat_id, principal.user_id):
                raise AccessDenied(f"user {principal.user_id} is not a member of chat {frame.chat_id}")
            await self.subscription.subscribe(topic(frame.chat_id))
