"""
Chat operations exposed to the HTTP and WebSocket layers.

Each operation is one transaction. The events it produces are collected while
the transaction runs and handed to the delivery router only after commit, so
a subscriber never hears about a row that a following read cannot see.
"""

from collections import defaultdict
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, TypeVar

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .auth import Principal
from .errors import ValidationFailed
from .files import require_file
from .membership import MembershipStore
from .messages import MessageStore
from .models import Chat, ChatType, MemberRole, Message, MessageType
from .router import (QUEUE_CHAT_DELETE, QUEUE_CHAT_LIST, QUEUE_MESSAGES, QUEUE_UNREAD, Delivery,
                     DeliveryRouter, to_topic, to_user, to_users)
from .schemas import (ChatDeleted, ChatListChanged, ChatListItem, ChatOut, GroupChatOut, GroupCreate,
                      MemberOut, MessageCreated, MessageDeleted, MessageOut, MessagesRead, MessageUpdated,
                      Page, SendMessage, UnreadChanged)
from .unread import UnreadProjector

logger = structlog.get_logger(__name__)

R = TypeVar("R")


class Stores:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.membership = MembershipStore(session)
        self.messages = MessageStore(session, self.membership)
        self.unread = UnreadProjector(session, self.membership, self.messages)


Work = Callable[[Stores], Awaitable[Tuple[R, List[Delivery]]]]


class ChatService:
    def __init__(self, session_factory: async_sessionmaker, router: DeliveryRouter):
        self.session_factory = session_factory
        self.router = router

    async def _run(self, work: Work) -> R:
        for attempt in (1, 2):
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        result, deliveries = await work(Stores(session))
                break
            except IntegrityError:
                # Unique-index conflict with a concurrent writer: the retry
                # reads the row the other transaction committed.
                if attempt == 2:
                    raise
                logger.info("transaction_conflict_retry")
        await self.router.dispatch(deliveries)
        return result

    async def _read(self, work: Callable[[Stores], Awaitable[R]]) -> R:
        async with self.session_factory() as session:
            return await work(Stores(session))

    async def _chat_list_changed(self, stores: Stores, chat: Chat, user_ids: Sequence[int],
                                 last_message: Optional[Message] = None) -> List[Delivery]:
        deliveries = []
        for user_id in user_ids:
            item = await stores.unread.chat_list_item(chat, user_id, last_message)
            deliveries.append(to_user(user_id, QUEUE_CHAT_LIST, ChatListChanged(**item.model_dump())))
        return deliveries

    # --- chats and membership ---

    async def open_private_chat(self, principal: Principal, other_user_id: int) -> ChatOut:
        async def work(stores: Stores):
            chat = await stores.membership.get_or_create_private_chat(principal.user_id, other_user_id)
            return ChatOut.model_validate(chat), []
        return await self._run(work)

    async def create_group_chat(self, principal: Principal, request: GroupCreate) -> ChatOut:
        async def work(stores: Stores):
            avatar_url = None
            if request.avatar_hash:
                avatar_url = (await require_file(stores.session, request.avatar_hash)).file_url
            chat = await stores.membership.create_group_chat(principal.user_id, request.name, avatar_url)
            await stores.membership.add_members(chat.id, principal.user_id, request.member_ids)
            members = await stores.membership.member_ids(chat.id)
            return ChatOut.model_validate(chat), await self._chat_list_changed(stores, chat, members)
        return await self._run(work)

    async def add_members(self, principal: Principal, chat_id: int, member_ids: Sequence[int]) -> List[int]:
        async def work(stores: Stores):
            added = await stores.membership.add_members(chat_id, principal.user_id, member_ids)
            chat = await stores.membership.get_chat(chat_id)
            return added, await self._chat_list_changed(stores, chat, added)
        return await self._run(work)

    async def group_details(self, principal: Principal, chat_id: int) -> GroupChatOut:
        async def work(stores: Stores):
            chat = await stores.membership.get_chat(chat_id)
            await stores.membership.require_role(chat_id, principal.user_id, MemberRole.MEMBER)
            members = [
                MemberOut(user_id=user.id, first_name=user.first_name, username=user.username,
                          avatar_url=user.avatar_url, role=member.role)
                for member, user in await stores.membership.list_member_users(chat_id)
            ]
            return GroupChatOut(id=chat.id, chat_type=chat.chat_type, group_name=chat.group_name,
                                avatar_url=chat.avatar_url, members=members)
        return await self._read(work)

    async def delete_chat(self, principal: Principal, chat_id: int, for_everyone: bool) -> None:
        async def work(stores: Stores):
            if for_everyone:
                former = await stores.membership.delete_chat(chat_id, principal.user_id)
            else:
                await stores.membership.get_chat(chat_id)
                await stores.membership.hide_chat(chat_id, principal.user_id)
                former = [principal.user_id]
            return None, to_users(former, QUEUE_CHAT_DELETE, ChatDeleted(chat_id=chat_id))
        await self._run(work)

    async def list_chats(self, principal: Principal, page: int, size: int,
                         chat_type: Optional[ChatType] = None) -> Page[ChatListItem]:
        async def work(stores: Stores):
            items, total = await stores.unread.chat_list(principal.user_id, page, size, chat_type)
            return Page[ChatListItem](items=items, total=total, page=page, size=size)
        return await self._read(work)

    async def group_chat_ids(self, user_id: int) -> List[int]:
        async def work(stores: Stores):
            chats = await stores.membership.list_chats_for_user(user_id)
            return [c.id for c in chats if c.chat_type == ChatType.GROUP]
        return await self._read(work)

    async def is_member(self, chat_id: int, user_id: int) -> bool:
        async def work(stores: Stores):
            return await stores.membership.is_member(chat_id, user_id)
        return await self._read(work)

    # --- messages ---

    async def _payload(self, stores: Stores, request: SendMessage) -> Tuple[MessageType, Optional[str]]:
        if request.file_hash:
            asset = await require_file(stores.session, request.file_hash)
            return asset.message_type, asset.file_url
        if request.message_type is not None:
            return request.message_type, None
        if request.content and request.content.strip():
            return MessageType.TEXT, None
        if request.latitude is not None and request.longitude is not None:
            return MessageType.LOCATION, None
        raise ValidationFailed("message has no content, file or location")

    async def send_message(self, principal: Principal, request: SendMessage) -> MessageOut:
        async def work(stores: Stores):
            if request.chat_id is not None:
                chat = await stores.membership.get_chat(request.chat_id)
                await stores.membership.restore_private_members(chat)
            else:
                chat = await stores.membership.get_or_create_private_chat(principal.user_id, request.receiver_id)
            message_type, file_url = await self._payload(stores, request)
            message = await stores.messages.append(
                chat.id, principal.user_id, message_type,
                content=request.content,
                file_url=file_url,
                file_hash=request.file_hash,
                latitude=request.latitude,
                longitude=request.longitude,
                reply_to_id=request.reply_to_id,
            )
            recipients = await stores.unread.on_append(message)
            out = MessageOut.model_validate(message)

            if chat.chat_type == ChatType.GROUP:
                deliveries = [to_topic(chat.id, MessageCreated(message=out))]
                deliveries += await self._chat_list_changed(stores, chat, recipients, message)
            else:
                members = [principal.user_id] + recipients
                deliveries = to_users(members, QUEUE_MESSAGES, MessageCreated(message=out))
                deliveries += await self._chat_list_changed(stores, chat, members, message)
            return out, deliveries

        out = await self._run(work)
        logger.info("message_sent", chat_id=out.chat_id, message_id=out.id, sender_id=principal.user_id)
        return out

    async def edit_message(self, principal: Principal, chat_id: int, message_id: int,
                           content: Optional[str]) -> MessageOut:
        async def work(stores: Stores):
            message = await stores.messages.edit(message_id, principal.user_id, content, chat_id=chat_id)
            chat = await stores.membership.get_chat(chat_id)
            out = MessageOut.model_validate(message)
            others = [u for u in await stores.membership.member_ids(chat_id) if u != principal.user_id]

            if chat.chat_type == ChatType.GROUP:
                deliveries = [to_topic(chat_id, MessageUpdated(message=out))]
            else:
                deliveries = to_users(others, QUEUE_MESSAGES, MessageUpdated(message=out))
            latest = await stores.messages.latest(chat_id)
            if latest is not None and latest.id == message.id:
                deliveries += await self._chat_list_changed(stores, chat, others, latest)
            return out, deliveries
        return await self._run(work)

    async def delete_messages(self, principal: Principal, chat_id: int, message_ids: Sequence[int]) -> List[int]:
        if not message_ids:
            return []

        async def work(stores: Stores):
            await stores.membership.get_chat(chat_id)
            await stores.membership.require_role(chat_id, principal.user_id, MemberRole.MEMBER)
            deleted = await stores.messages.soft_delete(message_ids, principal.user_id, chat_id=chat_id)
            ids = [m.id for m in deleted]
            chat = await stores.membership.get_chat(chat_id)
            members = await stores.membership.member_ids(chat_id)
            event = MessageDeleted(chat_id=chat_id, message_ids=ids)

            if chat.chat_type == ChatType.GROUP:
                deliveries = [to_topic(chat_id, event)]
            else:
                deliveries = to_users(members, QUEUE_MESSAGES, event)
            deliveries += await self._chat_list_changed(stores, chat, members)
            return ids, deliveries
        return await self._run(work)

    async def mark_read(self, principal: Principal, chat_id: int, message_ids: Sequence[int]) -> Optional[int]:
        """Mark messages read; returns the reader's new unread count, None for an empty batch."""
        if not message_ids:
            return None

        async def work(stores: Stores):
            await stores.membership.get_chat(chat_id)
            await stores.membership.require_role(chat_id, principal.user_id, MemberRole.MEMBER)
            receipts = await stores.unread.pending_receipts(chat_id, principal.user_id, message_ids)
            count = await stores.unread.mark_read(chat_id, principal.user_id, message_ids)

            deliveries = [to_user(principal.user_id, QUEUE_UNREAD,
                                  UnreadChanged(chat_id=chat_id, unread_count=count))]
            by_sender = defaultdict(list)
            for message_id, sender_id in receipts:
                by_sender[sender_id].append(message_id)
            for sender_id, ids in by_sender.items():
                deliveries.append(to_user(sender_id, QUEUE_MESSAGES, MessagesRead(
                    chat_id=chat_id, reader_id=principal.user_id, message_ids=ids)))
            return count, deliveries
        return await self._run(work)

    async def list_messages(self, principal: Principal, chat_id: int, page: int, size: int) -> Page[MessageOut]:
        async def work(stores: Stores):
            await stores.membership.get_chat(chat_id)
            await stores.membership.require_role(chat_id, principal.user_id, MemberRole.MEMBER)
            messages, total = await stores.messages.page(chat_id, page, size)
            return Page[MessageOut](items=[MessageOut.model_validate(m) for m in messages],
                                    total=total, page=page, size=size)
        return await self._read(work)
