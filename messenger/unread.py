"""
Unread counters and chat-list rows.

Both are derived from the message log on demand; nothing here is cached
beyond the session that computed it.
"""

from typing import List, Optional, Sequence, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .db import utcnow
from .membership import MembershipStore
from .messages import MessageStore
from .models import Chat, ChatMember, ChatType, Message, MessageStatus
from .repository import Repository
from .schemas import ChatListItem, Counterpart, MessageOut


class UnreadProjector:
    def __init__(self, session: AsyncSession, membership: Optional[MembershipStore] = None,
                 messages: Optional[MessageStore] = None):
        self.session = session
        self.membership = membership or MembershipStore(session)
        self.messages = messages or MessageStore(session, self.membership)
        self.statuses = Repository(session, MessageStatus)

    async def on_append(self, message: Message) -> List[int]:
        """Create an unread marker for every member except the sender."""
        recipients = [
            user_id for user_id in await self.membership.member_ids(message.chat_id)
            if user_id != message.sender_id
        ]
        await self.statuses.save_all([
            MessageStatus(message_id=message.id, user_id=user_id, is_read=False)
            for user_id in recipients
        ])
        return recipients

    async def unread_count(self, user_id: int, chat_id: int) -> int:
        result = await self.session.execute(
            select(func.count(MessageStatus.id))
            .join(Message, Message.id == MessageStatus.message_id)
            .where(
                MessageStatus.user_id == user_id,
                MessageStatus.is_read.is_(False),
                Message.chat_id == chat_id,
            )
        )
        return result.scalar_one()

    async def pending_receipts(self, chat_id: int, reader_id: int,
                               message_ids: Sequence[int]) -> List[Tuple[int, int]]:
        """(message_id, sender_id) for messages the reader has not read yet."""
        if not message_ids:
            return []
        result = await self.session.execute(
            select(Message.id, Message.sender_id)
            .join(MessageStatus, MessageStatus.message_id == Message.id)
            .where(
                MessageStatus.user_id == reader_id,
                MessageStatus.is_read.is_(False),
                Message.chat_id == chat_id,
                Message.id.in_(list(message_ids)),
            )
            .order_by(Message.id)
        )
        return [(message_id, sender_id) for message_id, sender_id in result.all()]

    async def mark_read(self, chat_id: int, reader_id: int, message_ids: Sequence[int]) -> int:
        if not message_ids:
            return await self.unread_count(reader_id, chat_id)
        in_chat = select(Message.id).where(Message.chat_id == chat_id, Message.id.in_(list(message_ids)))
        await self.session.execute(
            update(MessageStatus)
            .where(
                MessageStatus.user_id == reader_id,
                MessageStatus.message_id.in_(in_chat.scalar_subquery()),
                MessageStatus.is_read.is_(False),
                MessageStatus.deleted.is_(False),
            )
            .values(is_read=True, read_at=utcnow(), modified_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return await self.unread_count(reader_id, chat_id)

    async def chat_list_item(self, chat: Chat, user_id: int,
                             last_message: Optional[Message] = None) -> ChatListItem:
        if last_message is None:
            last_message = await self.messages.latest(chat.id)
        counterpart = await self.membership.counterpart(chat, user_id)
        if chat.chat_type == ChatType.GROUP:
            name, avatar = chat.group_name, chat.avatar_url
        else:
            name = counterpart.first_name if counterpart else None
            avatar = counterpart.avatar_url if counterpart else None
        return ChatListItem(
            chat_id=chat.id,
            chat_type=chat.chat_type,
            chat_name=name,
            avatar_url=avatar,
            last_message=MessageOut.model_validate(last_message) if last_message else None,
            last_message_at=last_message.created_at if last_message else None,
            unread_count=await self.unread_count(user_id, chat.id),
            counterpart=Counterpart.model_validate(counterpart) if counterpart else None,
        )

    async def chat_list(self, user_id: int, page: int, size: int,
                        chat_type: Optional[ChatType] = None) -> Tuple[List[ChatListItem], int]:
        """Chats of a user, most recent activity first."""
        last_at = (
            select(func.max(Message.created_at))
            .where(Message.chat_id == Chat.id)
            .correlate(Chat)
            .scalar_subquery()
        )
        stmt = (
            select(Chat)
            .join(ChatMember, ChatMember.chat_id == Chat.id)
            .where(ChatMember.user_id == user_id)
            .order_by(func.coalesce(last_at, Chat.created_at).desc(), Chat.id.desc())
        )
        if chat_type is not None:
            stmt = stmt.where(Chat.chat_type == chat_type)
        chats, total = await Repository(self.session, Chat).page(stmt, page, size)
        return [await self.chat_list_item(chat, user_id) for chat in chats], total
