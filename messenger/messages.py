from typing import List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import AccessDenied, MessageChatMismatch, MessageNotFound, SenderNotMember
from .membership import MembershipStore
from .models import Message, MessageType
from .repository import Repository

logger = structlog.get_logger(__name__)


class MessageStore:
    """Append-only message log per chat; rows change only by edit or soft delete."""

    def __init__(self, session: AsyncSession, membership: Optional[MembershipStore] = None):
        self.session = session
        self.membership = membership or MembershipStore(session)
        self.messages = Repository(session, Message)

    async def get(self, message_id: int) -> Message:
        message = await self.messages.find_by_id(message_id)
        if message is None:
            raise MessageNotFound(message_id)
        return message

    async def append(self, chat_id: int, sender_id: int, message_type: MessageType,
                     content: Optional[str] = None, file_url: Optional[str] = None,
                     file_hash: Optional[str] = None, latitude: Optional[float] = None,
                     longitude: Optional[float] = None, reply_to_id: Optional[int] = None) -> Message:
        await self.membership.get_chat(chat_id)
        if not await self.membership.is_member(chat_id, sender_id):
            raise SenderNotMember(sender_id, chat_id)
        if reply_to_id is not None:
            target = await self.get(reply_to_id)
            if target.chat_id != chat_id:
                raise MessageChatMismatch(reply_to_id, chat_id)

        message = await self.messages.save(Message(
            chat_id=chat_id,
            sender_id=sender_id,
            message_type=message_type,
            content=content,
            file_url=file_url,
            file_hash=file_hash,
            latitude=latitude,
            longitude=longitude,
            reply_to_id=reply_to_id,
        ))
        logger.debug("message_appended", chat_id=chat_id, message_id=message.id, sender_id=sender_id)
        return message

    def _check_owned(self, message: Message, user_id: int, chat_id: Optional[int]):
        if chat_id is not None and message.chat_id != chat_id:
            raise MessageChatMismatch(message.id, chat_id)
        if message.sender_id != user_id:
            raise AccessDenied(f"message {message.id} was sent by another user")

    async def edit(self, message_id: int, editor_id: int, new_content: Optional[str],
                   chat_id: Optional[int] = None) -> Message:
        if chat_id is not None:
            await self.membership.get_chat(chat_id)
        message = await self.get(message_id)
        self._check_owned(message, editor_id, chat_id)
        message.content = new_content
        message.edited = True
        await self.session.flush()
        return message

    async def soft_delete(self, message_ids: Sequence[int], requester_id: int,
                          chat_id: Optional[int] = None) -> List[Message]:
        """Delete a batch of messages; nothing is deleted unless every id passes."""
        if chat_id is not None:
            await self.membership.get_chat(chat_id)
        ids = list(dict.fromkeys(message_ids))
        if not ids:
            return []
        found = {m.id: m for m in await self.messages.find_all(ids)}
        for message_id in ids:
            message = found.get(message_id)
            if message is None:
                raise MessageNotFound(message_id)
            self._check_owned(message, requester_id, chat_id)

        await self.messages.trash_list(ids)
        logger.info("messages_deleted", chat_id=chat_id, message_ids=ids, by=requester_id)
        return [found[i] for i in ids]

    def _chat_messages(self, chat_id: int):
        return select(Message).where(Message.chat_id == chat_id)

    async def page(self, chat_id: int, page: int, size: int) -> Tuple[List[Message], int]:
        await self.membership.get_chat(chat_id)
        stmt = self._chat_messages(chat_id).order_by(Message.created_at.asc(), Message.id.asc())
        return await self.messages.page(stmt, page, size)

    async def latest(self, chat_id: int) -> Optional[Message]:
        result = await self.session.execute(
            self._chat_messages(chat_id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
