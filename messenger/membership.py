"""
Chats, chat members and roles.

Every member-mutating operation goes through :meth:`MembershipStore.require_role`.
"""

from typing import List, Optional, Sequence

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .db import utcnow
from .errors import AccessDenied, ChatNotFound, UserNotFound, ValidationFailed
from .models import Chat, ChatMember, ChatType, MemberRole, User
from .repository import Repository

logger = structlog.get_logger(__name__)


def pair_key(user_a: int, user_b: int) -> str:
    low, high = sorted((user_a, user_b))
    return f"{low}:{high}"


class MembershipStore:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.chats = Repository(session, Chat)
        self.members = Repository(session, ChatMember)
        self.users = Repository(session, User)

    async def get_chat(self, chat_id: int) -> Chat:
        chat = await self.chats.find_by_id(chat_id)
        if chat is None:
            raise ChatNotFound(chat_id)
        return chat

    async def get_user(self, user_id: int) -> User:
        user = await self.users.find_by_id(user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user

    async def find_member(self, chat_id: int, user_id: int) -> Optional[ChatMember]:
        result = await self.session.execute(
            select(ChatMember).where(ChatMember.chat_id == chat_id, ChatMember.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def is_member(self, chat_id: int, user_id: int) -> bool:
        return await self.find_member(chat_id, user_id) is not None

    async def require_role(self, chat_id: int, user_id: int,
                           min_role: MemberRole = MemberRole.MEMBER) -> ChatMember:
        member = await self.find_member(chat_id, user_id)
        if member is None:
            raise AccessDenied(f"user {user_id} is not a member of chat {chat_id}")
        if member.role.rank < min_role.rank:
            raise AccessDenied(f"{min_role.value} role required, have {member.role.value}")
        return member

    async def find_private_chat(self, user_a: int, user_b: int) -> Optional[Chat]:
        result = await self.session.execute(
            select(Chat).where(Chat.chat_type == ChatType.PRIVATE, Chat.pair_key == pair_key(user_a, user_b))
        )
        return result.scalar_one_or_none()

    async def get_or_create_private_chat(self, user_a: int, user_b: int) -> Chat:
        if user_a == user_b:
            raise ValidationFailed("cannot open a private chat with yourself")
        existing = await self.find_private_chat(user_a, user_b)
        if existing is not None:
            await self.restore_private_members(existing)
            return existing

        await self.get_user(user_a)
        await self.get_user(user_b)
        # A concurrent create for the same pair fails on uq_chats_private_pair;
        # callers retry the unit of work and then find this chat.
        chat = await self.chats.save(Chat(chat_type=ChatType.PRIVATE, pair_key=pair_key(user_a, user_b)))
        await self.members.save_all([
            ChatMember(chat_id=chat.id, user_id=user_a, role=MemberRole.MEMBER),
            ChatMember(chat_id=chat.id, user_id=user_b, role=MemberRole.MEMBER),
        ])
        logger.info("private_chat_created", chat_id=chat.id, users=[user_a, user_b])
        return chat

    def pair_members(self, chat: Chat) -> List[int]:
        if chat.chat_type != ChatType.PRIVATE or not chat.pair_key:
            return []
        return [int(i) for i in chat.pair_key.split(":")]

    async def restore_private_members(self, chat: Chat) -> None:
        """Bring back a PRIVATE chat for a side that hid it."""
        user_ids = self.pair_members(chat)
        if not user_ids:
            return
        result = await self.session.execute(
            select(ChatMember)
            .where(ChatMember.chat_id == chat.id, ChatMember.user_id.in_(user_ids))
            .order_by(ChatMember.id.desc())
            .execution_options(include_deleted=True)
        )
        rows = list(result.scalars())
        active = {m.user_id for m in rows if not m.deleted}
        for member in rows:
            if member.user_id in active:
                continue
            member.deleted = False
            member.deleted_at = None
            active.add(member.user_id)
        await self.session.flush()

    async def create_group_chat(self, creator_id: int, name: str, avatar_url: Optional[str] = None) -> Chat:
        if not name or not name.strip():
            raise ValidationFailed("group name must not be blank")
        await self.get_user(creator_id)
        chat = await self.chats.save(Chat(chat_type=ChatType.GROUP, group_name=name.strip(), avatar_url=avatar_url))
        await self.members.save(ChatMember(chat_id=chat.id, user_id=creator_id, role=MemberRole.OWNER))
        logger.info("group_chat_created", chat_id=chat.id, owner_id=creator_id)
        return chat

    async def add_members(self, chat_id: int, acting_user_id: int, member_ids: Sequence[int]) -> List[int]:
        """Add users to a group; returns the ids that were not members yet."""
        await self.get_chat(chat_id)
        await self.require_role(chat_id, acting_user_id, MemberRole.OWNER)

        added: List[int] = []
        for user_id in dict.fromkeys(member_ids):
            await self.get_user(user_id)
            if await self.is_member(chat_id, user_id):
                continue
            await self.members.save(ChatMember(chat_id=chat_id, user_id=user_id, role=MemberRole.MEMBER))
            added.append(user_id)
        if added:
            logger.info("members_added", chat_id=chat_id, by=acting_user_id, added=added)
        return added

    async def list_members(self, chat_id: int) -> List[ChatMember]:
        """Memberships whose user account is still active."""
        result = await self.session.execute(
            select(ChatMember)
            .join(User, User.id == ChatMember.user_id)
            .where(ChatMember.chat_id == chat_id)
            .order_by(ChatMember.id)
        )
        return list(result.scalars())

    async def list_member_users(self, chat_id: int) -> List[tuple]:
        """(member, user) pairs for the active members of a chat."""
        result = await self.session.execute(
            select(ChatMember, User)
            .join(User, User.id == ChatMember.user_id)
            .where(ChatMember.chat_id == chat_id)
            .order_by(ChatMember.id)
        )
        return [tuple(row) for row in result.all()]

    async def member_ids(self, chat_id: int) -> List[int]:
        return [m.user_id for m in await self.list_members(chat_id)]

    async def list_chats_for_user(self, user_id: int) -> List[Chat]:
        result = await self.session.execute(
            select(Chat)
            .join(ChatMember, ChatMember.chat_id == Chat.id)
            .where(ChatMember.user_id == user_id)
            .order_by(Chat.id)
        )
        return list(result.scalars())

    async def counterpart(self, chat: Chat, user_id: int) -> Optional[User]:
        """The other side of a PRIVATE chat, even if they hid the chat or left."""
        other_ids = [i for i in self.pair_members(chat) if i != user_id]
        if not other_ids:
            return None
        result = await self.session.execute(
            select(User).where(User.id == other_ids[0]).execution_options(include_deleted=True)
        )
        return result.scalar_one_or_none()

    async def hide_chat(self, chat_id: int, user_id: int) -> None:
        member = await self.find_member(chat_id, user_id)
        if member is None:
            raise ChatNotFound(chat_id)
        member.deleted = True
        member.deleted_at = utcnow()
        await self.session.flush()

    async def delete_chat(self, chat_id: int, acting_user_id: int) -> List[int]:
        """Trash a chat for everyone; returns the ids of the former members."""
        chat = await self.get_chat(chat_id)
        min_role = MemberRole.ADMIN if chat.chat_type == ChatType.GROUP else MemberRole.MEMBER
        await self.require_role(chat_id, acting_user_id, min_role)

        user_ids = await self.member_ids(chat_id)
        now = utcnow()
        await self.session.execute(
            update(ChatMember)
            .where(ChatMember.chat_id == chat_id, ChatMember.deleted.is_(False))
            .values(deleted=True, deleted_at=now, modified_at=now)
        )
        chat.deleted = True
        await self.session.flush()
        logger.info("chat_deleted", chat_id=chat_id, by=acting_user_id)
        return user_ids
