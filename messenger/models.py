import enum

from sqlalchemy import (Column, Integer, BigInteger, String, Float, DateTime, ForeignKey,
                        Boolean, Text, Enum, Index, text)
from sqlalchemy.orm import relationship

from .db import Base, SoftDeleteMixin, utcnow


class ChatType(str, enum.Enum):
    PRIVATE = "PRIVATE"
    GROUP = "GROUP"


class MemberRole(str, enum.Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]


_ROLE_RANK = {MemberRole.MEMBER: 0, MemberRole.ADMIN: 1, MemberRole.OWNER: 2}


class MessageType(str, enum.Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    AUDIO = "AUDIO"
    DOCUMENT = "DOCUMENT"
    LOCATION = "LOCATION"
    OTHER = "OTHER"


class UserStatus(str, enum.Enum):
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"


def _enum(cls):
    return Enum(cls, native_enum=False, length=16, validate_strings=True)


class User(SoftDeleteMixin, Base):
    __tablename__ = "users"
    telegram_id = Column(BigInteger, unique=True, nullable=False, index=True)
    first_name = Column(String(255), nullable=False)
    username = Column(String(64), unique=True, nullable=False, index=True)
    avatar_url = Column(Text, nullable=True)
    bio = Column(Text, nullable=True)
    auth_date = Column(BigInteger, nullable=True)
    status = Column(_enum(UserStatus), nullable=False, default=UserStatus.OFFLINE)
    last_seen = Column(DateTime, nullable=True)


class Chat(SoftDeleteMixin, Base):
    __tablename__ = "chats"
    chat_type = Column(_enum(ChatType), nullable=False)
    group_name = Column(String(255), nullable=True)
    avatar_url = Column(Text, nullable=True)
    # "<lower user id>:<higher user id>" for PRIVATE chats, NULL for groups.
    pair_key = Column(String(64), nullable=True)

    __table_args__ = (
        Index("uq_chats_private_pair", "pair_key", unique=True,
              sqlite_where=text("NOT deleted"), postgresql_where=text("NOT deleted")),
    )


class ChatMember(SoftDeleteMixin, Base):
    __tablename__ = "chat_members"
    chat_id = Column(Integer, ForeignKey("chats.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    role = Column(_enum(MemberRole), nullable=False, default=MemberRole.MEMBER)
    joined_at = Column(DateTime, nullable=False, default=utcnow)
    deleted_at = Column(DateTime, nullable=True)

    user = relationship("User", lazy="raise")

    __table_args__ = (
        Index("uq_chat_members_active", "chat_id", "user_id", unique=True,
              sqlite_where=text("NOT deleted"), postgresql_where=text("NOT deleted")),
    )


class Message(SoftDeleteMixin, Base):
    __tablename__ = "messages"
    chat_id = Column(Integer, ForeignKey("chats.id"), nullable=False)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    message_type = Column(_enum(MessageType), nullable=False, default=MessageType.TEXT)
    content = Column(Text, nullable=True)
    file_url = Column(Text, nullable=True)
    file_hash = Column(String(64), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    reply_to_id = Column(Integer, ForeignKey("messages.id"), nullable=True)
    edited = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_messages_chat_created", "chat_id", "created_at", "id"),
    )


class MessageStatus(SoftDeleteMixin, Base):
    __tablename__ = "message_status"
    message_id = Column(Integer, ForeignKey("messages.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_message_status_user_unread", "user_id", "is_read"),
        Index("ix_message_status_message", "message_id"),
    )


class FileAsset(SoftDeleteMixin, Base):
    __tablename__ = "files"
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    original_name = Column(String(255), nullable=False)
    file_url = Column(Text, nullable=False)
    size = Column(BigInteger, nullable=False)
    extension = Column(String(16), nullable=True)
    message_type = Column(_enum(MessageType), nullable=False)
    hash = Column(String(64), nullable=False, unique=True, index=True)
