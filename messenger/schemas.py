from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Generic, List, Literal, Optional, TypeVar, Union
from datetime import datetime

from .models import ChatType, MemberRole, MessageType, UserStatus

T = TypeVar("T")


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# --- auth / users ---

class TelegramLogin(BaseModel):
    """Payload produced by the Telegram login widget."""
    id: int
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None
    photo_url: Optional[str] = None
    auth_date: int
    hash: str


class Token(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class RefreshRequest(BaseModel):
    refresh_token: str


class UserOut(ORMModel):
    id: int
    telegram_id: int
    first_name: str
    username: str
    avatar_url: Optional[str] = None
    bio: Optional[str] = None


class UserUpdate(BaseModel):
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    username: Optional[str] = Field(default=None, min_length=3, max_length=64, pattern=r"^[A-Za-z0-9_]+$")
    bio: Optional[str] = None
    avatar_hash: Optional[str] = None


class UserStatusOut(ORMModel):
    status: UserStatus
    last_seen: Optional[datetime] = None


class Counterpart(ORMModel):
    id: int
    first_name: str
    username: str
    avatar_url: Optional[str] = None
    status: UserStatus
    last_seen: Optional[datetime] = None


# --- chats ---

class ChatOut(ORMModel):
    id: int
    chat_type: ChatType
    group_name: Optional[str] = None
    avatar_url: Optional[str] = None


class GroupCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    avatar_hash: Optional[str] = None
    member_ids: List[int] = []


class PrivateChatCreate(BaseModel):
    user_id: int


class AddMembers(BaseModel):
    member_ids: List[int]


class MemberOut(BaseModel):
    user_id: int
    first_name: str
    username: str
    avatar_url: Optional[str] = None
    role: MemberRole


class GroupChatOut(BaseModel):
    id: int
    chat_type: ChatType
    group_name: Optional[str] = None
    avatar_url: Optional[str] = None
    members: List[MemberOut]


class MessageOut(ORMModel):
    id: int
    chat_id: int
    sender_id: int
    message_type: MessageType
    content: Optional[str] = None
    file_url: Optional[str] = None
    file_hash: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    reply_to_id: Optional[int] = None
    edited: bool = False
    created_at: datetime


class ChatListItem(BaseModel):
    chat_id: int
    chat_type: ChatType
    chat_name: Optional[str] = None
    avatar_url: Optional[str] = None
    last_message: Optional[MessageOut] = None
    last_message_at: Optional[datetime] = None
    unread_count: int = 0
    counterpart: Optional[Counterpart] = None


class Page(BaseModel, Generic[T]):
    items: List[T]
    total: int
    page: int
    size: int


class FileOut(ORMModel):
    id: int
    original_name: str
    hash: str
    message_type: MessageType
    file_url: str
    size: int


# --- inbound real-time frames ---

class SendMessage(BaseModel):
    type: Literal["send_message"] = "send_message"
    chat_id: Optional[int] = None
    receiver_id: Optional[int] = None
    message_type: Optional[MessageType] = None
    content: Optional[str] = None
    file_hash: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    reply_to_id: Optional[int] = None

    @model_validator(mode="after")
    def _target(self):
        if self.chat_id is None and self.receiver_id is None:
            raise ValueError("chat_id or receiver_id is required")
        return self


class MarkRead(BaseModel):
    type: Literal["mark_read"] = "mark_read"
    chat_id: int
    message_ids: List[int] = []


class EditMessage(BaseModel):
    type: Literal["edit_message"] = "edit_message"
    chat_id: int
    message_id: int
    content: Optional[str] = None


class DeleteMessages(BaseModel):
    type: Literal["delete_messages"] = "delete_messages"
    chat_id: int
    message_ids: List[int]


class Subscribe(BaseModel):
    type: Literal["subscribe"] = "subscribe"
    chat_id: int


Frame = Union[SendMessage, MarkRead, EditMessage, DeleteMessages, Subscribe]


# --- outbound events ---

class MessageCreated(BaseModel):
    event: Literal["MessageCreated"] = "MessageCreated"
    message: MessageOut


class MessageUpdated(BaseModel):
    event: Literal["MessageUpdated"] = "MessageUpdated"
    message: MessageOut


class MessageDeleted(BaseModel):
    event: Literal["MessageDeleted"] = "MessageDeleted"
    chat_id: int
    message_ids: List[int]


class ChatListChanged(ChatListItem):
    event: Literal["ChatListChanged"] = "ChatListChanged"


class UnreadChanged(BaseModel):
    event: Literal["UnreadChanged"] = "UnreadChanged"
    chat_id: int
    unread_count: int


class MessagesRead(BaseModel):
    event: Literal["MessagesRead"] = "MessagesRead"
    chat_id: int
    reader_id: int
    message_ids: List[int]


class ChatDeleted(BaseModel):
    event: Literal["ChatDeleted"] = "ChatDeleted"
    chat_id: int


class ErrorEvent(BaseModel):
    event: Literal["Error"] = "Error"
    code: int
    message: str


class Envelope(BaseModel):
    destination: str
    event: str
    payload: dict
