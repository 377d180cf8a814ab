"""Schemas for conversations and their message logs."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.models.enums import ConversationType
from app.schemas.users import PublicUser


class MessageRead(BaseModel):
    """Serialized representation of a logged message."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    conversation_id: int
    sender_id: int | None
    sequence: int
    content: str
    created_at: datetime


class MessagePage(BaseModel):
    """Slice of history, newest message first."""

    items: list[MessageRead] = Field(default_factory=list)
    has_more: bool = False
    next_before: int | None = Field(
        default=None,
        description="Pass as `before` to fetch the next older page",
    )


class MessageCreate(BaseModel):
    content: str


class ConversationMemberRead(BaseModel):
    """Member of a conversation with their read position."""

    user: PublicUser
    joined_at: datetime
    last_read_sequence: int = 0


class ConversationRead(BaseModel):
    """Conversation summary as seen by one member."""

    id: int
    type: ConversationType
    name: str | None = None
    creator_id: int | None = None
    created_at: datetime
    last_message_at: datetime | None = None
    last_sequence: int = 0
    members: list[ConversationMemberRead] = Field(default_factory=list)
    last_message: MessageRead | None = None
    unread_count: int = 0


class DirectConversationCreate(BaseModel):
    user_id: int = Field(..., description="The other participant")


class GroupConversationCreate(BaseModel):
    name: str = Field(..., max_length=128)
    member_ids: list[int] = Field(default_factory=list, description="Initial members besides the creator")


class GroupConversationUpdate(BaseModel):
    name: str = Field(..., max_length=128)


class MemberAdd(BaseModel):
    user_id: int


class ReadMarkerUpdate(BaseModel):
    sequence: int | None = Field(
        default=None,
        ge=0,
        description="Last read sequence; defaults to the newest message",
    )


class ReadMarkerRead(BaseModel):
    conversation_id: int
    last_read_sequence: int
    unread_count: int


class UnreadSummary(BaseModel):
    """Unread messages across every conversation of the caller."""

    unread_count: int
    conversations: int = Field(..., description="Conversations with at least one unread message")
