"""Pydantic schemas for API payloads."""

from .conversations import (
    ConversationMemberRead,
    ConversationRead,
    DirectConversationCreate,
    GroupConversationCreate,
    GroupConversationUpdate,
    MemberAdd,
    MessageCreate,
    MessagePage,
    MessageRead,
    ReadMarkerRead,
    ReadMarkerUpdate,
    UnreadSummary,
)
from .events import (
    Event,
    FriendRequestCreatedEvent,
    FriendRequestResolvedEvent,
    MessageNewEvent,
    PresenceChangedEvent,
    event_adapter,
    parse_event,
)
from .users import (
    FriendRead,
    FriendRequestCreate,
    FriendRequestList,
    FriendRequestRead,
    FriendRequestRespond,
    PresenceUpdate,
    PublicUser,
    UserSearchResult,
)

__all__ = [
    "PublicUser",
    "UserSearchResult",
    "FriendRead",
    "FriendRequestRead",
    "FriendRequestList",
    "FriendRequestCreate",
    "FriendRequestRespond",
    "PresenceUpdate",
    "MessageRead",
    "MessagePage",
    "MessageCreate",
    "ConversationMemberRead",
    "ConversationRead",
    "DirectConversationCreate",
    "GroupConversationCreate",
    "GroupConversationUpdate",
    "MemberAdd",
    "ReadMarkerUpdate",
    "ReadMarkerRead",
    "UnreadSummary",
    "Event",
    "MessageNewEvent",
    "FriendRequestCreatedEvent",
    "FriendRequestResolvedEvent",
    "PresenceChangedEvent",
    "event_adapter",
    "parse_event",
]
