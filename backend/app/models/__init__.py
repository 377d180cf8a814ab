"""Database models package."""

from .base import Base
from .chat import (
    Conversation,
    ConversationMember,
    FriendRequest,
    Friendship,
    Message,
    User,
    normalize_pair,
)
from .enums import (
    AccountStatus,
    ConversationType,
    FriendRequestDecision,
    FriendRequestStatus,
    FriendshipState,
    PresenceStatus,
)

__all__ = [
    "Base",
    "User",
    "FriendRequest",
    "Friendship",
    "Conversation",
    "ConversationMember",
    "Message",
    "normalize_pair",
    "AccountStatus",
    "ConversationType",
    "FriendRequestDecision",
    "FriendRequestStatus",
    "FriendshipState",
    "PresenceStatus",
]
