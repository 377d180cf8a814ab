from __future__ import annotations

from enum import Enum


class AccountStatus(str, Enum):
    """Lifecycle states of a user account."""

    ACTIVE = "active"
    SUSPENDED = "suspended"
    DELETED = "deleted"


class PresenceStatus(str, Enum):
    """Presence indicator derived from live connections."""

    ONLINE = "online"
    AWAY = "away"
    OFFLINE = "offline"


class FriendRequestStatus(str, Enum):
    """Lifecycle states for friend requests."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CANCELLED = "cancelled"


class FriendRequestDecision(str, Enum):
    """Answer a recipient can give to a pending friend request."""

    ACCEPT = "accept"
    DECLINE = "decline"


class ConversationType(str, Enum):
    """Kinds of conversations."""

    DIRECT = "direct"
    GROUP = "group"


class FriendshipState(str, Enum):
    """Relationship between the searching user and a search result."""

    NONE = "none"
    FRIENDS = "friends"
    PENDING_OUTGOING = "pending_outgoing"
    PENDING_INCOMING = "pending_incoming"
