"""Schemas related to user profiles and friendships."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models.enums import FriendRequestDecision, FriendRequestStatus, FriendshipState, PresenceStatus


class PublicUser(BaseModel):
    """Minimal public-facing user information."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    display_name: str | None = None
    presence: PresenceStatus = PresenceStatus.OFFLINE


class UserSearchResult(PublicUser):
    """Search hit annotated with the caller's relationship to that user."""

    friendship: FriendshipState = FriendshipState.NONE


class FriendRead(PublicUser):
    """Friend entry with the time the friendship was established."""

    friends_since: datetime


class FriendRequestRead(BaseModel):
    """Serialized friend request including participants."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    sender: PublicUser
    recipient: PublicUser
    status: FriendRequestStatus
    created_at: datetime
    responded_at: datetime | None = None


class FriendRequestList(BaseModel):
    """Categorized friend requests for convenience in the UI."""

    incoming: list[FriendRequestRead] = Field(default_factory=list)
    outgoing: list[FriendRequestRead] = Field(default_factory=list)


class FriendRequestCreate(BaseModel):
    """Payload for sending a friend request, addressed by id or username."""

    recipient_id: int | None = Field(default=None, description="Target user id")
    username: str | None = Field(default=None, max_length=64, description="Target username")

    @model_validator(mode="after")
    def _require_target(self) -> "FriendRequestCreate":
        if self.recipient_id is None and not (self.username or "").strip():
            raise ValueError("Either recipient_id or username must be provided")
        return self


class FriendRequestRespond(BaseModel):
    """Recipient's answer to a pending friend request."""

    decision: FriendRequestDecision


class PresenceUpdate(BaseModel):
    """Self-selected presence while connected."""

    status: PresenceStatus
