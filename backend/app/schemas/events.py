"""Tagged events pushed over the live event stream."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from app.models.enums import PresenceStatus
from app.schemas.conversations import MessageRead
from app.schemas.users import FriendRequestRead


class MessageNewEvent(BaseModel):
    type: Literal["message.new"] = "message.new"
    conversation_id: int
    message: MessageRead


class FriendRequestCreatedEvent(BaseModel):
    type: Literal["friendRequest.created"] = "friendRequest.created"
    request: FriendRequestRead


class FriendRequestResolvedEvent(BaseModel):
    type: Literal["friendRequest.resolved"] = "friendRequest.resolved"
    request: FriendRequestRead


class PresenceChangedEvent(BaseModel):
    type: Literal["presence.changed"] = "presence.changed"
    user_id: int
    status: PresenceStatus
    changed_at: datetime


Event = Annotated[
    Union[MessageNewEvent, FriendRequestCreatedEvent, FriendRequestResolvedEvent, PresenceChangedEvent],
    Field(discriminator="type"),
]

event_adapter: TypeAdapter[Event] = TypeAdapter(Event)


def parse_event(payload: dict) -> Event:
    """Validate a serialized event (e.g. relayed from another node)."""

    return event_adapter.validate_python(payload)
