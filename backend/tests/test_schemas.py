"""Unit tests validating Pydantic schema constraints."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from app.models import PresenceStatus
from app.schemas import FriendRequestCreate, PresenceUpdate, ReadMarkerUpdate
from app.schemas.events import MessageNewEvent, PresenceChangedEvent, parse_event


def test_friend_request_needs_a_target():
    with pytest.raises(ValidationError):
        FriendRequestCreate()
    with pytest.raises(ValidationError):
        FriendRequestCreate(username="   ")
    assert FriendRequestCreate(username="bob").recipient_id is None


def test_read_marker_rejects_negative_sequence():
    with pytest.raises(ValidationError):
        ReadMarkerUpdate(sequence=-1)
    assert ReadMarkerUpdate().sequence is None


def test_presence_update_accepts_known_statuses():
    assert PresenceUpdate(status="away").status == PresenceStatus.AWAY
    with pytest.raises(ValidationError):
        PresenceUpdate(status="busy")


def test_events_are_parsed_by_type_tag():
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    payload = {
        "type": "message.new",
        "conversation_id": 3,
        "message": {
            "id": 10,
            "conversation_id": 3,
            "sender_id": 1,
            "sequence": 4,
            "content": "hello",
            "created_at": now.isoformat(),
        },
    }

    event = parse_event(payload)

    assert isinstance(event, MessageNewEvent)
    assert event.message.sequence == 4
    assert event.model_dump(mode="json")["type"] == "message.new"


def test_presence_event_round_trips_through_json():
    event = PresenceChangedEvent(user_id=1, status=PresenceStatus.ONLINE, changed_at=datetime.now(timezone.utc))

    parsed = parse_event(event.model_dump(mode="json"))

    assert parsed == event


@pytest.mark.parametrize("payload", [{}, {"type": "room.deleted"}, {"type": "presence.changed", "user_id": 1}])
def test_unknown_or_incomplete_events_are_rejected(payload):
    with pytest.raises(ValidationError):
        parse_event(payload)
