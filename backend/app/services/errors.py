"""Domain errors shared by the service layer.

Every error carries the HTTP status it maps to and a stable machine-readable
``code``. The REST layer renders them as ``{"detail", "code", ...context}`` and
the event stream sends them as ``{"type": "error", ...}`` frames.
"""

from __future__ import annotations

from typing import Any

from fastapi import status


class NexusError(Exception):
    """Base exception for the application."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "error"
    default_detail: str = "Request could not be processed"

    def __init__(self, detail: str | None = None, **context: Any) -> None:
        self.detail = detail or self.default_detail
        self.context = context
        super().__init__(self.detail)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"detail": self.detail, "code": self.code}
        payload.update(self.context)
        return payload


class Unauthenticated(NexusError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "unauthenticated"
    default_detail = "Could not validate credentials"


class Forbidden(NexusError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"
    default_detail = "Operation not permitted"


class NotAMember(Forbidden):
    code = "not_a_member"
    default_detail = "You are not a member of this conversation"


class NotFound(NexusError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"
    default_detail = "Resource not found"


class Conflict(NexusError):
    status_code = status.HTTP_409_CONFLICT
    code = "conflict"
    default_detail = "Resource state conflict"


class AlreadyFriends(Conflict):
    code = "already_friends"
    default_detail = "Users are already friends"


class DuplicatePending(Conflict):
    code = "duplicate_pending"
    default_detail = "A pending friend request already exists between these users"


class AlreadyResolved(Conflict):
    code = "already_resolved"
    default_detail = "Friend request is no longer pending"


class AlreadyMember(Conflict):
    code = "already_member"
    default_detail = "User is already a member of this conversation"


class InvalidInput(NexusError):
    status_code = 422
    code = "invalid_input"
    default_detail = "Invalid input"


class InvalidTarget(InvalidInput):
    code = "invalid_target"
    default_detail = "Invalid target user"


class InvalidName(InvalidInput):
    code = "invalid_name"
    default_detail = "Conversation name must not be empty"


class EmptyContent(InvalidInput):
    code = "empty_content"
    default_detail = "Message content must not be empty"


class ContentTooLong(InvalidInput):
    code = "content_too_long"
    default_detail = "Message content is too long"


class TransientFailure(NexusError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "transient_failure"
    default_detail = "Temporary storage failure, please retry"


__all__ = [
    "NexusError",
    "Unauthenticated",
    "Forbidden",
    "NotAMember",
    "NotFound",
    "Conflict",
    "AlreadyFriends",
    "DuplicatePending",
    "AlreadyResolved",
    "AlreadyMember",
    "InvalidInput",
    "InvalidTarget",
    "InvalidName",
    "EmptyContent",
    "ContentTooLong",
    "TransientFailure",
]
