"""Conversation and message history endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response, status

from app.api.deps import (
    get_conversation_directory,
    get_current_identity,
    get_message_log,
)
from app.schemas import (
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
from app.services.conversations import ConversationDirectory, serialize_conversation
from app.services.identity import UserIdentity
from app.services.message_log import MessageLog
from app.services.presence import PresenceTracker
from app.services.realtime import get_presence_tracker
from app.services.social_graph import serialize_public_user

router = APIRouter(prefix="/conversations", tags=["conversations"])


def _read_model(
    directory: ConversationDirectory,
    conversation_id: int,
    user_id: int,
    presence: PresenceTracker,
) -> ConversationRead:
    conversation = directory.get_conversation(conversation_id)
    return serialize_conversation(directory.summarize(conversation, user_id), presence)


@router.get("", response_model=list[ConversationRead])
async def list_conversations(
    directory: ConversationDirectory = Depends(get_conversation_directory),
    presence: PresenceTracker = Depends(get_presence_tracker),
    identity: UserIdentity = Depends(get_current_identity),
) -> list[ConversationRead]:
    """Conversations of the current user, most recently active first."""

    return [
        serialize_conversation(summary, presence)
        for summary in directory.list_conversations(identity.user_id)
    ]


@router.get("/unread", response_model=UnreadSummary)
async def unread_summary(
    directory: ConversationDirectory = Depends(get_conversation_directory),
    identity: UserIdentity = Depends(get_current_identity),
) -> UnreadSummary:
    counts = directory.unread_counts(identity.user_id)
    return UnreadSummary(unread_count=sum(counts.values()), conversations=len(counts))


@router.get("/{conversation_id}", response_model=ConversationRead)
async def get_conversation(
    conversation_id: int,
    directory: ConversationDirectory = Depends(get_conversation_directory),
    presence: PresenceTracker = Depends(get_presence_tracker),
    identity: UserIdentity = Depends(get_current_identity),
) -> ConversationRead:
    """Members, last message and unread count of a conversation the caller belongs to."""

    conversation = directory.get_member_conversation(conversation_id, identity.user_id)
    return serialize_conversation(directory.summarize(conversation, identity.user_id), presence)


@router.post("/direct", response_model=ConversationRead)
async def open_direct_conversation(
    payload: DirectConversationCreate,
    response: Response,
    directory: ConversationDirectory = Depends(get_conversation_directory),
    presence: PresenceTracker = Depends(get_presence_tracker),
    identity: UserIdentity = Depends(get_current_identity),
) -> ConversationRead:
    """Return the direct conversation with a user, creating it on first use."""

    conversation, created = await directory.get_or_create_direct(identity.user_id, payload.user_id)
    if created:
        response.status_code = status.HTTP_201_CREATED
    return _read_model(directory, conversation.id, identity.user_id, presence)


@router.post("/groups", response_model=ConversationRead, status_code=status.HTTP_201_CREATED)
async def create_group(
    payload: GroupConversationCreate,
    directory: ConversationDirectory = Depends(get_conversation_directory),
    presence: PresenceTracker = Depends(get_presence_tracker),
    identity: UserIdentity = Depends(get_current_identity),
) -> ConversationRead:
    conversation = directory.create_group(identity.user_id, payload.name, payload.member_ids)
    return _read_model(directory, conversation.id, identity.user_id, presence)


@router.patch("/{conversation_id}", response_model=ConversationRead)
async def rename_group(
    conversation_id: int,
    payload: GroupConversationUpdate,
    directory: ConversationDirectory = Depends(get_conversation_directory),
    presence: PresenceTracker = Depends(get_presence_tracker),
    identity: UserIdentity = Depends(get_current_identity),
) -> ConversationRead:
    directory.rename_group(conversation_id, identity.user_id, payload.name)
    return _read_model(directory, conversation_id, identity.user_id, presence)


@router.post(
    "/{conversation_id}/members",
    response_model=ConversationMemberRead,
    status_code=status.HTTP_201_CREATED,
)
async def add_member(
    conversation_id: int,
    payload: MemberAdd,
    directory: ConversationDirectory = Depends(get_conversation_directory),
    presence: PresenceTracker = Depends(get_presence_tracker),
    identity: UserIdentity = Depends(get_current_identity),
) -> ConversationMemberRead:
    membership = directory.add_member(conversation_id, identity.user_id, payload.user_id)
    return ConversationMemberRead(
        user=serialize_public_user(membership.user, presence),
        joined_at=membership.joined_at,
        last_read_sequence=membership.last_read_sequence,
    )


@router.delete("/{conversation_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_member(
    conversation_id: int,
    user_id: int,
    directory: ConversationDirectory = Depends(get_conversation_directory),
    identity: UserIdentity = Depends(get_current_identity),
) -> Response:
    directory.remove_member(conversation_id, identity.user_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{conversation_id}/read", response_model=ReadMarkerRead)
async def mark_read(
    conversation_id: int,
    payload: ReadMarkerUpdate | None = None,
    directory: ConversationDirectory = Depends(get_conversation_directory),
    identity: UserIdentity = Depends(get_current_identity),
) -> ReadMarkerRead:
    sequence = payload.sequence if payload is not None else None
    membership = directory.mark_read(conversation_id, identity.user_id, sequence)
    return ReadMarkerRead(
        conversation_id=conversation_id,
        last_read_sequence=membership.last_read_sequence,
        unread_count=directory.unread_count(conversation_id, identity.user_id),
    )


@router.get("/{conversation_id}/messages", response_model=MessagePage)
async def fetch_history(
    conversation_id: int,
    before: int | None = Query(default=None, ge=1, description="Only messages with a lower sequence"),
    limit: int | None = Query(default=None, ge=1, description="Page size, clamped to the configured maximum"),
    log: MessageLog = Depends(get_message_log),
    identity: UserIdentity = Depends(get_current_identity),
) -> MessagePage:
    page = await log.fetch_history(conversation_id, identity.user_id, before_sequence=before, limit=limit)
    return page.to_schema()


@router.post(
    "/{conversation_id}/messages",
    response_model=MessageRead,
    status_code=status.HTTP_201_CREATED,
)
async def post_message(
    conversation_id: int,
    payload: MessageCreate,
    log: MessageLog = Depends(get_message_log),
    identity: UserIdentity = Depends(get_current_identity),
) -> MessageRead:
    message = await log.append(conversation_id, identity.user_id, payload.content)
    return MessageRead.model_validate(message)
