"""Friend requests and friends list endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from app.api.deps import get_current_identity, get_social_graph
from app.schemas import (
    FriendRead,
    FriendRequestCreate,
    FriendRequestList,
    FriendRequestRead,
    FriendRequestRespond,
)
from app.services.identity import UserIdentity
from app.services.social_graph import SocialGraphManager, serialize_friend_request

router = APIRouter(prefix="/friends", tags=["friends"])


@router.get("", response_model=list[FriendRead])
async def list_friends(
    graph: SocialGraphManager = Depends(get_social_graph),
    identity: UserIdentity = Depends(get_current_identity),
) -> list[FriendRead]:
    """Return accepted friends for the current user."""

    return graph.serialize_friends(graph.list_friends(identity.user_id))


@router.get("/online", response_model=list[FriendRead])
async def list_online_friends(
    graph: SocialGraphManager = Depends(get_social_graph),
    identity: UserIdentity = Depends(get_current_identity),
) -> list[FriendRead]:
    """Friends that currently have a live connection."""

    return graph.serialize_friends(graph.list_online_friends(identity.user_id))


@router.delete("/{friend_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_friend(
    friend_id: int,
    graph: SocialGraphManager = Depends(get_social_graph),
    identity: UserIdentity = Depends(get_current_identity),
) -> Response:
    graph.unfriend(identity.user_id, friend_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/requests", response_model=FriendRequestList)
async def list_friend_requests(
    graph: SocialGraphManager = Depends(get_social_graph),
    identity: UserIdentity = Depends(get_current_identity),
) -> FriendRequestList:
    """Return incoming and outgoing pending friend requests."""

    incoming, outgoing = graph.list_pending_requests(identity.user_id)
    return FriendRequestList(
        incoming=[serialize_friend_request(item, graph.presence) for item in incoming],
        outgoing=[serialize_friend_request(item, graph.presence) for item in outgoing],
    )


@router.post("/requests", response_model=FriendRequestRead, status_code=status.HTTP_201_CREATED)
async def create_friend_request(
    payload: FriendRequestCreate,
    graph: SocialGraphManager = Depends(get_social_graph),
    identity: UserIdentity = Depends(get_current_identity),
) -> FriendRequestRead:
    """Send a new friend request by user id or username."""

    recipient_id = payload.recipient_id
    if recipient_id is None:
        recipient_id = graph.find_active_user_by_username(payload.username or "").id
    request = await graph.send_friend_request(identity.user_id, recipient_id)
    return serialize_friend_request(request, graph.presence)


@router.post("/requests/{request_id}/respond", response_model=FriendRequestRead)
async def respond_to_request(
    request_id: int,
    payload: FriendRequestRespond,
    graph: SocialGraphManager = Depends(get_social_graph),
    identity: UserIdentity = Depends(get_current_identity),
) -> FriendRequestRead:
    request = await graph.respond_to_request(request_id, identity.user_id, payload.decision)
    return serialize_friend_request(request, graph.presence)


@router.post("/requests/{request_id}/cancel", response_model=FriendRequestRead)
async def cancel_request(
    request_id: int,
    graph: SocialGraphManager = Depends(get_social_graph),
    identity: UserIdentity = Depends(get_current_identity),
) -> FriendRequestRead:
    request = await graph.cancel_request(request_id, identity.user_id)
    return serialize_friend_request(request, graph.presence)
