"""User directory endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_current_identity, get_social_graph
from app.config import get_settings
from app.schemas import PublicUser, UserSearchResult
from app.services.identity import UserIdentity
from app.services.social_graph import SocialGraphManager, serialize_public_user

router = APIRouter(prefix="/users", tags=["users"])

settings = get_settings()


@router.get("/search", response_model=list[UserSearchResult])
async def search_users(
    q: str = Query(..., min_length=1, max_length=64, description="Username or display name fragment"),
    limit: int = Query(default=20, ge=1),
    graph: SocialGraphManager = Depends(get_social_graph),
    identity: UserIdentity = Depends(get_current_identity),
) -> list[UserSearchResult]:
    """Find active users, annotated with the caller's friendship state."""

    return graph.search_users(identity.user_id, q, min(limit, settings.user_search_max_limit))


@router.get("/{user_id}", response_model=PublicUser)
async def get_user(
    user_id: int,
    graph: SocialGraphManager = Depends(get_social_graph),
    identity: UserIdentity = Depends(get_current_identity),
) -> PublicUser:
    return serialize_public_user(graph.get_active_user(user_id), graph.presence)
