"""Friend requests and friendship edges."""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.retry import run_with_retry
from app.models import (
    AccountStatus,
    FriendRequest,
    FriendRequestDecision,
    FriendRequestStatus,
    Friendship,
    FriendshipState,
    PresenceStatus,
    User,
    normalize_pair,
)
from app.models.base import utcnow
from app.schemas.events import FriendRequestCreatedEvent, FriendRequestResolvedEvent
from app.schemas.users import FriendRead, FriendRequestRead, PublicUser, UserSearchResult
from app.services.delivery import DeliveryRouter
from app.services.errors import (
    AlreadyFriends,
    AlreadyResolved,
    DuplicatePending,
    Forbidden,
    InvalidTarget,
    NotFound,
)
from app.services.presence import PresenceTracker

logger = logging.getLogger(__name__)


def _contains_pattern(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def serialize_public_user(user: User, presence: PresenceTracker | None = None) -> PublicUser:
    status = presence.status_of(user.id) if presence is not None else PresenceStatus.OFFLINE
    return PublicUser(id=user.id, username=user.username, display_name=user.display_name, presence=status)


def serialize_friend_request(
    request: FriendRequest, presence: PresenceTracker | None = None
) -> FriendRequestRead:
    return FriendRequestRead(
        id=request.id,
        sender=serialize_public_user(request.sender, presence),
        recipient=serialize_public_user(request.recipient, presence),
        status=request.status,
        created_at=request.created_at,
        responded_at=request.responded_at,
    )


class _StaleRequest(Exception):
    """The conditional status update matched no pending row."""


class SocialGraphManager:
    """Friend-request lifecycle and the friendship graph.

    ``pending`` is the only non-terminal request state. Every transition out
    of it is a conditional ``UPDATE ... WHERE status = 'pending'`` so a replayed
    or concurrent answer can never be applied twice, and accepting a request
    inserts the friendship edge in the same transaction.
    """

    def __init__(
        self,
        db: Session,
        router: DeliveryRouter | None = None,
        presence: PresenceTracker | None = None,
    ) -> None:
        self.db = db
        self.router = router
        self.presence = presence

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get_active_user(self, user_id: int) -> User:
        user = self.db.get(User, user_id)
        if user is None or not user.is_active:
            raise NotFound("User not found", user_id=user_id)
        return user

    def find_active_user_by_username(self, username: str) -> User:
        stmt = select(User).where(User.username == username.strip())
        user = self.db.execute(stmt).scalar_one_or_none()
        if user is None or not user.is_active:
            raise NotFound("User not found")
        return user

    def get_friendship(self, first_id: int, second_id: int) -> Friendship | None:
        low, high = normalize_pair(first_id, second_id)
        stmt = select(Friendship).where(Friendship.user_a_id == low, Friendship.user_b_id == high)
        return self.db.execute(stmt).scalar_one_or_none()

    def are_friends(self, first_id: int, second_id: int) -> bool:
        return self.get_friendship(first_id, second_id) is not None

    def get_pending_between(self, first_id: int, second_id: int) -> FriendRequest | None:
        low, high = normalize_pair(first_id, second_id)
        stmt = select(FriendRequest).where(
            FriendRequest.pair_low_id == low,
            FriendRequest.pair_high_id == high,
            FriendRequest.status == FriendRequestStatus.PENDING,
        )
        return self.db.execute(stmt).scalars().first()

    def friend_ids(self, user_id: int) -> set[int]:
        stmt = select(Friendship).where(or_(Friendship.user_a_id == user_id, Friendship.user_b_id == user_id))
        return {friendship.other(user_id) for friendship in self.db.execute(stmt).scalars()}

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
    async def send_friend_request(self, sender_id: int, recipient_id: int) -> FriendRequest:
        if sender_id == recipient_id:
            raise InvalidTarget("You cannot send a friend request to yourself")
        self.get_active_user(recipient_id)
        if self.are_friends(sender_id, recipient_id):
            raise AlreadyFriends(friend_id=recipient_id)
        existing = self.get_pending_between(sender_id, recipient_id)
        if existing is not None:
            raise DuplicatePending(request_id=existing.id, status=existing.status.value)

        low, high = normalize_pair(sender_id, recipient_id)
        request = FriendRequest(
            sender_id=sender_id,
            recipient_id=recipient_id,
            pair_low_id=low,
            pair_high_id=high,
            status=FriendRequestStatus.PENDING,
        )
        self.db.add(request)
        try:
            self.db.commit()
        except IntegrityError:
            # A concurrent request for the same pair won the partial unique index
            self.db.rollback()
            existing = self.get_pending_between(sender_id, recipient_id)
            raise DuplicatePending(
                request_id=existing.id if existing is not None else None,
                status=FriendRequestStatus.PENDING.value,
            ) from None
        self.db.refresh(request)
        logger.info(
            "Friend request created",
            extra={"request_id": request.id, "sender_id": sender_id, "recipient_id": recipient_id},
        )

        await self._emit(
            FriendRequestCreatedEvent(request=serialize_friend_request(request, self.presence)),
            (recipient_id, sender_id),
        )
        return request

    def _load_request(self, request_id: int) -> FriendRequest:
        request = self.db.get(FriendRequest, request_id)
        if request is None:
            raise NotFound("Friend request not found", request_id=request_id)
        return request

    def _transition(self, request_id: int, new_status: FriendRequestStatus, *, create_edge: bool) -> None:
        result = self.db.execute(
            update(FriendRequest)
            .where(FriendRequest.id == request_id, FriendRequest.status == FriendRequestStatus.PENDING)
            .values(status=new_status, responded_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise _StaleRequest()
        if create_edge:
            request = self.db.get(FriendRequest, request_id)
            low, high = normalize_pair(request.sender_id, request.recipient_id)
            self.db.add(Friendship(user_a_id=low, user_b_id=high, request_id=request_id))
        self.db.commit()

    async def _resolve(
        self,
        request: FriendRequest,
        new_status: FriendRequestStatus,
        *,
        create_edge: bool = False,
    ) -> FriendRequest:
        request_id = request.id
        try:
            await run_with_retry(
                self.db,
                lambda: self._transition(request_id, new_status, create_edge=create_edge),
                name=f"friend_request.{new_status.value}",
            )
        except _StaleRequest:
            self.db.rollback()
            self.db.refresh(request)
            raise AlreadyResolved(request_id=request_id, status=request.status.value) from None
        except IntegrityError:
            self.db.rollback()
            raise AlreadyFriends(request_id=request_id) from None
        self.db.refresh(request)
        logger.info(
            "Friend request resolved",
            extra={"request_id": request_id, "status": new_status.value},
        )
        await self._emit(
            FriendRequestResolvedEvent(request=serialize_friend_request(request, self.presence)),
            (request.sender_id, request.recipient_id),
        )
        return request

    async def respond_to_request(
        self,
        request_id: int,
        responder_id: int,
        decision: FriendRequestDecision,
    ) -> FriendRequest:
        request = self._load_request(request_id)
        if request.recipient_id != responder_id:
            raise NotFound("Friend request not found", request_id=request_id)
        if request.status != FriendRequestStatus.PENDING:
            raise AlreadyResolved(request_id=request_id, status=request.status.value)
        decision = FriendRequestDecision(decision)
        if decision == FriendRequestDecision.ACCEPT:
            return await self._resolve(request, FriendRequestStatus.ACCEPTED, create_edge=True)
        return await self._resolve(request, FriendRequestStatus.DECLINED)

    async def cancel_request(self, request_id: int, sender_id: int) -> FriendRequest:
        request = self._load_request(request_id)
        if request.sender_id != sender_id:
            raise Forbidden("Only the sender can cancel a friend request")
        if request.status != FriendRequestStatus.PENDING:
            raise AlreadyResolved(request_id=request_id, status=request.status.value)
        return await self._resolve(request, FriendRequestStatus.CANCELLED)

    def list_pending_requests(self, user_id: int) -> tuple[list[FriendRequest], list[FriendRequest]]:
        """Return ``(incoming, outgoing)`` pending requests, newest first."""

        stmt = (
            select(FriendRequest)
            .where(
                FriendRequest.status == FriendRequestStatus.PENDING,
                or_(FriendRequest.sender_id == user_id, FriendRequest.recipient_id == user_id),
            )
            .order_by(FriendRequest.created_at.desc(), FriendRequest.id.desc())
        )
        incoming: list[FriendRequest] = []
        outgoing: list[FriendRequest] = []
        for request in self.db.execute(stmt).scalars():
            (incoming if request.recipient_id == user_id else outgoing).append(request)
        return incoming, outgoing

    # ------------------------------------------------------------------
    # Friends
    # ------------------------------------------------------------------
    def unfriend(self, user_id: int, friend_id: int) -> bool:
        """Remove the friendship edge; returns whether one existed."""

        friendship = self.get_friendship(user_id, friend_id)
        if friendship is None:
            return False
        self.db.delete(friendship)
        self.db.commit()
        logger.info("Friendship removed", extra={"user_id": user_id, "friend_id": friend_id})
        return True

    def list_friends(self, user_id: int) -> list[tuple[User, Friendship]]:
        stmt = (
            select(User, Friendship)
            .join(
                Friendship,
                or_(
                    and_(Friendship.user_a_id == user_id, Friendship.user_b_id == User.id),
                    and_(Friendship.user_b_id == user_id, Friendship.user_a_id == User.id),
                ),
            )
            .where(User.status == AccountStatus.ACTIVE)
            .order_by(func.lower(func.coalesce(User.display_name, User.username)), User.id)
        )
        return [(user, friendship) for user, friendship in self.db.execute(stmt).all()]

    def list_online_friends(self, user_id: int) -> list[tuple[User, Friendship]]:
        if self.presence is None:
            return []
        rows = self.list_friends(user_id)
        statuses = self.presence.snapshot(user.id for user, _ in rows)
        return [(user, friendship) for user, friendship in rows if statuses[user.id] != PresenceStatus.OFFLINE]

    def serialize_friends(self, rows: Sequence[tuple[User, Friendship]]) -> list[FriendRead]:
        return [
            FriendRead(
                **serialize_public_user(user, self.presence).model_dump(),
                friends_since=friendship.created_at,
            )
            for user, friendship in rows
        ]

    def search_users(self, user_id: int, query: str, limit: int = 20) -> list[UserSearchResult]:
        """Active users whose username or display name contains *query*."""

        term = query.strip().lower()
        if not term:
            return []
        pattern = _contains_pattern(term)
        stmt = (
            select(User)
            .where(
                User.id != user_id,
                User.status == AccountStatus.ACTIVE,
                or_(
                    func.lower(User.username).like(pattern, escape="\\"),
                    func.lower(User.display_name).like(pattern, escape="\\"),
                ),
            )
            .order_by(User.username)
            .limit(max(1, limit))
        )
        users = list(self.db.execute(stmt).scalars())
        states = self._friendship_states(user_id, [user.id for user in users])
        return [
            UserSearchResult(
                **serialize_public_user(user, self.presence).model_dump(),
                friendship=states.get(user.id, FriendshipState.NONE),
            )
            for user in users
        ]

    def _friendship_states(self, user_id: int, other_ids: Iterable[int]) -> dict[int, FriendshipState]:
        others = set(other_ids)
        if not others:
            return {}
        states: dict[int, FriendshipState] = {}
        pending = self.db.execute(
            select(FriendRequest.sender_id, FriendRequest.recipient_id).where(
                FriendRequest.status == FriendRequestStatus.PENDING,
                or_(
                    and_(FriendRequest.sender_id == user_id, FriendRequest.recipient_id.in_(others)),
                    and_(FriendRequest.recipient_id == user_id, FriendRequest.sender_id.in_(others)),
                ),
            )
        ).all()
        for sender, recipient in pending:
            if sender == user_id:
                states[recipient] = FriendshipState.PENDING_OUTGOING
            else:
                states[sender] = FriendshipState.PENDING_INCOMING
        for friend_id in self.friend_ids(user_id) & others:
            states[friend_id] = FriendshipState.FRIENDS
        return states

    async def _emit(self, event, recipients: Iterable[int]) -> None:
        if self.router is None:
            return
        try:
            await self.router.publish(event, recipients)
        except Exception:
            logger.exception("Failed to publish %s", event.type)
