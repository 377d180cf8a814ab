"""Direct and group conversations and their membership."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased, selectinload

from app.config import get_settings
from app.core.locks import KeyedLock
from app.models import (
    AccountStatus,
    Conversation,
    ConversationMember,
    ConversationType,
    Friendship,
    Message,
    User,
    normalize_pair,
)
from app.schemas.conversations import ConversationMemberRead, ConversationRead, MessageRead
from app.services.errors import (
    AlreadyMember,
    Forbidden,
    InvalidName,
    InvalidTarget,
    NotAMember,
    NotFound,
    TransientFailure,
)
from app.services.presence import PresenceTracker
from app.services.social_graph import serialize_public_user

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 128

# Serializes find-or-create of a direct conversation per unordered pair
_direct_gates = KeyedLock()


@dataclass(slots=True)
class ConversationSummary:
    conversation: Conversation
    unread_count: int
    last_message: Message | None


def _clean_name(name: str | None) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise InvalidName()
    if len(cleaned) > MAX_NAME_LENGTH:
        raise InvalidName(f"Conversation name must be at most {MAX_NAME_LENGTH} characters")
    return cleaned


def serialize_conversation(
    summary: ConversationSummary, presence: PresenceTracker | None = None
) -> ConversationRead:
    conversation = summary.conversation
    return ConversationRead(
        id=conversation.id,
        type=conversation.type,
        name=conversation.name,
        creator_id=conversation.creator_id,
        created_at=conversation.created_at,
        last_message_at=conversation.last_message_at,
        last_sequence=conversation.last_sequence,
        members=[
            ConversationMemberRead(
                user=serialize_public_user(member.user, presence),
                joined_at=member.joined_at,
                last_read_sequence=member.last_read_sequence,
            )
            for member in conversation.members
        ],
        last_message=MessageRead.model_validate(summary.last_message) if summary.last_message else None,
        unread_count=summary.unread_count,
    )


class ConversationDirectory:
    """Find-or-create direct conversations, manage groups and read markers."""

    def __init__(self, db: Session) -> None:
        self.db = db
        self.settings = get_settings()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get_conversation(self, conversation_id: int) -> Conversation:
        conversation = self.db.get(Conversation, conversation_id)
        if conversation is None:
            raise NotFound("Conversation not found", conversation_id=conversation_id)
        return conversation

    def get_membership(self, conversation_id: int, user_id: int) -> ConversationMember | None:
        stmt = select(ConversationMember).where(
            ConversationMember.conversation_id == conversation_id,
            ConversationMember.user_id == user_id,
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def require_membership(self, conversation_id: int, user_id: int) -> ConversationMember:
        membership = self.get_membership(conversation_id, user_id)
        if membership is None:
            raise NotAMember(conversation_id=conversation_id)
        return membership

    def get_member_conversation(self, conversation_id: int, user_id: int) -> Conversation:
        conversation = self.get_conversation(conversation_id)
        self.require_membership(conversation_id, user_id)
        return conversation

    def _require_active_users(self, user_ids: Iterable[int]) -> None:
        wanted = set(user_ids)
        if not wanted:
            return
        stmt = select(User.id).where(User.id.in_(wanted), User.status == AccountStatus.ACTIVE)
        found = set(self.db.execute(stmt).scalars())
        missing = sorted(wanted - found)
        if missing:
            raise NotFound("User not found", user_ids=missing)

    def find_direct(self, first_id: int, second_id: int) -> Conversation | None:
        low, high = normalize_pair(first_id, second_id)
        stmt = select(Conversation).where(
            Conversation.type == ConversationType.DIRECT,
            Conversation.direct_low_id == low,
            Conversation.direct_high_id == high,
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def member_ids(self, conversation_id: int) -> list[int]:
        stmt = (
            select(ConversationMember.user_id)
            .where(ConversationMember.conversation_id == conversation_id)
            .order_by(ConversationMember.id)
        )
        return list(self.db.execute(stmt).scalars())

    def co_member_ids(self, user_id: int) -> set[int]:
        """Users sharing at least one conversation with *user_id*."""

        mine = select(ConversationMember.conversation_id).where(ConversationMember.user_id == user_id)
        stmt = select(ConversationMember.user_id).where(
            ConversationMember.conversation_id.in_(mine),
            ConversationMember.user_id != user_id,
        )
        return set(self.db.execute(stmt).scalars())

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    async def get_or_create_direct(self, user_id: int, other_id: int) -> tuple[Conversation, bool]:
        """Return the direct conversation for the pair, creating it if needed.

        Concurrent callers for the same pair are serialized by an in-process
        gate; across processes the unique pair constraint decides the winner
        and the loser re-reads it.
        """

        if user_id == other_id:
            raise InvalidTarget("Cannot start a direct conversation with yourself")
        self._require_active_users([user_id, other_id])
        if self.settings.dm_require_friendship:
            low, high = normalize_pair(user_id, other_id)
            friendship = self.db.execute(
                select(Friendship.id).where(Friendship.user_a_id == low, Friendship.user_b_id == high)
            ).scalar_one_or_none()
            if friendship is None:
                raise Forbidden("Direct conversations are limited to friends")

        low, high = normalize_pair(user_id, other_id)
        async with _direct_gates.hold((low, high)):
            existing = self.find_direct(low, high)
            if existing is not None:
                return existing, False

            conversation = Conversation(
                type=ConversationType.DIRECT,
                creator_id=user_id,
                direct_low_id=low,
                direct_high_id=high,
            )
            conversation.members = [
                ConversationMember(user_id=low),
                ConversationMember(user_id=high),
            ]
            self.db.add(conversation)
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                existing = self.find_direct(low, high)
                if existing is None:
                    raise TransientFailure(operation="conversation.direct") from None
                logger.info(
                    "Direct conversation created concurrently; reusing existing",
                    extra={"conversation_id": existing.id},
                )
                return existing, False

        self.db.refresh(conversation)
        logger.info(
            "Direct conversation created",
            extra={"conversation_id": conversation.id, "user_ids": [low, high]},
        )
        return conversation, True

    def create_group(self, creator_id: int, name: str, member_ids: Iterable[int] = ()) -> Conversation:
        cleaned = _clean_name(name)
        members = [creator_id] + sorted({int(user_id) for user_id in member_ids} - {creator_id})
        self._require_active_users(members)

        conversation = Conversation(type=ConversationType.GROUP, name=cleaned, creator_id=creator_id)
        conversation.members = [ConversationMember(user_id=user_id) for user_id in members]
        self.db.add(conversation)
        self.db.commit()
        self.db.refresh(conversation)
        logger.info(
            "Group conversation created",
            extra={"conversation_id": conversation.id, "creator_id": creator_id, "members": len(members)},
        )
        return conversation

    # ------------------------------------------------------------------
    # Group management
    # ------------------------------------------------------------------
    def _require_group(self, conversation: Conversation) -> None:
        if conversation.is_direct:
            raise Forbidden("Direct conversations have a fixed membership")

    def add_member(self, conversation_id: int, actor_id: int, user_id: int) -> ConversationMember:
        conversation = self.get_conversation(conversation_id)
        self._require_group(conversation)
        if self.get_membership(conversation_id, actor_id) is None:
            raise Forbidden("Only members can add people to this conversation")
        self._require_active_users([user_id])
        if self.get_membership(conversation_id, user_id) is not None:
            raise AlreadyMember(conversation_id=conversation_id, user_id=user_id)

        membership = ConversationMember(conversation_id=conversation_id, user_id=user_id)
        self.db.add(membership)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise AlreadyMember(conversation_id=conversation_id, user_id=user_id) from None
        self.db.refresh(membership)
        return membership

    def remove_member(self, conversation_id: int, actor_id: int, user_id: int) -> None:
        """Leave a group, or let its creator remove someone else."""

        conversation = self.get_conversation(conversation_id)
        self._require_group(conversation)
        if self.get_membership(conversation_id, actor_id) is None:
            raise NotAMember(conversation_id=conversation_id)
        if actor_id != user_id and conversation.creator_id != actor_id:
            raise Forbidden("Only the group creator can remove other members")
        membership = self.get_membership(conversation_id, user_id)
        if membership is None:
            raise NotFound("Member not found", conversation_id=conversation_id, user_id=user_id)
        self.db.delete(membership)
        self.db.commit()

    def rename_group(self, conversation_id: int, actor_id: int, name: str) -> Conversation:
        conversation = self.get_conversation(conversation_id)
        self._require_group(conversation)
        self.require_membership(conversation_id, actor_id)
        conversation.name = _clean_name(name)
        self.db.commit()
        self.db.refresh(conversation)
        return conversation

    # ------------------------------------------------------------------
    # Read markers
    # ------------------------------------------------------------------
    def mark_read(self, conversation_id: int, user_id: int, sequence: int | None = None) -> ConversationMember:
        """Advance the read marker; it never moves backwards."""

        conversation = self.get_conversation(conversation_id)
        membership = self.require_membership(conversation_id, user_id)
        target = conversation.last_sequence if sequence is None else min(sequence, conversation.last_sequence)
        if target > membership.last_read_sequence:
            self.db.execute(
                update(ConversationMember)
                .where(
                    ConversationMember.id == membership.id,
                    ConversationMember.last_read_sequence < target,
                )
                .values(last_read_sequence=target)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            self.db.refresh(membership)
        return membership

    def unread_count(self, conversation_id: int, user_id: int) -> int:
        membership = self.require_membership(conversation_id, user_id)
        stmt = select(func.count(Message.id)).where(
            Message.conversation_id == conversation_id,
            Message.sequence > membership.last_read_sequence,
            Message.sender_id != user_id,
        )
        return int(self.db.execute(stmt).scalar_one())

    def unread_counts(self, user_id: int, conversation_ids: Iterable[int] | None = None) -> dict[int, int]:
        """Unread messages per conversation of *user_id*; fully read ones are left out."""

        membership = aliased(ConversationMember)
        stmt = (
            select(Message.conversation_id, func.count(Message.id))
            .join(
                membership,
                and_(membership.conversation_id == Message.conversation_id, membership.user_id == user_id),
            )
            .where(
                Message.sender_id != user_id,
                Message.sequence > membership.last_read_sequence,
            )
            .group_by(Message.conversation_id)
        )
        if conversation_ids is not None:
            stmt = stmt.where(Message.conversation_id.in_(list(conversation_ids)))
        return {conversation_id: int(count) for conversation_id, count in self.db.execute(stmt).all()}

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------
    def summarize(self, conversation: Conversation, user_id: int) -> ConversationSummary:
        last_message = self.db.execute(
            select(Message)
            .where(Message.conversation_id == conversation.id)
            .order_by(Message.sequence.desc())
            .limit(1)
        ).scalar_one_or_none()
        return ConversationSummary(
            conversation=conversation,
            unread_count=self.unread_count(conversation.id, user_id),
            last_message=last_message,
        )

    def list_conversations(self, user_id: int) -> list[ConversationSummary]:
        """Conversations of *user_id*, most recently active first."""

        membership = aliased(ConversationMember)
        activity = func.coalesce(Conversation.last_message_at, Conversation.created_at)
        stmt = (
            select(Conversation)
            .join(
                membership,
                and_(membership.conversation_id == Conversation.id, membership.user_id == user_id),
            )
            .options(selectinload(Conversation.members).selectinload(ConversationMember.user))
            .order_by(activity.desc(), Conversation.id.desc())
        )
        rows = list(self.db.execute(stmt).scalars())
        if not rows:
            return []

        conversation_ids = [conversation.id for conversation in rows]

        latest_sequence = (
            select(Message.conversation_id, func.max(Message.sequence).label("sequence"))
            .where(Message.conversation_id.in_(conversation_ids))
            .group_by(Message.conversation_id)
            .subquery()
        )
        latest = {
            message.conversation_id: message
            for message in self.db.execute(
                select(Message).join(
                    latest_sequence,
                    and_(
                        Message.conversation_id == latest_sequence.c.conversation_id,
                        Message.sequence == latest_sequence.c.sequence,
                    ),
                )
            ).scalars()
        }

        unread = self.unread_counts(user_id, conversation_ids)

        return [
            ConversationSummary(
                conversation=conversation,
                unread_count=int(unread.get(conversation.id, 0)),
                last_message=latest.get(conversation.id),
            )
            for conversation in rows
        ]
