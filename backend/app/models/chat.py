from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from app.models.base import Base, utcnow
from app.models.enums import AccountStatus, ConversationType, FriendRequestStatus


def _enum_column(enum_cls, name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda enum_values: [member.value for member in enum_values],
    )


def normalize_pair(first: int, second: int) -> tuple[int, int]:
    """Return the two user identifiers ordered from lowest to highest."""

    return (first, second) if first <= second else (second, first)


class User(Base):
    """Application user."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(128))
    email: Mapped[str | None] = mapped_column(String(255), unique=True)
    status: Mapped[AccountStatus] = mapped_column(
        _enum_column(AccountStatus, "account_status"),
        default=AccountStatus.ACTIVE,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    memberships: Mapped[list["ConversationMember"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )
    sent_friend_requests: Mapped[list["FriendRequest"]] = relationship(
        back_populates="sender", foreign_keys="FriendRequest.sender_id", cascade="all, delete-orphan"
    )
    received_friend_requests: Mapped[list["FriendRequest"]] = relationship(
        back_populates="recipient",
        foreign_keys="FriendRequest.recipient_id",
        cascade="all, delete-orphan",
    )

    @validates("username")
    def _freeze_username(self, key: str, value: str) -> str:
        if self.id is not None and self.username is not None and self.username != value:
            raise ValueError("username cannot be changed once assigned")
        return value

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE


class FriendRequest(Base):
    """Directional request from one user to another to become friends."""

    __tablename__ = "friend_requests"
    __table_args__ = (
        CheckConstraint("sender_id <> recipient_id", name="ck_friend_request_not_self"),
        Index(
            "uq_friend_requests_pending_pair",
            "pair_low_id",
            "pair_high_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
        Index("ix_friend_requests_recipient_status", "recipient_id", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    sender_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    recipient_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    pair_low_id: Mapped[int] = mapped_column(Integer, nullable=False)
    pair_high_id: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[FriendRequestStatus] = mapped_column(
        _enum_column(FriendRequestStatus, "friend_request_status"),
        default=FriendRequestStatus.PENDING,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    sender: Mapped[User] = relationship(back_populates="sent_friend_requests", foreign_keys=[sender_id])
    recipient: Mapped[User] = relationship(
        back_populates="received_friend_requests", foreign_keys=[recipient_id]
    )


class Friendship(Base):
    """Undirected friendship edge stored once with ``user_a_id < user_b_id``."""

    __tablename__ = "friends"
    __table_args__ = (
        UniqueConstraint("user_a_id", "user_b_id", name="uq_friends_pair"),
        CheckConstraint("user_a_id < user_b_id", name="ck_friends_ordered_pair"),
        Index("ix_friends_user_b", "user_b_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_a_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    user_b_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    request_id: Mapped[int | None] = mapped_column(
        ForeignKey("friend_requests.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    user_a: Mapped[User] = relationship(foreign_keys=[user_a_id])
    user_b: Mapped[User] = relationship(foreign_keys=[user_b_id])

    def other(self, user_id: int) -> int:
        return self.user_b_id if self.user_a_id == user_id else self.user_a_id


class Conversation(Base):
    """Direct or group conversation with an append-only message log."""

    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("direct_low_id", "direct_high_id", name="uq_conversation_direct_pair"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    type: Mapped[ConversationType] = mapped_column(
        _enum_column(ConversationType, "conversation_type"), nullable=False
    )
    name: Mapped[str | None] = mapped_column(String(128))
    creator_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    # Only set for direct conversations; NULLs never collide in the unique pair.
    direct_low_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    direct_high_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_sequence: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    creator: Mapped[User | None] = relationship(foreign_keys=[creator_id])
    members: Mapped[list["ConversationMember"]] = relationship(
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="ConversationMember.id",
    )
    messages: Mapped[list["Message"]] = relationship(
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.sequence",
    )

    @property
    def is_direct(self) -> bool:
        return self.type == ConversationType.DIRECT


class ConversationMember(Base):
    """Membership of a user in a conversation, with their read marker."""

    __tablename__ = "conversation_members"
    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_conversation_member"),
        Index("ix_conversation_members_user", "user_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    conversation_id: Mapped[int] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    last_read_sequence: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )

    conversation: Mapped[Conversation] = relationship(back_populates="members")
    user: Mapped[User] = relationship(back_populates="memberships")


class Message(Base):
    """Immutable message appended to a conversation log."""

    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("conversation_id", "sequence", name="uq_message_conversation_sequence"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    conversation_id: Mapped[int] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    sender_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    conversation: Mapped[Conversation] = relationship(back_populates="messages")
    sender: Mapped[User | None] = relationship(foreign_keys=[sender_id])
