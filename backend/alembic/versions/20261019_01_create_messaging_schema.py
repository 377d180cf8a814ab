"""create messaging and social graph tables

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_01"
down_revision = None
branch_labels = None
depends_on = None


ACCOUNT_STATUS = sa.Enum("active", "suspended", "deleted", name="account_status")
FRIEND_REQUEST_STATUS = sa.Enum(
    "pending", "accepted", "declined", "cancelled", name="friend_request_status"
)
CONVERSATION_TYPE = sa.Enum("direct", "group", name="conversation_type")


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("username", sa.String(length=64), nullable=False, unique=True),
        sa.Column("display_name", sa.String(length=128), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True, unique=True),
        sa.Column("status", ACCOUNT_STATUS, nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        mysql_charset="utf8mb4",
    )

    op.create_table(
        "friend_requests",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("sender_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("recipient_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("pair_low_id", sa.Integer(), nullable=False),
        sa.Column("pair_high_id", sa.Integer(), nullable=False),
        sa.Column("status", FRIEND_REQUEST_STATUS, nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("sender_id <> recipient_id", name="ck_friend_request_not_self"),
        mysql_charset="utf8mb4",
    )
    op.create_index(
        "uq_friend_requests_pending_pair",
        "friend_requests",
        ["pair_low_id", "pair_high_id"],
        unique=True,
        sqlite_where=sa.text("status = 'pending'"),
        postgresql_where=sa.text("status = 'pending'"),
    )
    op.create_index(
        "ix_friend_requests_recipient_status",
        "friend_requests",
        ["recipient_id", "status"],
    )

    op.create_table(
        "friends",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_a_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_b_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "request_id",
            sa.Integer(),
            sa.ForeignKey("friend_requests.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("user_a_id", "user_b_id", name="uq_friends_pair"),
        sa.CheckConstraint("user_a_id < user_b_id", name="ck_friends_ordered_pair"),
        mysql_charset="utf8mb4",
    )
    op.create_index("ix_friends_user_b", "friends", ["user_b_id"])

    op.create_table(
        "conversations",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("type", CONVERSATION_TYPE, nullable=False),
        sa.Column("name", sa.String(length=128), nullable=True),
        sa.Column("creator_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("direct_low_id", sa.Integer(), nullable=True),
        sa.Column("direct_high_id", sa.Integer(), nullable=True),
        sa.Column("last_sequence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("direct_low_id", "direct_high_id", name="uq_conversation_direct_pair"),
        mysql_charset="utf8mb4",
    )

    op.create_table(
        "conversation_members",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "conversation_id",
            sa.Integer(),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_read_sequence", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("conversation_id", "user_id", name="uq_conversation_member"),
        mysql_charset="utf8mb4",
    )
    op.create_index("ix_conversation_members_user", "conversation_members", ["user_id"])

    op.create_table(
        "messages",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "conversation_id",
            sa.Integer(),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("sender_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("conversation_id", "sequence", name="uq_message_conversation_sequence"),
        mysql_charset="utf8mb4",
    )


def downgrade() -> None:
    op.drop_table("messages")
    op.drop_index("ix_conversation_members_user", table_name="conversation_members")
    op.drop_table("conversation_members")
    op.drop_table("conversations")
    op.drop_index("ix_friends_user_b", table_name="friends")
    op.drop_table("friends")
    op.drop_index("ix_friend_requests_recipient_status", table_name="friend_requests")
    op.drop_index("uq_friend_requests_pending_pair", table_name="friend_requests")
    op.drop_table("friend_requests")
    op.drop_table("users")

    bind = op.get_bind()
    CONVERSATION_TYPE.drop(bind, checkfirst=True)
    FRIEND_REQUEST_STATUS.drop(bind, checkfirst=True)
    ACCOUNT_STATUS.drop(bind, checkfirst=True)
