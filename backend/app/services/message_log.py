"""Ordered, append-only message log per conversation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from app.config import get_settings
from app.core.locks import KeyedLock
from app.core.retry import run_with_retry
from app.models import Conversation, ConversationMember, Message
from app.models.base import utcnow
from app.monitoring.metrics import messages_appended_total
from app.schemas.conversations import MessagePage, MessageRead
from app.schemas.events import MessageNewEvent
from app.services.conversations import ConversationDirectory
from app.services.delivery import DeliveryRouter
from app.services.errors import ContentTooLong, EmptyContent, InvalidInput

logger = logging.getLogger(__name__)

# One writer per conversation while a sequence number is being assigned
_ordering_gates = KeyedLock()


@dataclass(slots=True)
class HistoryPage:
    messages: list[Message] = field(default_factory=list)
    has_more: bool = False

    @property
    def next_before(self) -> int | None:
        if not self.has_more or not self.messages:
            return None
        return self.messages[-1].sequence

    def to_schema(self) -> MessagePage:
        return MessagePage(
            items=[MessageRead.model_validate(message) for message in self.messages],
            has_more=self.has_more,
            next_before=self.next_before,
        )


class MessageLog:
    """Append messages with gapless per-conversation sequence numbers.

    The counter lives on the conversation row. Incrementing it and inserting
    the message happen in one transaction, so a rolled back append never
    consumes a sequence number. Fan-out to live connections happens after the
    ordering gate is released and never affects the stored message.
    """

    def __init__(self, db: Session, router: DeliveryRouter | None = None) -> None:
        self.db = db
        self.router = router
        self.settings = get_settings()
        self.directory = ConversationDirectory(db)

    def _validate_content(self, content: str) -> str:
        text = (content or "").strip()
        if not text:
            raise EmptyContent()
        limit = self.settings.chat_message_max_length
        if len(text) > limit:
            raise ContentTooLong(
                f"Message content must be at most {limit} characters",
                max_length=limit,
            )
        return text

    def _write(self, conversation_id: int, sender_id: int, text: str) -> Message:
        now = utcnow()
        self.db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(last_sequence=Conversation.last_sequence + 1, last_message_at=now)
            .execution_options(synchronize_session=False)
        )
        sequence = self.db.execute(
            select(Conversation.last_sequence).where(Conversation.id == conversation_id)
        ).scalar_one()
        message = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            sequence=sequence,
            content=text,
            created_at=now,
        )
        self.db.add(message)
        # The sender has obviously read their own message
        self.db.execute(
            update(ConversationMember)
            .where(
                ConversationMember.conversation_id == conversation_id,
                ConversationMember.user_id == sender_id,
                ConversationMember.last_read_sequence < sequence,
            )
            .values(last_read_sequence=sequence)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return message

    async def append(self, conversation_id: int, sender_id: int, content: str) -> Message:
        conversation = self.directory.get_member_conversation(conversation_id, sender_id)
        conversation_type = conversation.type.value
        text = self._validate_content(content)

        async with _ordering_gates.hold(conversation_id):
            message = await run_with_retry(
                self.db,
                lambda: self._write(conversation_id, sender_id, text),
                name="message.append",
                retry_on=(OperationalError, IntegrityError),
            )
        self.db.refresh(message)
        messages_appended_total.labels(conversation_type).inc()
        logger.info(
            "Message appended",
            extra={
                "conversation_id": conversation_id,
                "sender_id": sender_id,
                "sequence": message.sequence,
            },
        )

        if self.router is not None:
            event = MessageNewEvent(conversation_id=conversation_id, message=MessageRead.model_validate(message))
            recipients = self.directory.member_ids(conversation_id)
            try:
                await self.router.publish(event, recipients)
            except Exception:
                logger.exception(
                    "Failed to fan out message",
                    extra={"conversation_id": conversation_id, "sequence": message.sequence},
                )
        return message

    def _clamp_limit(self, limit: int | None) -> int:
        if limit is None:
            return self.settings.chat_history_default_limit
        if limit < 1:
            raise InvalidInput("Page size must be at least 1")
        return min(int(limit), self.settings.chat_history_max_limit)

    def _read_page(self, conversation_id: int, before_sequence: int | None, limit: int) -> HistoryPage:
        stmt = select(Message).where(Message.conversation_id == conversation_id)
        if before_sequence is not None:
            stmt = stmt.where(Message.sequence < before_sequence)
        stmt = stmt.order_by(Message.sequence.desc()).limit(limit + 1)
        rows = list(self.db.execute(stmt).scalars())
        return HistoryPage(messages=rows[:limit], has_more=len(rows) > limit)

    async def fetch_history(
        self,
        conversation_id: int,
        requester_id: int,
        before_sequence: int | None = None,
        limit: int | None = None,
    ) -> HistoryPage:
        """Newest-first page of messages older than *before_sequence*."""

        self.directory.get_member_conversation(conversation_id, requester_id)
        page_size = self._clamp_limit(limit)
        return await run_with_retry(
            self.db,
            lambda: self._read_page(conversation_id, before_sequence, page_size),
            name="message.history",
        )
