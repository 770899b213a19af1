"""Message store: durable message history for a conversation pair."""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError

from memberportal.core.types import ChangeEvent, ChangeKind, ChatMessage, DeliveryState
from memberportal.db.models.messages import Message
from memberportal.services.directory import parse_user_id
from memberportal.services.errors import NotFoundError, SendError, TransientFetchError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from memberportal.core.types import MessageDraft
    from memberportal.services.push import InProcessPushChannel

logger = logging.getLogger(__name__)

MESSAGES_TABLE = "messages"


class MessageStore(Protocol):
    """Persistence for messages."""

    async def list_messages(self, user_a: str, user_b: str) -> list[ChatMessage]:
        """All messages exchanged between the two users, oldest first."""
        ...

    async def insert_message(self, draft: MessageDraft) -> ChatMessage:
        """Persist a message, assigning its durable id and timestamp."""
        ...


def message_from_row(row: Message) -> ChatMessage:
    return ChatMessage(
        id=str(row.id),
        sender_id=str(row.sender_id),
        receiver_id=str(row.receiver_id),
        content=row.content or "",
        attachment_url=row.image_url,
        created_at=row.created_at,
        delivery_state=DeliveryState.CONFIRMED,
    )


class SqlMessageStore:
    """MessageStore backed by the messages table.

    When a push channel is given, every successful insert is published to it
    as a ChangeEvent so other sessions in the process refresh.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        push: InProcessPushChannel | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._push = push

    async def list_messages(self, user_a: str, user_b: str) -> list[ChatMessage]:
        operation = "list_messages"
        try:
            a = parse_user_id(user_a, operation=operation)
            b = parse_user_id(user_b, operation=operation)
        except NotFoundError:
            return []

        stmt = (
            select(Message)
            .where(
                or_(
                    and_(Message.sender_id == a, Message.receiver_id == b),
                    and_(Message.sender_id == b, Message.receiver_id == a),
                )
            )
            .order_by(Message.created_at.asc(), Message.id.asc())
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            raise TransientFetchError(
                f"Failed to fetch messages: {e}",
                user_id=user_a,
                operation=operation,
            ) from e

        return [message_from_row(row) for row in rows]

    async def insert_message(self, draft: MessageDraft) -> ChatMessage:
        operation = "insert_message"
        try:
            sender = parse_user_id(draft.sender_id, operation=operation)
            receiver = parse_user_id(draft.receiver_id, operation=operation)
        except NotFoundError as e:
            raise SendError(e.message, user_id=draft.sender_id, operation=operation) from e

        row = Message(
            id=uuid.uuid4(),
            sender_id=sender,
            receiver_id=receiver,
            content=draft.content,
            image_url=draft.attachment_url,
            created_at=datetime.now(UTC),
        )
        try:
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()
        except SQLAlchemyError as e:
            raise SendError(
                f"Failed to insert message: {e}",
                user_id=draft.sender_id,
                operation=operation,
            ) from e

        message = message_from_row(row)
        logger.info(
            "Message stored: id=%s sender=%s receiver=%s attachment=%s",
            message.id,
            message.sender_id,
            message.receiver_id,
            message.attachment_url is not None,
        )

        if self._push is not None:
            await self._push.publish(
                ChangeEvent(
                    table=MESSAGES_TABLE,
                    kind=ChangeKind.INSERT,
                    record={
                        "id": message.id,
                        "sender_id": message.sender_id,
                        "receiver_id": message.receiver_id,
                    },
                )
            )
        return message
