"""
Message channel

Persists messages, fans them out over the change feed, and flips read flags.

Every persisted message carries a per-conversation `seq` taken from
conversations.last_seq inside the insert transaction, so ordering never
depends on wall-clock timestamps.
"""

from typing import Awaitable, Callable, List, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kinship.core.config import settings
from kinship.core.errors import NotAuthorizedError, NotFoundError, ValidationError
from kinship.core.ids import new_id
from kinship.core.logging import get_logger
from kinship.core.time import utcnow
from kinship.dm.schemas import ConversationOut, MessageOut
from kinship.infra.db import translate_db_errors, with_read_retry
from kinship.models.dm import Conversation, Message
from kinship.realtime.feed import ChangeEvent, ChangeFeed, ChangeType, Subscription

logger = get_logger(__name__)

MessageHandler = Callable[[MessageOut], Union[Awaitable[None], None]]


async def _load_conversation(session: AsyncSession, conversation_id: str, user_id: str) -> Conversation:
    conversation = await session.get(Conversation, conversation_id)
    if conversation is None:
        raise NotFoundError("Conversation not found.", details={"conversation_id": conversation_id})
    if not conversation.has_participant(user_id):
        raise NotAuthorizedError("Not a participant of this conversation.")
    return conversation


class MessageChannel:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], feed: ChangeFeed):
        self._session_factory = session_factory
        self._feed = feed

    async def send(self, conversation_id: str, sender_id: str, content: str) -> MessageOut:
        """Persist a message and return it for immediate local display.

        The realtime push of the same row may reach the sender afterwards;
        receivers merge by message id.
        """
        content = (content or "").strip()
        if not content:
            raise ValidationError("Message content cannot be empty.")

        with translate_db_errors("send_message"):
            async with self._session_factory() as session:
                await _load_conversation(session, conversation_id, sender_id)

                now = utcnow()
                await session.execute(
                    update(Conversation)
                    .where(Conversation.id == conversation_id)
                    .values(last_seq=Conversation.last_seq + 1, last_message_at=now)
                    .execution_options(synchronize_session=False)
                )
                seq_result = await session.execute(
                    select(Conversation.last_seq).where(Conversation.id == conversation_id)
                )
                seq = seq_result.scalar_one()

                message = Message(
                    id=new_id("msg"),
                    conversation_id=conversation_id,
                    seq=seq,
                    sender_id=sender_id,
                    content=content,
                    read=False,
                    created_at=now,
                )
                session.add(message)
                await session.commit()

                conversation = await session.get(Conversation, conversation_id, populate_existing=True)
                conversation_row = ConversationOut.model_validate(conversation)

        sent = MessageOut.model_validate(message)
        logger.info(
            "dm.message.sent",
            conversation_id=conversation_id,
            message_id=sent.id,
            sender_id=sender_id,
            seq=sent.seq,
        )
        await self._feed.publish("messages", ChangeType.INSERT, sent.model_dump())
        await self._feed.publish("conversations", ChangeType.UPDATE, conversation_row.model_dump())
        return sent

    async def history(
        self,
        conversation_id: str,
        viewer_id: str,
        limit: Optional[int] = None,
        before_seq: Optional[int] = None,
    ) -> List[MessageOut]:
        """A page of messages, oldest first."""
        page_size = limit or settings.message_page_size

        async def _read() -> List[MessageOut]:
            with translate_db_errors("message_history"):
                async with self._session_factory() as session:
                    await _load_conversation(session, conversation_id, viewer_id)
                    query = select(Message).where(Message.conversation_id == conversation_id)
                    if before_seq is not None:
                        query = query.where(Message.seq < before_seq)
                    result = await session.execute(query.order_by(Message.seq.desc()).limit(page_size))
                    messages = [MessageOut.model_validate(m) for m in result.scalars().all()]
            return sorted(messages, key=lambda m: m.seq)

        return await with_read_retry(_read, "message_history")

    async def get_message(self, message_id: str) -> Optional[MessageOut]:
        async def _read() -> Optional[MessageOut]:
            with translate_db_errors("get_message"):
                async with self._session_factory() as session:
                    message = await session.get(Message, message_id)
                    return MessageOut.model_validate(message) if message is not None else None

        return await with_read_retry(_read, "get_message")

    def subscribe(
        self,
        conversation_id: str,
        on_insert: MessageHandler,
        on_update: Optional[MessageHandler] = None,
    ) -> Subscription:
        """Listen for inserts/updates on one conversation's messages.

        The returned handle must be closed when the surface using it goes
        away; it is also an (async) context manager.
        """

        async def _dispatch(event: ChangeEvent) -> None:
            message = MessageOut.model_validate(dict(event.row))
            if event.type is ChangeType.INSERT:
                handler = on_insert
            elif event.type is ChangeType.UPDATE and on_update is not None:
                handler = on_update
            else:
                return
            result = handler(message)
            if result is not None:
                await result

        return self._feed.subscribe("messages", {"conversation_id": conversation_id}, _dispatch)

    async def mark_message_read(self, message_id: str, reader_id: str) -> Optional[MessageOut]:
        """Flip one inbound message to read; returns it if this call changed it."""
        with translate_db_errors("mark_message_read"):
            async with self._session_factory() as session:
                message = await session.get(Message, message_id)
                if message is None:
                    raise NotFoundError("Message not found.", details={"message_id": message_id})
                await _load_conversation(session, message.conversation_id, reader_id)

                result = await session.execute(
                    update(Message)
                    .where(
                        Message.id == message_id,
                        Message.sender_id != reader_id,
                        Message.read.is_(False),
                    )
                    .values(read=True)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return None
                await session.commit()
                await session.refresh(message)
                updated = MessageOut.model_validate(message)

        logger.debug("dm.message.read", message_id=message_id, reader_id=reader_id)
        await self._feed.publish("messages", ChangeType.UPDATE, updated.model_dump())
        return updated

    async def mark_conversation_read(self, conversation_id: str, reader_id: str) -> List[str]:
        """Flip every inbound unread message that existed when the call started.

        The update is scoped to seq <= the conversation's high-water mark read
        at the start of the transaction, so a message arriving mid-call stays
        unread and is counted by the next event.
        """
        with translate_db_errors("mark_conversation_read"):
            async with self._session_factory() as session:
                conversation = await _load_conversation(session, conversation_id, reader_id)
                high_water = conversation.last_seq

                ids_result = await session.execute(
                    select(Message.id).where(
                        Message.conversation_id == conversation_id,
                        Message.sender_id != reader_id,
                        Message.read.is_(False),
                        Message.seq <= high_water,
                    )
                )
                message_ids = list(ids_result.scalars().all())
                if not message_ids:
                    return []

                await session.execute(
                    update(Message)
                    .where(Message.id.in_(message_ids), Message.read.is_(False))
                    .values(read=True)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()

                rows = await session.execute(
                    select(Message).where(Message.id.in_(message_ids)).order_by(Message.seq)
                )
                updated = [MessageOut.model_validate(m) for m in rows.scalars().all()]

        logger.info(
            "dm.conversation.read",
            conversation_id=conversation_id,
            reader_id=reader_id,
            marked=len(message_ids),
            high_water_seq=high_water,
        )
        for message in updated:
            await self._feed.publish("messages", ChangeType.UPDATE, message.model_dump())
        return message_ids
