"""
Conversation directory

Maps an unordered pair of users to exactly one conversation row. There is no
client-side lock: the unique constraint on (participant_low_id,
participant_high_id) decides which concurrent insert wins, and the losers
re-read the winner's row.
"""

from typing import List, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kinship.core.errors import ConversationCreationError, ValidationError
from kinship.core.ids import canonical_pair, new_id
from kinship.core.logging import get_logger
from kinship.core.time import utcnow
from kinship.dm.schemas import ConversationOut
from kinship.infra.db import translate_db_errors, with_read_retry
from kinship.models.dm import Conversation
from kinship.realtime.feed import ChangeFeed, ChangeType

logger = get_logger(__name__)


class ConversationDirectory:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], feed: Optional[ChangeFeed] = None):
        self._session_factory = session_factory
        self._feed = feed

    async def get(self, conversation_id: str) -> Optional[ConversationOut]:
        async def _read() -> Optional[ConversationOut]:
            with translate_db_errors("get_conversation"):
                async with self._session_factory() as session:
                    conversation = await session.get(Conversation, conversation_id)
                    return ConversationOut.model_validate(conversation) if conversation else None

        return await with_read_retry(_read, "get_conversation")

    async def find(self, user_a: str, user_b: str) -> Optional[ConversationOut]:
        low, high = canonical_pair(user_a, user_b)
        return await with_read_retry(lambda: self._fetch(low, high), "find_conversation")

    async def _fetch(self, low: str, high: str) -> Optional[ConversationOut]:
        with translate_db_errors("find_conversation"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(Conversation).where(
                        Conversation.participant_low_id == low,
                        Conversation.participant_high_id == high,
                    )
                )
                conversation = result.scalar_one_or_none()
                return ConversationOut.model_validate(conversation) if conversation else None

    async def get_or_create(self, user_a: str, user_b: str) -> ConversationOut:
        """
        Return the conversation for {user_a, user_b}, creating it on first use.

        1. Canonicalize the pair
        2. Look the row up; return it if present
        3. Insert a new row
        4. On a uniqueness conflict, re-fetch once and return the winner's row
        5. If that re-fetch finds nothing, fail with ConversationCreationError
        """
        if user_a == user_b:
            raise ValidationError("Cannot start a conversation with yourself.")
        low, high = canonical_pair(user_a, user_b)

        existing = await with_read_retry(lambda: self._fetch(low, high), "find_conversation")
        if existing is not None:
            return existing

        conversation = Conversation(
            id=new_id("conv"),
            participant_low_id=low,
            participant_high_id=high,
            last_seq=0,
            created_at=utcnow(),
        )
        conflict = False
        with translate_db_errors("create_conversation"):
            try:
                async with self._session_factory() as session:
                    session.add(conversation)
                    await session.commit()
            except IntegrityError:
                conflict = True

        if conflict:
            logger.info("dm.conversation.create_conflict", participant_low_id=low, participant_high_id=high)
            existing = await self._fetch(low, high)
            if existing is None:
                raise ConversationCreationError(
                    "Conversation missing after concurrent creation.",
                    details={"participant_low_id": low, "participant_high_id": high},
                )
            return existing

        created = ConversationOut.model_validate(conversation)
        logger.info(
            "dm.conversation.created",
            conversation_id=created.id,
            participant_low_id=low,
            participant_high_id=high,
        )
        if self._feed is not None:
            await self._feed.publish("conversations", ChangeType.INSERT, created.model_dump())
        return created

    async def for_user(self, user_id: str) -> List[ConversationOut]:
        async def _read() -> List[ConversationOut]:
            with translate_db_errors("list_conversations"):
                async with self._session_factory() as session:
                    result = await session.execute(
                        select(Conversation).where(
                            or_(
                                Conversation.participant_low_id == user_id,
                                Conversation.participant_high_id == user_id,
                            )
                        )
                    )
                    return [ConversationOut.model_validate(c) for c in result.scalars().all()]

        return await with_read_retry(_read, "list_conversations")
