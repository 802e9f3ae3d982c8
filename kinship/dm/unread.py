"""
Unread tracking

Keeps one viewer's unread counts per conversation and per friend. Counts are
held as sets of unread message ids, so a duplicated realtime delivery never
counts a message twice.

Counts change on:
    - a local mark-read (optimistic zeroing)
    - realtime message inserts/updates for the viewer's conversations
    - a periodic full refresh against the database
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kinship.core.config import settings
from kinship.core.errors import AppError
from kinship.core.logging import LatencyLogger, get_logger
from kinship.dm.schemas import ConversationOut, FriendUnread, UnreadSummary
from kinship.infra.db import translate_db_errors, with_read_retry
from kinship.models.dm import Conversation, Message
from kinship.models.friend import Friendship
from kinship.models.user import User
from kinship.realtime.feed import ChangeEvent, ChangeFeed, ChangeType, Subscription

logger = get_logger(__name__)


@dataclass(frozen=True)
class _Friend:
    friend_id: str
    friendship_id: str
    display_name: str
    photo_url: Optional[str]


def _involves(user_id: str):
    return or_(
        Conversation.participant_low_id == user_id,
        Conversation.participant_high_id == user_id,
    )


async def count_unread(
    session_factory: async_sessionmaker[AsyncSession],
    conversation_id: str,
    viewer_id: str,
) -> int:
    """Messages in the conversation not sent by the viewer and still unread."""

    async def _read() -> int:
        with translate_db_errors("unread_count"):
            async with session_factory() as session:
                result = await session.execute(
                    select(func.count())
                    .select_from(Message)
                    .where(
                        Message.conversation_id == conversation_id,
                        Message.sender_id != viewer_id,
                        Message.read.is_(False),
                    )
                )
                return int(result.scalar_one())

    return await with_read_retry(_read, "unread_count")


class UnreadTracker:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        feed: ChangeFeed,
        viewer_id: str,
    ):
        self._session_factory = session_factory
        self._feed = feed
        self.viewer_id = viewer_id

        self._friends: Dict[str, _Friend] = {}
        self._conversations: Dict[str, ConversationOut] = {}
        self._unread: Dict[str, Set[str]] = {}

        self._message_sub: Optional[Subscription] = None
        self._conversation_subs: List[Subscription] = []
        # events seen while a refresh is reading; replayed over the fresh state
        self._buffer: Optional[List[ChangeEvent]] = None
        self._refresh_lock = asyncio.Lock()
        self._started = False

    # ============ Lifecycle ============

    async def start(self) -> "UnreadTracker":
        if self._started:
            return self
        self._started = True
        self._conversation_subs = [
            self._feed.subscribe("conversations", {"participant_low_id": self.viewer_id}, self._on_conversation),
            self._feed.subscribe("conversations", {"participant_high_id": self.viewer_id}, self._on_conversation),
        ]
        self._resubscribe_messages()
        await self.refresh()
        return self

    def close(self) -> None:
        if self._message_sub is not None:
            self._message_sub.close()
            self._message_sub = None
        for subscription in self._conversation_subs:
            subscription.close()
        self._conversation_subs = []
        self._started = False

    async def __aenter__(self) -> "UnreadTracker":
        return await self.start()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _resubscribe_messages(self) -> None:
        if not self._started:
            return
        if self._message_sub is not None:
            self._message_sub.close()
        self._message_sub = self._feed.subscribe(
            "messages",
            {"conversation_id": frozenset(self._conversations)},
            self._on_message,
        )

    # ============ Source of truth ============

    async def unread_count(self, conversation_id: str, viewer_id: Optional[str] = None) -> int:
        return await count_unread(self._session_factory, conversation_id, viewer_id or self.viewer_id)

    async def _load(self) -> Tuple[Dict[str, _Friend], Dict[str, ConversationOut], Dict[str, Set[str]]]:
        with translate_db_errors("unread_refresh"):
            async with self._session_factory() as session:
                friend_rows = await session.execute(
                    select(Friendship.id, Friendship.friend_id, User.display_name, User.photo_url)
                    .join(User, Friendship.friend_id == User.id)
                    .where(Friendship.user_id == self.viewer_id)
                )
                conversation_rows = await session.execute(
                    select(Conversation).where(_involves(self.viewer_id))
                )
                unread_rows = await session.execute(
                    select(Message.id, Message.conversation_id)
                    .join(Conversation, Message.conversation_id == Conversation.id)
                    .where(
                        _involves(self.viewer_id),
                        Message.sender_id != self.viewer_id,
                        Message.read.is_(False),
                    )
                )

                friends = {
                    friend_id: _Friend(friend_id, friendship_id, name, photo)
                    for friendship_id, friend_id, name, photo in friend_rows.all()
                }
                conversations = {
                    c.id: ConversationOut.model_validate(c) for c in conversation_rows.scalars().all()
                }
                unread: Dict[str, Set[str]] = {conversation_id: set() for conversation_id in conversations}
                for message_id, conversation_id in unread_rows.all():
                    unread.setdefault(conversation_id, set()).add(message_id)
        return friends, conversations, unread

    async def refresh(self) -> None:
        """Reconcile every count with the database."""
        async with self._refresh_lock:
            self._buffer = []
            try:
                friends, conversations, unread = await with_read_retry(self._load, "unread_refresh")
            except AppError:
                self._replay(self._take_buffer())
                raise

            known_before = set(self._conversations)
            self._friends = friends
            self._conversations = conversations
            self._unread = unread
            self._replay(self._take_buffer())
            if set(self._conversations) != known_before or self._message_sub is None:
                self._resubscribe_messages()

        logger.debug(
            "dm.unread.refreshed",
            viewer_id=self.viewer_id,
            conversations=len(self._conversations),
            total=self.total(),
        )

    def _take_buffer(self) -> List[ChangeEvent]:
        buffered, self._buffer = self._buffer or [], None
        return buffered

    def _replay(self, events: List[ChangeEvent]) -> None:
        for event in events:
            if event.table == "messages":
                self._apply_message(event)
            else:
                self._apply_conversation(event)

    async def run_periodic_refresh(self, interval: Optional[float] = None) -> None:
        """Refresh forever; cancel the task to stop it."""
        period = interval if interval is not None else settings.unread_refresh_interval_seconds
        while True:
            await asyncio.sleep(period)
            try:
                with LatencyLogger("unread_refresh", logger, viewer_id=self.viewer_id):
                    await self.refresh()
            except AppError as exc:
                logger.warning("dm.unread.refresh_failed", viewer_id=self.viewer_id, code=exc.code, error=exc.message)

    # ============ Realtime ============

    def _on_message(self, event: ChangeEvent) -> None:
        if self._buffer is not None:
            self._buffer.append(event)
        self._apply_message(event)

    def _on_conversation(self, event: ChangeEvent) -> None:
        if self._buffer is not None:
            self._buffer.append(event)
        if self._apply_conversation(event):
            self._resubscribe_messages()

    def _apply_message(self, event: ChangeEvent) -> None:
        row = event.row
        conversation_id = row.get("conversation_id")
        if conversation_id not in self._conversations:
            return
        unread = self._unread.setdefault(conversation_id, set())
        if event.type is ChangeType.DELETE:
            unread.discard(row.get("id"))
        elif row.get("read"):
            unread.discard(row.get("id"))
        elif event.type is ChangeType.INSERT and row.get("sender_id") != self.viewer_id:
            unread.add(row.get("id"))

    def _apply_conversation(self, event: ChangeEvent) -> bool:
        """Track a conversation row; True if it was not known before."""
        if event.type is ChangeType.DELETE:
            return False
        conversation = ConversationOut.model_validate(dict(event.row))
        if not conversation.has_participant(self.viewer_id):
            return False
        known = self._conversations.get(conversation.id)
        if known is not None and conversation.last_seq < known.last_seq:
            return False
        self._conversations[conversation.id] = conversation
        self._unread.setdefault(conversation.id, set())
        return known is None

    # ============ Local state ============

    def mark_read_locally(self, conversation_id: str) -> None:
        if conversation_id in self._unread:
            self._unread[conversation_id].clear()

    def count(self, conversation_id: str) -> int:
        return len(self._unread.get(conversation_id, ()))

    def _conversation_with(self, friend_id: str) -> Optional[ConversationOut]:
        for conversation in self._conversations.values():
            if conversation.has_participant(friend_id):
                return conversation
        return None

    def summaries(self) -> List[FriendUnread]:
        """Per-friend rows: most unread first, then latest message, then name."""
        rows = []
        for friend in self._friends.values():
            conversation = self._conversation_with(friend.friend_id)
            rows.append(
                FriendUnread(
                    friend_id=friend.friend_id,
                    friendship_id=friend.friendship_id,
                    display_name=friend.display_name,
                    photo_url=friend.photo_url,
                    conversation_id=conversation.id if conversation else None,
                    unread_count=self.count(conversation.id) if conversation else 0,
                    last_message_at=conversation.last_message_at if conversation else None,
                )
            )
        rows.sort(key=lambda r: r.display_name.lower())
        rows.sort(key=lambda r: r.last_message_at or datetime.min, reverse=True)
        rows.sort(key=lambda r: r.unread_count, reverse=True)
        return rows

    def total(self) -> int:
        """Badge count: unread summed over the viewer's friends' conversations."""
        return sum(row.unread_count for row in self.summaries())

    def summary(self) -> UnreadSummary:
        friends = self.summaries()
        return UnreadSummary(total=sum(f.unread_count for f in friends), friends=friends)
