"""
Chat surface

One open chat window against one friend. Holds at most one live
subscription; opening against another friend releases the old one first,
and closing releases it on every exit path. Sends in flight are never
cancelled by close.
"""

from typing import Callable, List, Optional

from kinship.core.errors import AuthenticationRequiredError
from kinship.core.logging import get_logger
from kinship.dm.channel import MessageChannel
from kinship.dm.conversations import ConversationDirectory
from kinship.dm.log import MessageLog
from kinship.dm.schemas import ConversationOut, MessageOut
from kinship.dm.unread import UnreadTracker
from kinship.realtime.feed import Subscription

logger = get_logger(__name__)


class ChatSurface:
    def __init__(
        self,
        user_id: Optional[str],
        directory: ConversationDirectory,
        channel: MessageChannel,
        tracker: Optional[UnreadTracker] = None,
        on_change: Optional[Callable[[List[MessageOut]], None]] = None,
    ):
        self.user_id = user_id
        self._directory = directory
        self._channel = channel
        self._tracker = tracker
        self._on_change = on_change

        self.friend_id: Optional[str] = None
        self.conversation: Optional[ConversationOut] = None
        self.log: Optional[MessageLog] = None
        self._subscription: Optional[Subscription] = None
        self._generation = 0

    @property
    def is_open(self) -> bool:
        return self._subscription is not None and self._subscription.active

    @property
    def messages(self) -> List[MessageOut]:
        return self.log.messages if self.log is not None else []

    async def open(self, friend_id: str) -> ConversationOut:
        """Point the surface at `friend_id`, replacing any previous target.

        A later `open()` or `close()` supersedes this one; a superseded open
        returns the conversation but leaves the surface and its subscription
        to whichever call came last.
        """
        if not self.user_id:
            raise AuthenticationRequiredError("Sign in to open a chat.")

        self._generation += 1
        generation = self._generation
        self._release()
        conversation = await self._directory.get_or_create(self.user_id, friend_id)
        if self._superseded(generation, conversation):
            return conversation

        self.friend_id = friend_id
        self.conversation = conversation
        self.log = MessageLog(conversation.id)

        # subscribe before loading history so nothing lands in the gap
        self._release()
        self._subscription = self._channel.subscribe(conversation.id, self._on_insert, self._on_update)
        try:
            history = await self._channel.history(conversation.id, self.user_id)
            if self._superseded(generation, conversation):
                return conversation
            self.log.merge_many(history)
            await self._mark_read()
        except Exception:
            if generation == self._generation:
                self._release()
            raise
        if self._superseded(generation, conversation):
            return conversation

        logger.info(
            "dm.surface.opened",
            user_id=self.user_id,
            friend_id=friend_id,
            conversation_id=conversation.id,
            messages=len(self.log),
        )
        self._notify()
        return conversation

    def _superseded(self, generation: int, conversation: ConversationOut) -> bool:
        if generation == self._generation:
            return False
        logger.debug("dm.surface.open_superseded", user_id=self.user_id, conversation_id=conversation.id)
        return True

    async def send(self, content: str) -> MessageOut:
        if self.conversation is None or not self.user_id:
            raise AuthenticationRequiredError("Open a chat before sending.")
        conversation_id = self.conversation.id
        message = await self._channel.send(conversation_id, self.user_id, content)
        # optimistic echo; the realtime copy of the same row is dropped by id
        if self.is_open and self.log is not None and self.log.conversation_id == conversation_id:
            if self.log.merge(message):
                self._notify()
        return message

    async def _on_insert(self, message: MessageOut) -> None:
        if self.log is None or not self.log.merge(message):
            return
        self._notify()
        if message.sender_id == self.friend_id and not message.read:
            await self._mark_read()

    def _on_update(self, message: MessageOut) -> None:
        if self.log is not None and self.log.apply_update(message):
            self._notify()

    async def _mark_read(self) -> None:
        if self.conversation is None:
            return
        marked = await self._channel.mark_conversation_read(self.conversation.id, self.user_id)
        if self.log is not None:
            self.log.mark_read(marked)
        if self._tracker is not None:
            self._tracker.mark_read_locally(self.conversation.id)

    def _notify(self) -> None:
        if self._on_change is not None and self.log is not None:
            self._on_change(self.log.messages)

    def _release(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            logger.debug("dm.surface.released", user_id=self.user_id, subscription_id=self._subscription.id)
            self._subscription = None

    def close(self) -> None:
        self._generation += 1
        self._release()

    async def __aenter__(self) -> "ChatSurface":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
