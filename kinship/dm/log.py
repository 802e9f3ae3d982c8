"""
Message log

The ordered, de-duplicated list of messages one open chat surface displays.
The same message can arrive twice (history load, send echo, realtime push);
every path goes through merge() so it is shown once.
"""

import itertools
from typing import Dict, Iterable, List, Tuple

from kinship.dm.schemas import MessageOut


class MessageLog:
    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        self._messages: Dict[str, MessageOut] = {}
        # message id -> local arrival order, tie-breaker after seq
        self._arrival: Dict[str, int] = {}
        self._counter = itertools.count()

    def merge(self, message: MessageOut) -> bool:
        """Add a message unless its id is already present. Returns True if added."""
        if message.conversation_id != self.conversation_id:
            return False
        if message.id in self._messages:
            return False
        self._messages[message.id] = message
        self._arrival[message.id] = next(self._counter)
        return True

    def merge_many(self, messages: Iterable[MessageOut]) -> int:
        return sum(1 for message in messages if self.merge(message))

    def apply_update(self, message: MessageOut) -> bool:
        """Replace a known message with its updated row.

        A read flag never goes back to false, whatever order the updates
        arrive in.
        """
        current = self._messages.get(message.id)
        if current is None:
            return False
        if current.read and not message.read:
            message = message.model_copy(update={"read": True})
        self._messages[message.id] = message
        return True

    def mark_read(self, message_ids: Iterable[str]) -> int:
        changed = 0
        for message_id in message_ids:
            current = self._messages.get(message_id)
            if current is not None and not current.read:
                self._messages[message_id] = current.model_copy(update={"read": True})
                changed += 1
        return changed

    def _order_key(self, message: MessageOut) -> Tuple[int, int]:
        return (message.seq, self._arrival[message.id])

    @property
    def messages(self) -> List[MessageOut]:
        return sorted(self._messages.values(), key=self._order_key)

    def unread_from(self, sender_id: str) -> List[str]:
        return [m.id for m in self.messages if m.sender_id == sender_id and not m.read]

    def get(self, message_id: str):
        return self._messages.get(message_id)

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._messages

    def __iter__(self):
        return iter(self.messages)
