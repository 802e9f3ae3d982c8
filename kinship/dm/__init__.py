from kinship.dm.channel import MessageChannel
from kinship.dm.conversations import ConversationDirectory
from kinship.dm.log import MessageLog
from kinship.dm.surface import ChatSurface
from kinship.dm.unread import UnreadTracker, count_unread

__all__ = [
    "ChatSurface",
    "ConversationDirectory",
    "MessageChannel",
    "MessageLog",
    "UnreadTracker",
    "count_unread",
]
