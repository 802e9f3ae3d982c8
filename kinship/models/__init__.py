from kinship.models.base import Base
from kinship.models.dm import Conversation, Message
from kinship.models.friend import FriendRequest, FriendRole, Friendship, RequestStatus
from kinship.models.profile import Event, Profile
from kinship.models.user import User

__all__ = [
    "Base",
    "User",
    "FriendRequest",
    "FriendRole",
    "Friendship",
    "RequestStatus",
    "Conversation",
    "Message",
    "Profile",
    "Event",
]
