from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class ConversationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    participant_low_id: str
    participant_high_id: str
    last_message_at: Optional[datetime] = None
    last_seq: int = 0

    def has_participant(self, user_id: str) -> bool:
        return user_id in (self.participant_low_id, self.participant_high_id)

    def other_participant(self, user_id: str) -> str:
        if user_id == self.participant_low_id:
            return self.participant_high_id
        if user_id == self.participant_high_id:
            return self.participant_low_id
        raise ValueError(f"{user_id} is not a participant of {self.id}")


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    conversation_id: str
    seq: int
    sender_id: str
    content: str
    read: bool = False
    created_at: datetime


class MessagesPage(BaseModel):
    messages: List[MessageOut]


class FriendUnread(BaseModel):
    friend_id: str
    friendship_id: str
    display_name: str
    photo_url: Optional[str] = None
    conversation_id: Optional[str] = None
    unread_count: int = 0
    last_message_at: Optional[datetime] = None


class UnreadSummary(BaseModel):
    total: int
    friends: List[FriendUnread]
