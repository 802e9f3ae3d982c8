from datetime import datetime
from typing import List, Optional

from sqlalchemy import BigInteger, Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kinship.core.time import utcnow
from kinship.models.base import Base


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    # ordered by canonical_pair in code, not by the column collation
    participant_low_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    participant_high_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    last_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    # highest seq handed out in this conversation
    last_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("participant_low_id <> participant_high_id", name="chk_conversations_not_self"),
        UniqueConstraint("participant_low_id", "participant_high_id", name="uq_conversations_pair"),
        Index("idx_conversations_high", "participant_high_id"),
    )

    messages: Mapped[List["Message"]] = relationship("Message", back_populates="conversation", cascade="all, delete-orphan")

    def has_participant(self, user_id: str) -> bool:
        return user_id in (self.participant_low_id, self.participant_high_id)

    def other_participant(self, user_id: str) -> str:
        if user_id == self.participant_low_id:
            return self.participant_high_id
        if user_id == self.participant_high_id:
            return self.participant_low_id
        raise ValueError(f"{user_id} is not a participant of {self.id}")


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    seq: Mapped[int] = mapped_column(BigInteger, nullable=False)
    sender_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("conversation_id", "seq", name="uq_messages_conversation_seq"),
        Index("idx_messages_unread", "conversation_id", "read", "sender_id"),
    )

    conversation: Mapped["Conversation"] = relationship("Conversation", back_populates="messages")
