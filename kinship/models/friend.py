import enum
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, String, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kinship.core.time import utcnow
from kinship.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from kinship.models.user import User


class FriendRole(str, enum.Enum):
    NONE = "none"
    VIEWER = "viewer"
    ADMINISTRATOR = "administrator"


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class FriendRequest(Base):
    __tablename__ = "friend_requests"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    requester_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    requested_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    # (low, high) from canonical_pair; the database collation never decides the order
    pair_low_id: Mapped[str] = mapped_column(String(64), nullable=False)
    pair_high_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # status: 'pending' | 'accepted' | 'declined'
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=RequestStatus.PENDING.value)
    # proposed grant: 'none' | 'viewer' | 'administrator'
    role: Mapped[str] = mapped_column(String(16), nullable=False, default=FriendRole.NONE.value)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    __table_args__ = (
        CheckConstraint("requester_id <> requested_id", name="chk_friend_requests_not_self"),

        # At most one pending request per unordered pair
        Index(
            "uq_friend_requests_pending_pair",
            "pair_low_id",
            "pair_high_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
        Index("idx_friend_requests_requester", "requester_id", "status"),
        Index("idx_friend_requests_requested", "requested_id", "status"),
    )

    requester: Mapped["User"] = relationship("User", foreign_keys=[requester_id])
    requested: Mapped["User"] = relationship("User", foreign_keys=[requested_id])


class Friendship(Base, TimestampMixin):
    """Directional grant: user_id grants friend_id `role` over user_id's own data."""

    __tablename__ = "friendships"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    friend_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    # role: 'none' | 'viewer' | 'administrator'
    role: Mapped[str] = mapped_column(String(16), nullable=False, default=FriendRole.NONE.value)

    __table_args__ = (
        CheckConstraint("user_id <> friend_id", name="chk_friendships_not_self"),
        UniqueConstraint("user_id", "friend_id", name="uq_friendships_grantor_grantee"),
        Index("idx_friendships_friend", "friend_id", "role"),
    )

    friend: Mapped["User"] = relationship("User", foreign_keys=[friend_id])
    grantor: Mapped["User"] = relationship("User", foreign_keys=[user_id])
