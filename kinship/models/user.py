from typing import Optional

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from kinship.models.base import Base, TimestampMixin


class User(Base, TimestampMixin):
    """Account row. Owned by the auth/profile layer; the social core only references ids."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    display_name: Mapped[str] = mapped_column(String(128), nullable=False)
    photo_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
