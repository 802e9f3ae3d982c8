from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from kinship.models.friend import FriendRole, RequestStatus


class FriendRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    requester_id: str
    requested_id: str
    status: RequestStatus
    role: FriendRole
    message: Optional[str] = None
    created_at: datetime
    responded_at: Optional[datetime] = None


class FriendshipOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    friend_id: str
    role: FriendRole
    created_at: datetime
    updated_at: datetime


class FriendOut(BaseModel):
    """One of my grant rows, joined with the grantee's display info."""

    friendship_id: str
    friend_id: str
    role: FriendRole
    display_name: str
    photo_url: Optional[str] = None
    created_at: datetime


class CandidateOut(BaseModel):
    id: str
    display_name: str
    photo_url: Optional[str] = None


class GrantOut(BaseModel):
    owner_id: str
    role: FriendRole


class VisibleProfile(BaseModel):
    id: str
    user_id: str
    name: str
    age: Optional[int] = None
    color: Optional[str] = None
    photo_url: Optional[str] = None
    notes: Optional[str] = None
    is_own: bool
    access_role: Optional[FriendRole] = None
    owner_name: Optional[str] = None


class VisibleEvent(BaseModel):
    id: str
    profile_id: str
    owner_id: str
    title: str
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: datetime
    end_time: datetime
    is_own: bool
