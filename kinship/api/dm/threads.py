from datetime import datetime
from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel

from kinship.core.deps import DirectoryDep, FeedDep, GraphStoreDep, SessionFactoryDep
from kinship.core.errors import NotAuthorizedError, NotFoundError
from kinship.core.logging import get_logger
from kinship.core.token import CurrentUserDep
from kinship.dm.schemas import UnreadSummary
from kinship.dm.unread import UnreadTracker, count_unread
from kinship.models.user import User

router = APIRouter(tags=["dm"])
logger = get_logger(__name__)


class StartDmPayload(BaseModel):
    friend_id: str


class DmThreadResponse(BaseModel):
    id: str
    friend_id: str
    friend_name: Optional[str] = None
    last_message_at: Optional[datetime] = None
    unread_count: int = 0


@router.post("/dm/start", response_model=DmThreadResponse)
async def start_dm(
    payload: StartDmPayload,
    user_id: CurrentUserDep,
    store: GraphStoreDep,
    directory: DirectoryDep,
    session_factory: SessionFactoryDep,
):
    """Start or get the existing conversation with a friend."""
    if not await store.are_friends(user_id, payload.friend_id):
        raise NotAuthorizedError("Direct messages are limited to friends.")

    conversation = await directory.get_or_create(user_id, payload.friend_id)

    async with session_factory() as session:
        friend = await session.get(User, payload.friend_id)
        if friend is None:
            raise NotFoundError("User not found.", details={"user_id": payload.friend_id})
        friend_name = friend.display_name

    unread = await count_unread(session_factory, conversation.id, user_id)
    logger.info("dm.start", user_id=user_id, friend_id=payload.friend_id, conversation_id=conversation.id)
    return DmThreadResponse(
        id=conversation.id,
        friend_id=payload.friend_id,
        friend_name=friend_name,
        last_message_at=conversation.last_message_at,
        unread_count=unread,
    )


@router.get("/dm/unread", response_model=UnreadSummary)
async def get_unread(user_id: CurrentUserDep, session_factory: SessionFactoryDep, change_feed: FeedDep):
    """Per-friend unread counts and the badge total."""
    tracker = UnreadTracker(session_factory, change_feed, user_id)
    await tracker.refresh()
    return tracker.summary()
