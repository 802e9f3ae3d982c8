from typing import List, Optional

from fastapi import APIRouter, Query, status
from pydantic import BaseModel, Field

from kinship.api.dm.common import require_friend_conversation
from kinship.core.deps import ChannelDep, DirectoryDep, GraphStoreDep, SessionFactoryDep
from kinship.core.errors import NotFoundError
from kinship.core.token import CurrentUserDep
from kinship.dm.schemas import MessageOut, MessagesPage
from kinship.dm.unread import count_unread

router = APIRouter(tags=["dm"])


class SendDmMessagePayload(BaseModel):
    content: str = Field(..., min_length=1, max_length=4000)


class MarkReadResponse(BaseModel):
    conversation_id: str
    marked: List[str]
    unread_count: int = 0


class MarkMessageReadResponse(BaseModel):
    message_id: str
    changed: bool
    message: Optional[MessageOut] = None


@router.get("/dm/{conversation_id}/messages", response_model=MessagesPage)
async def get_messages(
    conversation_id: str,
    user_id: CurrentUserDep,
    channel: ChannelDep,
    directory: DirectoryDep,
    store: GraphStoreDep,
    limit: int = Query(50, ge=1, le=200),
    before_seq: Optional[int] = Query(None, ge=1),
):
    await require_friend_conversation(conversation_id, user_id, directory, store)
    messages = await channel.history(conversation_id, user_id, limit=limit, before_seq=before_seq)
    return MessagesPage(messages=messages)


@router.post("/dm/{conversation_id}/messages", response_model=MessageOut, status_code=status.HTTP_201_CREATED)
async def send_message(
    conversation_id: str,
    payload: SendDmMessagePayload,
    user_id: CurrentUserDep,
    channel: ChannelDep,
    directory: DirectoryDep,
    store: GraphStoreDep,
):
    await require_friend_conversation(conversation_id, user_id, directory, store)
    return await channel.send(conversation_id, user_id, payload.content)


@router.post("/dm/{conversation_id}/read", response_model=MarkReadResponse)
async def mark_conversation_read(
    conversation_id: str,
    user_id: CurrentUserDep,
    channel: ChannelDep,
    directory: DirectoryDep,
    store: GraphStoreDep,
    session_factory: SessionFactoryDep,
):
    await require_friend_conversation(conversation_id, user_id, directory, store)
    marked = await channel.mark_conversation_read(conversation_id, user_id)
    # anything that arrived during the call is still unread
    remaining = await count_unread(session_factory, conversation_id, user_id)
    return MarkReadResponse(conversation_id=conversation_id, marked=marked, unread_count=remaining)


@router.post("/dm/messages/{message_id}/read", response_model=MarkMessageReadResponse)
async def mark_message_read(
    message_id: str,
    user_id: CurrentUserDep,
    channel: ChannelDep,
    directory: DirectoryDep,
    store: GraphStoreDep,
):
    existing = await channel.get_message(message_id)
    if existing is None:
        raise NotFoundError("Message not found.", details={"message_id": message_id})
    await require_friend_conversation(existing.conversation_id, user_id, directory, store)

    message = await channel.mark_message_read(message_id, user_id)
    if message is None:
        return MarkMessageReadResponse(message_id=message_id, changed=False)
    return MarkMessageReadResponse(message_id=message_id, changed=True, message=message)
