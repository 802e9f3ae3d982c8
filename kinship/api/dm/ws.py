from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from kinship.api.dm.common import require_friend_conversation
from kinship.core.deps import get_feed
from kinship.core.errors import AppError
from kinship.core.logging import get_logger
from kinship.core.token import verify_token
from kinship.dm.channel import MessageChannel
from kinship.dm.conversations import ConversationDirectory
from kinship.dm.schemas import MessageOut
from kinship.friends.graph_store import FriendGraphStore
from kinship.infra.db import get_session_factory
from kinship.realtime.feed import feed

router = APIRouter(tags=["dm-ws"])
logger = get_logger(__name__)

# application close code for auth / participation failures
WS_CLOSE_FORBIDDEN = 4003


def _resolve(websocket: WebSocket, dependency, default):
    """Honour app.dependency_overrides for the session factory and feed."""
    override = websocket.app.dependency_overrides.get(dependency)
    return override() if override is not None else default()


@router.websocket("/dm/ws/{conversation_id}")
async def dm_websocket(
    websocket: WebSocket,
    conversation_id: str,
    token: Optional[str] = Query(None),
):
    user_id = verify_token(token)
    if not user_id:
        logger.info("dm.ws.auth_failed", conversation_id=conversation_id)
        await websocket.close(code=WS_CLOSE_FORBIDDEN)
        return

    session_factory = _resolve(websocket, get_session_factory, get_session_factory)
    change_feed = _resolve(websocket, get_feed, lambda: feed)
    directory = ConversationDirectory(session_factory, change_feed)
    channel = MessageChannel(session_factory, change_feed)
    store = FriendGraphStore(session_factory)

    try:
        await require_friend_conversation(conversation_id, user_id, directory, store)
    except AppError as exc:
        logger.info("dm.ws.rejected", conversation_id=conversation_id, user_id=user_id, code=exc.code)
        await websocket.close(code=WS_CLOSE_FORBIDDEN)
        return

    await websocket.accept()
    logger.info("dm.ws.connected", conversation_id=conversation_id, user_id=user_id)

    async def push_insert(message: MessageOut) -> None:
        await websocket.send_json({"type": "dm.message", "data": message.model_dump(mode="json")})

    async def push_update(message: MessageOut) -> None:
        await websocket.send_json({"type": "dm.message.updated", "data": message.model_dump(mode="json")})

    async with channel.subscribe(conversation_id, push_insert, push_update):
        try:
            await websocket.send_json({
                "type": "dm.connected",
                "data": {"conversation_id": conversation_id, "user_id": user_id},
            })
            while True:
                data = await websocket.receive_json()
                if not isinstance(data, dict):
                    continue
                try:
                    await _handle_frame(websocket, channel, conversation_id, user_id, data)
                except AppError as exc:
                    logger.warning(
                        "dm.ws.error",
                        conversation_id=conversation_id,
                        user_id=user_id,
                        code=exc.code,
                        error=exc.message,
                    )
                    await websocket.send_json({"type": "error", "data": {"code": exc.code, "message": exc.message}})
        except WebSocketDisconnect:
            logger.info("dm.ws.disconnected", conversation_id=conversation_id, user_id=user_id)


async def _handle_frame(
    websocket: WebSocket,
    channel: MessageChannel,
    conversation_id: str,
    user_id: str,
    data: dict,
) -> None:
    kind = data.get("type")
    if kind == "read":
        marked = await channel.mark_conversation_read(conversation_id, user_id)
        await websocket.send_json({"type": "dm.read", "data": {"marked": marked}})
    elif kind == "send":
        # the realtime push delivers the stored row back to this socket
        await channel.send(conversation_id, user_id, str(data.get("content", "")))
    elif kind == "ping":
        await websocket.send_json({"type": "pong"})
