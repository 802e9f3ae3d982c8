from kinship.core.errors import NotAuthorizedError, NotFoundError
from kinship.dm.conversations import ConversationDirectory
from kinship.dm.schemas import ConversationOut
from kinship.friends.graph_store import FriendGraphStore


async def require_friend_conversation(
    conversation_id: str,
    user_id: str,
    directory: ConversationDirectory,
    store: FriendGraphStore,
) -> ConversationOut:
    """Load a conversation the caller takes part in, with a friend."""
    conversation = await directory.get(conversation_id)
    if conversation is None:
        raise NotFoundError("Conversation not found.", details={"conversation_id": conversation_id})
    if not conversation.has_participant(user_id):
        raise NotAuthorizedError("Not a participant of this conversation.")
    if not await store.are_friends(user_id, conversation.other_participant(user_id)):
        raise NotAuthorizedError("Direct messages are limited to friends.")
    return conversation
