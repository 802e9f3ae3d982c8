"""
Dependency Injection

FastAPI dependencies for routes.
"""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kinship.dm.channel import MessageChannel
from kinship.dm.conversations import ConversationDirectory
from kinship.friends.access import AccessResolver
from kinship.friends.graph_store import FriendGraphStore
from kinship.infra.db import get_db, get_session_factory
from kinship.realtime.feed import ChangeFeed, feed


def get_feed() -> ChangeFeed:
    return feed


SessionDep = Annotated[AsyncSession, Depends(get_db)]
SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]
FeedDep = Annotated[ChangeFeed, Depends(get_feed)]


def get_graph_store(session_factory: SessionFactoryDep) -> FriendGraphStore:
    return FriendGraphStore(session_factory)


def get_access_resolver(session_factory: SessionFactoryDep) -> AccessResolver:
    return AccessResolver(session_factory)


def get_directory(session_factory: SessionFactoryDep, change_feed: FeedDep) -> ConversationDirectory:
    return ConversationDirectory(session_factory, change_feed)


def get_channel(session_factory: SessionFactoryDep, change_feed: FeedDep) -> MessageChannel:
    return MessageChannel(session_factory, change_feed)


GraphStoreDep = Annotated[FriendGraphStore, Depends(get_graph_store)]
AccessResolverDep = Annotated[AccessResolver, Depends(get_access_resolver)]
DirectoryDep = Annotated[ConversationDirectory, Depends(get_directory)]
ChannelDep = Annotated[MessageChannel, Depends(get_channel)]
