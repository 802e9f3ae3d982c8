"""Shared test fixtures."""

import os
from collections.abc import AsyncGenerator
from pathlib import Path

os.environ.setdefault("ENV", "test")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-kinship-tests")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from kinship.dm.channel import MessageChannel
from kinship.dm.conversations import ConversationDirectory
from kinship.friends.access import AccessResolver
from kinship.friends.graph_store import FriendGraphStore
from kinship.infra.db import create_engine, create_session_factory, init_models
from kinship.models import User
from kinship.realtime.feed import ChangeFeed

from factories import create_user, make_friends

# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Create a temporary test database."""
    db_path = tmp_path / "test.db"
    test_engine = create_engine(f"sqlite+aiosqlite:///{db_path}")
    await init_models(test_engine)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def change_feed() -> ChangeFeed:
    """A feed private to one test."""
    return ChangeFeed()


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def store(session_factory) -> FriendGraphStore:
    return FriendGraphStore(session_factory)


@pytest.fixture
def resolver(session_factory) -> AccessResolver:
    return AccessResolver(session_factory)


@pytest.fixture
def directory(session_factory, change_feed) -> ConversationDirectory:
    return ConversationDirectory(session_factory, change_feed)


@pytest.fixture
def channel(session_factory, change_feed) -> MessageChannel:
    return MessageChannel(session_factory, change_feed)


# =============================================================================
# Users
# =============================================================================


@pytest.fixture
async def alice(session_factory) -> User:
    return await create_user(session_factory, "Alice", "user_alice")


@pytest.fixture
async def bob(session_factory) -> User:
    return await create_user(session_factory, "Bob", "user_bob")


@pytest.fixture
async def carol(session_factory) -> User:
    return await create_user(session_factory, "Carol", "user_carol")


@pytest.fixture
async def friends(store, alice, bob) -> tuple[User, User]:
    """Alice and Bob with an accepted friendship."""
    await make_friends(store, alice.id, bob.id)
    return alice, bob
