"""Tests for an open chat surface: dedup, read marking and subscription lifetime."""

import asyncio

import pytest

from kinship.core.errors import AuthenticationRequiredError
from kinship.dm.surface import ChatSurface
from kinship.dm.unread import count_unread

from factories import make_friends


@pytest.fixture
def bob_surface(friends, directory, channel):
    alice, bob = friends
    surface = ChatSurface(bob.id, directory, channel)
    yield surface
    surface.close()


class TestOpen:
    async def test_requires_signed_in_user(self, directory, channel, friends):
        alice, _ = friends
        surface = ChatSurface(None, directory, channel)

        with pytest.raises(AuthenticationRequiredError):
            await surface.open(alice.id)

    async def test_loads_history_and_marks_read(self, bob_surface, directory, channel, session_factory, friends):
        alice, bob = friends
        conversation = await directory.get_or_create(alice.id, bob.id)
        await channel.send(conversation.id, alice.id, "hello")

        opened = await bob_surface.open(alice.id)

        assert opened.id == conversation.id
        assert [m.content for m in bob_surface.messages] == ["hello"]
        assert all(m.read for m in bob_surface.messages)
        assert await count_unread(session_factory, conversation.id, bob.id) == 0

    async def test_creates_conversation_on_first_open(self, bob_surface, directory, friends):
        alice, bob = friends

        await bob_surface.open(alice.id)

        assert await directory.find(alice.id, bob.id) is not None
        assert bob_surface.messages == []


class TestDelivery:
    async def test_send_echo_and_push_show_once(self, bob_surface, friends):
        alice, _ = friends
        await bob_surface.open(alice.id)

        sent = await bob_surface.send("hi alice")

        assert [m.id for m in bob_surface.messages] == [sent.id]

    async def test_inbound_message_is_shown_and_marked_read(
        self, bob_surface, channel, session_factory, friends
    ):
        alice, bob = friends
        conversation = await bob_surface.open(alice.id)

        incoming = await channel.send(conversation.id, alice.id, "are you there?")

        assert [m.id for m in bob_surface.messages] == [incoming.id]
        assert bob_surface.log.get(incoming.id).read is True
        assert await count_unread(session_factory, conversation.id, bob.id) == 0

    async def test_both_surfaces_see_one_copy(self, friends, directory, channel):
        alice, bob = friends
        async with ChatSurface(alice.id, directory, channel) as alice_surface:
            async with ChatSurface(bob.id, directory, channel) as bob_surface:
                await alice_surface.open(bob.id)
                await bob_surface.open(alice.id)

                first = await alice_surface.send("one")
                second = await bob_surface.send("two")

                for surface in (alice_surface, bob_surface):
                    assert [m.id for m in surface.messages] == [first.id, second.id]

    async def test_reading_updates_sender_view(self, friends, directory, channel):
        alice, bob = friends
        async with ChatSurface(alice.id, directory, channel) as alice_surface:
            conversation = await alice_surface.open(bob.id)
            sent = await alice_surface.send("read me")
            assert alice_surface.log.get(sent.id).read is False

            await channel.mark_conversation_read(conversation.id, bob.id)

            assert alice_surface.log.get(sent.id).read is True


class TestSubscriptionLifetime:
    async def test_reopen_releases_previous_subscription(
        self, bob_surface, store, change_feed, channel, friends, carol
    ):
        alice, bob = friends
        await make_friends(store, bob.id, carol.id)
        first = await bob_surface.open(alice.id)
        second = await bob_surface.open(carol.id)

        await channel.send(first.id, alice.id, "old thread")

        assert change_feed.subscription_count("messages") == 1
        assert bob_surface.conversation.id == second.id
        assert bob_surface.messages == []

    async def test_close_stops_callbacks_but_not_sends(self, bob_surface, change_feed, channel, friends):
        alice, _ = friends
        conversation = await bob_surface.open(alice.id)
        bob_surface.close()

        sent = await bob_surface.send("still delivered")
        await channel.send(conversation.id, alice.id, "after close")

        history = await channel.history(conversation.id, alice.id)
        assert [m.id for m in history][0] == sent.id
        assert bob_surface.messages == []
        assert change_feed.subscription_count("messages") == 0
        assert not bob_surface.is_open

    async def test_context_manager_releases_on_error(self, friends, directory, channel, change_feed):
        alice, bob = friends

        with pytest.raises(RuntimeError):
            async with ChatSurface(bob.id, directory, channel) as surface:
                await surface.open(alice.id)
                raise RuntimeError("surface torn down")

        assert change_feed.subscription_count() == 0

    async def test_racing_opens_keep_only_the_last_target(
        self, bob_surface, store, change_feed, channel, friends, carol
    ):
        alice, bob = friends
        await make_friends(store, bob.id, carol.id)

        first, second = await asyncio.gather(bob_surface.open(alice.id), bob_surface.open(carol.id))

        assert change_feed.subscription_count("messages") == 1
        assert bob_surface.conversation.id == second.id
        await channel.send(first.id, alice.id, "wrong thread")
        assert bob_surface.messages == []

        bob_surface.close()
        assert change_feed.subscription_count("messages") == 0

    async def test_close_during_open_leaves_nothing_subscribed(self, bob_surface, change_feed, friends):
        alice, _ = friends

        pending = asyncio.create_task(bob_surface.open(alice.id))
        await asyncio.sleep(0)
        bob_surface.close()
        await pending

        assert change_feed.subscription_count("messages") == 0
        assert not bob_surface.is_open
