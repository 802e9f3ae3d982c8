"""Tests for per-conversation and per-friend unread tracking."""

import asyncio

import pytest

from kinship.dm.surface import ChatSurface
from kinship.dm.unread import UnreadTracker, count_unread
from kinship.realtime.feed import ChangeType

from factories import create_user, make_friends


@pytest.fixture
async def bob_tracker(session_factory, change_feed, friends):
    _, bob = friends
    tracker = UnreadTracker(session_factory, change_feed, bob.id)
    await tracker.start()
    yield tracker
    tracker.close()


class TestCounting:
    async def test_counts_inbound_unread_only(self, channel, directory, session_factory, friends):
        alice, bob = friends
        conversation = await directory.get_or_create(alice.id, bob.id)
        await channel.send(conversation.id, alice.id, "one")
        await channel.send(conversation.id, alice.id, "two")
        await channel.send(conversation.id, bob.id, "mine")

        assert await count_unread(session_factory, conversation.id, bob.id) == 2
        assert await count_unread(session_factory, conversation.id, alice.id) == 1

    async def test_refresh_loads_existing_state(self, channel, directory, bob_tracker, friends):
        alice, bob = friends
        conversation = await directory.get_or_create(alice.id, bob.id)
        await channel.send(conversation.id, alice.id, "one")

        await bob_tracker.refresh()

        assert bob_tracker.count(conversation.id) == 1
        assert bob_tracker.total() == 1
        assert await bob_tracker.unread_count(conversation.id) == 1


class TestRealtime:
    async def test_inbound_messages_increment_by_one(self, channel, directory, bob_tracker, friends):
        alice, bob = friends
        conversation = await directory.get_or_create(alice.id, bob.id)

        for expected in (1, 2, 3):
            await channel.send(conversation.id, alice.id, f"m{expected}")
            assert bob_tracker.count(conversation.id) == expected

    async def test_own_messages_do_not_count(self, channel, directory, bob_tracker, friends):
        alice, bob = friends
        conversation = await directory.get_or_create(alice.id, bob.id)

        await channel.send(conversation.id, bob.id, "from me")

        assert bob_tracker.count(conversation.id) == 0

    async def test_mark_read_zeroes_then_counts_new(self, channel, directory, bob_tracker, friends):
        alice, bob = friends
        conversation = await directory.get_or_create(alice.id, bob.id)
        await channel.send(conversation.id, alice.id, "one")
        await channel.send(conversation.id, alice.id, "two")

        await channel.mark_conversation_read(conversation.id, bob.id)
        assert bob_tracker.count(conversation.id) == 0

        await channel.send(conversation.id, alice.id, "three")
        assert bob_tracker.count(conversation.id) == 1

    async def test_local_mark_read_is_immediate(self, channel, directory, bob_tracker, friends):
        alice, bob = friends
        conversation = await directory.get_or_create(alice.id, bob.id)
        await channel.send(conversation.id, alice.id, "one")

        bob_tracker.mark_read_locally(conversation.id)

        assert bob_tracker.count(conversation.id) == 0

    async def test_duplicate_delivery_counts_once(self, channel, change_feed, directory, bob_tracker, friends):
        alice, bob = friends
        conversation = await directory.get_or_create(alice.id, bob.id)
        message = await channel.send(conversation.id, alice.id, "one")

        await change_feed.publish("messages", ChangeType.INSERT, message.model_dump())

        assert bob_tracker.count(conversation.id) == 1

    async def test_open_surface_keeps_count_at_zero(self, channel, directory, bob_tracker, friends):
        alice, bob = friends
        async with ChatSurface(bob.id, directory, channel, tracker=bob_tracker) as surface:
            conversation = await surface.open(alice.id)
            await channel.send(conversation.id, alice.id, "seen immediately")

            assert bob_tracker.count(conversation.id) == 0

    async def test_closed_tracker_stops_listening(self, channel, change_feed, directory, session_factory, friends):
        alice, bob = friends
        conversation = await directory.get_or_create(alice.id, bob.id)
        async with UnreadTracker(session_factory, change_feed, bob.id) as tracker:
            await channel.send(conversation.id, alice.id, "one")

        await channel.send(conversation.id, alice.id, "two")

        assert tracker.count(conversation.id) == 1
        assert change_feed.subscription_count() == 0


class TestSummaries:
    async def test_sorted_by_unread_then_recency_then_name(
        self, store, channel, directory, session_factory, change_feed, friends
    ):
        alice, bob = friends
        zoe = await create_user(session_factory, "Zoe")
        cory = await create_user(session_factory, "Cory")
        dana = await create_user(session_factory, "Dana")
        for friend in (zoe, cory, dana):
            await make_friends(store, bob.id, friend.id)

        with_alice = await directory.get_or_create(alice.id, bob.id)
        with_zoe = await directory.get_or_create(zoe.id, bob.id)
        with_cory = await directory.get_or_create(cory.id, bob.id)
        await channel.send(with_alice.id, alice.id, "a1")
        await channel.send(with_cory.id, cory.id, "c1")
        await channel.send(with_cory.id, cory.id, "c2")
        await channel.send(with_zoe.id, bob.id, "to zoe")

        tracker = UnreadTracker(session_factory, change_feed, bob.id)
        await tracker.refresh()
        summary = tracker.summary()

        assert [(f.display_name, f.unread_count) for f in summary.friends] == [
            ("Cory", 2),
            ("Alice", 1),
            ("Zoe", 0),
            ("Dana", 0),
        ]
        assert summary.total == 3
        assert summary.friends[3].conversation_id is None

    async def test_new_conversation_is_picked_up_live(self, store, channel, directory, bob_tracker, session_factory, friends):
        _, bob = friends
        erin = await create_user(session_factory, "Erin")
        await make_friends(store, erin.id, bob.id)
        await bob_tracker.refresh()

        conversation = await directory.get_or_create(erin.id, bob.id)
        await channel.send(conversation.id, erin.id, "hello")

        assert bob_tracker.count(conversation.id) == 1
        assert bob_tracker.total() == 1


class TestPeriodicRefresh:
    async def test_reconciles_and_stops_on_cancel(self, session_factory, change_feed, friends):
        alice, bob = friends
        tracker = UnreadTracker(session_factory, change_feed, bob.id)
        calls = []
        original = tracker.refresh

        async def counting_refresh():
            calls.append(1)
            await original()

        tracker.refresh = counting_refresh
        task = asyncio.create_task(tracker.run_periodic_refresh(interval=0.01))
        while len(calls) < 2:
            await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(calls) >= 2
