"""
Tests for ChatSession against the in-memory store.

Tests cover:
- Optimistic send, confirmation and rollback
- No duplicate entry whichever of feed echo and create response comes first
- Remote-first edit and delete with sender-only authorization
- Optimistic reactions: idempotence, ordering, rollback
- Feed resync, listeners and close
- Typing indicators: self-suppression and expiry
"""

import asyncio

import pytest

from eventchat.exceptions import (
    InvalidRequestError,
    NotFoundError,
    PermissionDeniedError,
    ReactionFailedError,
    SendFailedError,
    SessionClosedError,
)
from eventchat.schemas import FeedEvent
from eventchat.session import ChatSession, Participant
from fakes import FakeRemoteStore


ADMIN = "staff@example.com"
GUEST = "guest@example.com"

pytestmark = pytest.mark.anyio


@pytest.fixture
async def session(remote_store):
    chat = ChatSession(remote_store, remote_store.conversation_id, Participant("guest", GUEST))
    await chat.open()
    yield chat
    await chat.close()


def bodies(snapshot):
    return [entry.body for entry in snapshot.entries]


class TestOpen:
    async def test_loads_newest_page(self):
        store = FakeRemoteStore()
        for i in range(3):
            store.insert_remote("admin", f"welcome {i}", publish=False)
        chat = ChatSession(store, store.conversation_id, Participant("guest", GUEST))

        snapshot = await chat.open()

        assert bodies(snapshot) == ["welcome 0", "welcome 1", "welcome 2"]
        assert snapshot.has_more is False
        await chat.close()

    async def test_unknown_paging_strategy(self, remote_store):
        with pytest.raises(ValueError):
            ChatSession(remote_store, 1, Participant("guest", GUEST), paging="random")

    async def test_open_failure_closes_session(self):
        store = FakeRemoteStore()
        store.fail("fetch_before", NotFoundError("Conversation 1 not found"))
        chat = ChatSession(store, store.conversation_id, Participant("guest", GUEST))

        with pytest.raises(NotFoundError):
            await chat.open()
        assert store.feed.subscriber_count(store.conversation_id) == 0


class TestSend:
    async def test_pending_entry_visible_before_confirmation(self, session, remote_store):
        gate = remote_store.block("create_message")

        pending = await session.send("Where is the coat check?")

        assert [e.body for e in session.snapshot.pending] == ["Where is the coat check?"]
        assert session.snapshot.entries[0].temp_id == pending.temp_id
        assert session.snapshot.entries[0].id is None

        remote_store.unblock("create_message")
        confirmed = await pending.confirmation
        await session.flush()

        assert gate.is_set()
        assert confirmed.id is not None
        assert session.snapshot.pending == ()
        assert session.snapshot.ids() == [confirmed.id]

    async def test_echo_before_response_yields_one_entry(self, session, remote_store):
        pending = await session.send("hello")
        confirmed = await pending.confirmation
        await session.flush()

        assert session.snapshot.ids() == [confirmed.id]
        assert len(session.snapshot.entries) == 1

    async def test_response_before_echo_yields_one_entry(self, session, remote_store):
        remote_store.hold_feed()

        pending = await session.send("hello")
        confirmed = await pending.confirmation
        remote_store.release_feed()
        await session.flush()

        assert session.snapshot.ids() == [confirmed.id]
        assert len(session.snapshot.entries) == 1

    async def test_redelivered_insert_is_merged(self, session, remote_store):
        message = remote_store.insert_remote("admin", "Doors open at 7")
        remote_store.feed.publish(FeedEvent(type="insert", conversation_id=1, message=message))
        await session.flush()

        assert session.snapshot.ids() == [message.id]

    async def test_failed_send_rolls_back(self, session, remote_store):
        remote_store.insert_remote("admin", "Hi there")
        await session.flush()
        before = session.snapshot.entries
        remote_store.fail("create_message")

        pending = await session.send("  see you soon  ")
        with pytest.raises(SendFailedError) as exc_info:
            await pending.confirmation
        await session.flush()

        assert exc_info.value.text == "  see you soon  "
        assert session.snapshot.entries == before
        assert session.draft == "  see you soon  "

    async def test_blank_message_rejected_locally(self, session, remote_store):
        with pytest.raises(InvalidRequestError):
            await session.send("   ")
        assert remote_store.count("create_message") == 0

    async def test_remote_insert_during_pending_send_keeps_order(self, session, remote_store):
        remote_store.block("create_message")
        pending = await session.send("mine")

        remote_store.insert_remote("admin", "theirs")
        await session.flush()
        remote_store.unblock("create_message")
        await pending.confirmation
        await session.flush()

        assert bodies(session.snapshot) == ["theirs", "mine"]
        assert session.snapshot.pending == ()

    async def test_concurrent_sends_each_confirm_once(self, session, remote_store):
        first = await session.send("one")
        second = await session.send("two")
        await asyncio.gather(first.confirmation, second.confirmation)
        await session.flush()

        assert bodies(session.snapshot) == ["one", "two"]
        assert len(set(session.snapshot.ids())) == 2

    async def test_deleted_message_stays_gone_when_create_response_arrives_last(self, session, remote_store):
        remote_store.hold_response("create_message")
        pending = await session.send("hello")
        await session.flush()
        await session.flush()
        assert session.snapshot.pending == ()
        [message_id] = session.snapshot.ids()

        await session.delete(message_id)
        remote_store.release_response("create_message")
        await pending.confirmation
        await session.flush()

        assert session.snapshot.entries == ()
        assert remote_store.messages() == []


class TestEditDelete:
    async def test_edit_own_message(self, session, remote_store):
        pending = await session.send("helo")
        confirmed = await pending.confirmation

        edited = await session.edit(confirmed.id, "hello")
        await session.flush()

        assert edited.body == "hello"
        assert edited.is_edited is True
        assert session.snapshot.find(confirmed.id).body == "hello"

    async def test_edit_other_party_message_denied_without_remote_call(self, session, remote_store):
        message = remote_store.insert_remote("admin", "Welcome!")
        await session.flush()

        with pytest.raises(PermissionDeniedError):
            await session.edit(message.id, "changed")

        assert remote_store.count("update_message") == 0
        assert session.snapshot.find(message.id).body == "Welcome!"

    async def test_failed_edit_leaves_log_untouched(self, session, remote_store):
        pending = await session.send("original")
        confirmed = await pending.confirmation
        await session.flush()
        remote_store.fail("update_message")

        with pytest.raises(ConnectionError):
            await session.edit(confirmed.id, "changed")

        assert session.snapshot.find(confirmed.id).body == "original"
        assert session.snapshot.find(confirmed.id).is_edited is False

    async def test_delete_own_message(self, session, remote_store):
        pending = await session.send("oops")
        confirmed = await pending.confirmation

        await session.delete(confirmed.id)
        await session.flush()

        assert session.snapshot.entries == ()
        assert remote_store.messages() == []

    async def test_delete_other_party_message_denied(self, session, remote_store):
        message = remote_store.insert_remote("admin", "Keep me")
        await session.flush()

        with pytest.raises(PermissionDeniedError):
            await session.delete(message.id)
        assert remote_store.count("delete_message") == 0

    async def test_remote_delete_prunes(self, session, remote_store):
        message = remote_store.insert_remote("admin", "Wrong room, sorry")
        await session.flush()

        await remote_store.delete_message(message.id, ADMIN)
        await session.flush()

        assert session.snapshot.find(message.id) is None

    async def test_remote_edit_applies(self, session, remote_store):
        message = remote_store.insert_remote("admin", "Room 12")
        await session.flush()

        await remote_store.update_message(message.id, ADMIN, "Room 21")
        await session.flush()

        assert session.snapshot.find(message.id).body == "Room 21"


class TestReactions:
    async def _message(self, session, remote_store):
        message = remote_store.insert_remote("admin", "Dinner is served")
        await session.flush()
        return message

    async def test_toggle_is_optimistic(self, session, remote_store):
        message = await self._message(session, remote_store)
        remote_store.block("add_reaction")

        pending = await session.toggle_reaction(message.id, "👍")

        summary = session.snapshot.reactions_for(message.id)
        assert [(s.emoji, s.count, s.self_reacted) for s in summary] == [("👍", 1, True)]

        remote_store.unblock("add_reaction")
        assert await pending.confirmation is True
        await session.flush()

        summary = session.snapshot.reactions_for(message.id)
        assert [(s.emoji, s.count, s.self_reacted) for s in summary] == [("👍", 1, True)]
        assert remote_store.reactions_of(message.id) == [(GUEST, "👍")]

    async def test_toggle_twice_removes(self, session, remote_store):
        message = await self._message(session, remote_store)

        first = await session.toggle_reaction(message.id, "👍")
        second = await session.toggle_reaction(message.id, "👍")
        assert first.added is True
        assert second.added is False
        await asyncio.gather(first.confirmation, second.confirmation)
        await session.flush()

        assert session.snapshot.reactions_for(message.id) == ()
        assert remote_store.reactions_of(message.id) == []
        assert [op for op, _ in remote_store.calls if op.endswith("_reaction")] == ["add_reaction", "remove_reaction"]

    async def test_failed_toggle_reverts(self, session, remote_store):
        message = await self._message(session, remote_store)
        remote_store.fail("add_reaction")

        pending = await session.toggle_reaction(message.id, "🎉")
        with pytest.raises(ReactionFailedError):
            await pending.confirmation
        await session.flush()

        assert session.snapshot.reactions_for(message.id) == ()

    async def test_failed_removal_restores(self, session, remote_store):
        message = await self._message(session, remote_store)
        added = await session.toggle_reaction(message.id, "🎉")
        await added.confirmation
        remote_store.fail("remove_reaction")

        removed = await session.toggle_reaction(message.id, "🎉")
        with pytest.raises(ReactionFailedError):
            await removed.confirmation
        await session.flush()

        summary = session.snapshot.reactions_for(message.id)
        assert [(s.emoji, s.count, s.self_reacted) for s in summary] == [("🎉", 1, True)]

    async def test_other_party_reaction_counts_once_when_redelivered(self, session, remote_store):
        message = await self._message(session, remote_store)
        event = FeedEvent(
            type="reaction_added", conversation_id=1, message_id=message.id, reactor=ADMIN, emoji="❤️"
        )

        remote_store.feed.publish(event)
        remote_store.feed.publish(event)
        await session.flush()

        summary = session.snapshot.reactions_for(message.id)
        assert [(s.emoji, s.count, s.self_reacted) for s in summary] == [("❤️", 1, False)]

    async def test_removal_of_absent_reaction_never_goes_negative(self, session, remote_store):
        message = await self._message(session, remote_store)
        remote_store.feed.publish(
            FeedEvent(type="reaction_removed", conversation_id=1, message_id=message.id, reactor=ADMIN, emoji="❤️")
        )
        await session.flush()

        assert session.snapshot.reactions_for(message.id) == ()

    async def test_toggle_on_unloaded_message(self, session):
        with pytest.raises(NotFoundError):
            await session.toggle_reaction(999, "👍")

    async def test_reaction_locks_are_released(self, session, remote_store):
        message = await self._message(session, remote_store)

        first = await session.toggle_reaction(message.id, "👍")
        second = await session.toggle_reaction(message.id, "👍")
        await asyncio.gather(first.confirmation, second.confirmation)
        await session.flush()

        assert session._reaction_locks == {}


class TestResyncAndLifecycle:
    async def test_resync_reconciles_missed_changes(self, session, remote_store):
        first = remote_store.insert_remote("admin", "one")
        second = remote_store.insert_remote("admin", "two")
        third = remote_store.insert_remote("admin", "three")
        await session.flush()

        remote_store.delete_silently(second.id)
        missed = remote_store.insert_remote("admin", "four", publish=False)
        await remote_store.reconnect()
        await session.flush()

        assert session.snapshot.ids() == [first.id, third.id, missed.id]

    async def test_resync_prunes_when_store_is_now_empty(self, session, remote_store):
        message = remote_store.insert_remote("admin", "a")
        await session.flush()

        remote_store.delete_silently(message.id)
        await remote_store.reconnect()
        await session.flush()

        assert session.snapshot.entries == ()

    async def test_resync_with_offset_paging_prunes_missed_deletes(self, remote_store):
        for body in ("a", "b"):
            remote_store.insert_remote("admin", body, publish=False)
        chat = ChatSession(remote_store, 1, Participant("guest", GUEST), paging="offset")
        await chat.open()

        for message in remote_store.messages():
            remote_store.delete_silently(message.id)
        await remote_store.reconnect()
        await chat.flush()

        assert chat.snapshot.entries == ()
        await chat.close()

    async def test_listeners_receive_snapshots(self, session, remote_store):
        seen = []
        remove = session.add_listener(seen.append)

        remote_store.insert_remote("admin", "ping")
        await session.flush()
        remove()
        remote_store.insert_remote("admin", "pong")
        await session.flush()

        assert seen
        assert all(a.version < b.version for a, b in zip(seen, seen[1:]))
        assert "pong" not in bodies(seen[-1])

    async def test_events_for_other_conversations_are_ignored(self, session, remote_store):
        other = FakeRemoteStore(conversation_id=2).insert_remote("admin", "elsewhere", publish=False)
        session._on_feed_event(FeedEvent(type="insert", conversation_id=2, message=other))
        await session.flush()

        assert session.snapshot.entries == ()

    async def test_close_discards_pending_and_cancels(self, remote_store):
        chat = ChatSession(remote_store, remote_store.conversation_id, Participant("guest", GUEST))
        await chat.open()
        remote_store.block("create_message")
        pending = await chat.send("never mind")

        await chat.close()

        assert chat.snapshot.entries == ()
        assert pending.confirmation.cancelled()
        assert remote_store.feed.subscriber_count(remote_store.conversation_id) == 0
        with pytest.raises(SessionClosedError):
            await chat.send("too late")

    async def test_context_manager(self, remote_store):
        async with ChatSession(remote_store, 1, Participant("admin", ADMIN)) as chat:
            pending = await chat.send("Welcome to the gala")
            await pending.confirmation
        assert not chat.is_open
        assert remote_store.messages()[0].body == "Welcome to the gala"


class TestTyping:
    @pytest.fixture
    async def chat(self, remote_store):
        chat = ChatSession(remote_store, 1, Participant("guest", GUEST), typing_timeout=0.05)
        await chat.open()
        yield chat
        await chat.close()

    def typing_calls(self, remote_store):
        return [args[2] for op, args in remote_store.calls if op == "send_typing"]

    async def test_other_party_typing_shows_then_expires(self, chat, remote_store):
        await remote_store.send_typing(1, ADMIN, True)
        await chat.flush()
        assert chat.snapshot.typing == (ADMIN,)

        await asyncio.sleep(0.1)
        await chat.flush()

        assert chat.snapshot.typing == ()

    async def test_stop_clears_indicator(self, chat, remote_store):
        await remote_store.send_typing(1, ADMIN, True)
        await remote_store.send_typing(1, ADMIN, False)
        await chat.flush()

        assert chat.snapshot.typing == ()

    async def test_own_typing_is_broadcast_but_not_shown(self, chat, remote_store):
        await chat.set_typing()
        await chat.flush()

        assert chat.snapshot.typing == ()
        assert self.typing_calls(remote_store) == [True]

    async def test_start_stops_by_itself(self, chat, remote_store):
        await chat.set_typing()
        await asyncio.sleep(0.1)

        assert self.typing_calls(remote_store) == [True, False]

    async def test_stop_without_start_sends_nothing(self, chat, remote_store):
        await chat.set_typing(False)

        assert self.typing_calls(remote_store) == []

    async def test_sending_a_message_stops_typing(self, chat, remote_store):
        await chat.set_typing()
        pending = await chat.send("on my way")
        await pending.confirmation
        await chat.flush()

        assert self.typing_calls(remote_store) == [True, False]
