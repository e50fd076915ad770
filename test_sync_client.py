"""
Tests for RoomSync, the client-side sync engine.

Most tests drive RoomSync against FakeApi, an in-memory server with fault
injection (queued errors, lost responses, gates that hold a call open).
The last class runs two clients against the real app over ASGI.
"""

import asyncio
from collections import defaultdict

import httpx
import pytest

from chatsync.api_client import ChatApiClient
from chatsync.config import SyncSettings
from chatsync.errors import (
    ErrorKind,
    InvalidNickname,
    RoomAlreadyExists,
    RoomNotFound,
    TransientError,
)
from chatsync.main import app
from chatsync.schemas import MessageView, ReactionView
from chatsync.sync_client import (
    DELETE_REJECTED,
    EDIT_REJECTED,
    RoomSync,
    SyncError,
    SyncState,
    create_room,
    join_room,
)


FAST = SyncSettings(poll_interval=1.0, max_poll_backoff=3.0, full_resync_every=3, initial_delay=0.0, max_delay=0.0)


async def no_sleep(delay):
    await asyncio.sleep(0)


async def settle(rounds=10):
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeApi:
    """In-memory server with the same contract as ChatApiClient."""

    def __init__(self, rooms=("abc",)):
        self.rooms = set(rooms)
        self.messages = {}
        self.next_id = 1
        self.calls = defaultdict(int)
        self.errors = defaultdict(list)
        self.lost_responses = defaultdict(int)
        self.gates = {}
        self.verify_rooms = True

    async def _enter(self, op):
        self.calls[op] += 1
        gate = self.gates.get(op)
        if gate is not None:
            await gate.wait()
        if self.errors[op]:
            raise self.errors[op].pop(0)

    def _lose_response(self, op):
        # The write happened but the caller never hears back
        if self.lost_responses[op]:
            self.lost_responses[op] -= 1
            raise TransientError()

    def _require(self, code):
        if code not in self.rooms:
            raise RoomNotFound()

    def add(self, content, owner="u2", nickname="bob", nonce=None, room="abc"):
        view = MessageView(
            id=self.next_id, content=content, timestamp=self.next_id, nickname=nickname, owner=owner, nonce=nonce
        )
        self.messages[view.id] = (room, view)
        self.next_id += 1
        return view.id

    def _views(self, code):
        return [view for room, view in sorted(self.messages.values(), key=lambda rv: rv[1].id) if room == code]

    def _own(self, code, message_id, owner):
        entry = self.messages.get(message_id)
        return entry is not None and entry[0] == code and entry[1].owner == owner

    async def create_room(self, code):
        await self._enter("create_room")
        code = code.strip()
        if code in self.rooms:
            raise RoomAlreadyExists()
        self.rooms.add(code)
        return code

    async def room_exists(self, code):
        await self._enter("room_exists")
        return self.verify_rooms and code in self.rooms

    async def get_messages(self, room_code):
        await self._enter("get_messages")
        self._require(room_code)
        return self._views(room_code)

    async def fetch_messages_after_id(self, room_code, last_id):
        await self._enter("fetch_messages_after_id")
        self._require(room_code)
        return [v for v in self._views(room_code) if v.id > last_id]

    async def send_message(self, room_code, content, nickname, owner_id, reply_to_id=None,
                           image=None, video=None, audio=None, nonce=None):
        await self._enter("send_message")
        self._require(room_code)
        if not nickname.strip():
            raise InvalidNickname()
        for room, view in self.messages.values():
            if room == room_code and nonce and view.nonce == nonce:
                self._lose_response("send_message")
                return view.id
        message_id = self.add(content, owner=owner_id, nickname=nickname, nonce=nonce, room=room_code)
        self._lose_response("send_message")
        return message_id

    async def edit_message(self, room_code, message_id, owner_id, new_content,
                           new_image=None, new_video=None, new_audio=None):
        await self._enter("edit_message")
        if not self._own(room_code, message_id, owner_id):
            return False
        room, view = self.messages[message_id]
        self.messages[message_id] = (room, view.model_copy(update={"content": new_content, "is_edited": True}))
        return True

    async def delete_message(self, room_code, message_id, owner_id):
        await self._enter("delete_message")
        if not self._own(room_code, message_id, owner_id):
            return False
        del self.messages[message_id]
        return True

    async def add_reaction(self, room_code, message_id, user_id, emoji):
        await self._enter("add_reaction")
        if message_id not in self.messages:
            return False
        room, view = self.messages[message_id]
        reaction = ReactionView(user_id=user_id, emoji=emoji)
        if reaction not in view.reactions:
            self.messages[message_id] = (room, view.model_copy(update={"reactions": [*view.reactions, reaction]}))
        return True

    async def remove_reaction(self, room_code, message_id, user_id, emoji):
        await self._enter("remove_reaction")
        if message_id not in self.messages:
            return False
        room, view = self.messages[message_id]
        kept = [r for r in view.reactions if (r.user_id, r.emoji) != (user_id, emoji)]
        self.messages[message_id] = (room, view.model_copy(update={"reactions": kept}))
        return True


def make_sync(api, user_id="u1", **kwargs):
    kwargs.setdefault("settings", FAST)
    kwargs.setdefault("sleep", no_sleep)
    return RoomSync(api, " abc ", user_id, **kwargs)


def ids(sync):
    return [m.id for m in sync.messages]


class TestRefresh:

    def test_cold_load(self):
        """Test the first refresh loads the full snapshot."""
        api = FakeApi()
        api.add("one")
        api.add("two")

        async def scenario():
            sync = make_sync(api)
            assert sync.room_code == "abc"
            assert sync.state is SyncState.COLD
            assert await sync.refresh() is True
            assert sync.state is SyncState.SYNCED
            assert ids(sync) == [1, 2]
            assert api.calls["get_messages"] == 1

        asyncio.run(scenario())

    def test_polls_are_incremental(self):
        """Test warm refreshes only ask for ids after the last confirmed one."""
        api = FakeApi()
        api.add("one")

        async def scenario():
            sync = make_sync(api)
            await sync.refresh()
            api.add("two")
            await sync.refresh()
            assert ids(sync) == [1, 2]
            assert api.calls["fetch_messages_after_id"] == 1
            assert api.calls["get_messages"] == 1

        asyncio.run(scenario())

    def test_periodic_full_resync(self):
        """Test edits and deletions by others show up on the periodic full refresh."""
        api = FakeApi()
        first = api.add("one")
        second = api.add("two")

        async def scenario():
            sync = make_sync(api)
            await sync.refresh()
            await api.edit_message("abc", first, "u2", "edited")
            await api.delete_message("abc", second, "u2")

            for _ in range(FAST.full_resync_every):
                await sync.refresh()
            assert sync.find(first).content == "one"
            assert ids(sync) == [1, 2]

            await sync.refresh()
            assert ids(sync) == [1]
            assert sync.find(first).content == "edited"
            assert api.calls["get_messages"] == 2

        asyncio.run(scenario())

    def test_room_gone_stops_sync(self):
        """Test a 404 on refresh stops the sync."""
        api = FakeApi()

        async def scenario():
            sync = make_sync(api)
            await sync.refresh()
            api.rooms.clear()
            with pytest.raises(RoomNotFound):
                await sync.refresh()
            assert sync.state is SyncState.STOPPED
            assert await sync.refresh() is False

        asyncio.run(scenario())

    def test_failed_cold_load_keeps_cache(self):
        """Test a transient failure leaves the cache empty and retriable."""
        api = FakeApi()
        api.add("one")
        api.errors["get_messages"].append(TransientError())

        async def scenario():
            sync = make_sync(api)
            with pytest.raises(TransientError):
                await sync.refresh()
            assert sync.messages == ()
            await sync.refresh()
            assert ids(sync) == [1]

        asyncio.run(scenario())

    def test_on_change_callback(self):
        """Test listeners see every new cache."""
        api = FakeApi()
        api.add("one")
        seen = []

        async def scenario():
            sync = make_sync(api, on_change=seen.append)
            await sync.refresh()
            await sync.refresh()

        asyncio.run(scenario())
        assert [[m.id for m in cache] for cache in seen] == [[1]]


class TestPollLoop:

    def test_backoff_on_transient_failures(self):
        """Test poll waits grow on failures, are capped, and reset on success."""
        api = FakeApi()
        api.errors["get_messages"].extend([TransientError(), TransientError(), TransientError()])
        delays = []

        async def scenario():
            finished = asyncio.Event()

            async def recording_sleep(delay):
                delays.append(delay)
                if len(delays) == 5:
                    finished.set()
                await asyncio.sleep(0)

            sync = make_sync(api, sleep=recording_sleep)
            await sync.start()
            await finished.wait()
            await sync.close()
            assert sync.state is SyncState.STOPPED

        asyncio.run(scenario())
        assert delays[:5] == [2.0, 3.0, 3.0, 1.0, 1.0]

    def test_hidden_room_does_not_poll(self):
        """Test polling waits while the room is not visible."""
        api = FakeApi()

        async def scenario():
            sync = make_sync(api)
            sync.set_visible(False)
            await sync.start()
            await settle()
            assert api.calls["get_messages"] == 0

            sync.set_visible(True)
            await settle()
            assert api.calls["get_messages"] >= 1
            assert sync.state is SyncState.SYNCED
            await sync.close()

        asyncio.run(scenario())

    def test_loop_ends_when_room_disappears(self):
        """Test the loop exits on RoomNotFound."""
        api = FakeApi(rooms=())

        async def scenario():
            sync = make_sync(api)
            await sync.start()
            await settle()
            assert sync.state is SyncState.STOPPED
            assert api.calls["get_messages"] == 1
            await sync.close()

        asyncio.run(scenario())


class TestSend:

    def test_send_confirms_entry(self):
        """Test a successful send ends with exactly one confirmed entry."""
        api = FakeApi()

        async def scenario():
            sync = make_sync(api)
            await sync.refresh()
            message_id = await sync.send("hello", "alice")
            assert message_id == 1
            assert [(m.id, m.content, m.is_optimistic) for m in sync.messages] == [(1, "hello", False)]
            assert sync.pending_nonces == frozenset()

        asyncio.run(scenario())

    def test_provisional_entry_visible_while_sending(self):
        """Test the message appears at once with a temporary negative id."""
        api = FakeApi()

        async def scenario():
            gate = api.gates["send_message"] = asyncio.Event()
            sync = make_sync(api)
            task = asyncio.create_task(sync.send("hello", "alice"))
            await settle()

            [pending] = sync.messages
            assert pending.id < 0
            assert pending.is_optimistic is True
            assert pending.owner == "u1"
            assert pending.nonce in sync.pending_nonces
            assert sync.mutations_in_flight == 1

            gate.set()
            assert await task == 1
            assert ids(sync) == [1]

        asyncio.run(scenario())

    def test_media_only_send_shows_placeholder(self):
        """Test a provisional media-only message carries its placeholder caption."""
        api = FakeApi()

        async def scenario():
            gate = api.gates["send_message"] = asyncio.Event()
            sync = make_sync(api)
            task = asyncio.create_task(sync.send("", "alice", video="vid-1"))
            await settle()
            [pending] = sync.messages
            assert pending.content == "🎬 Video"
            gate.set()
            await task

        asyncio.run(scenario())

    def test_lost_response_is_retried_once_stored(self):
        """Test a retried send with the same nonce is stored only once."""
        api = FakeApi()
        api.lost_responses["send_message"] = 2

        async def scenario():
            sync = make_sync(api)
            message_id = await sync.send("hello", "alice")
            assert api.calls["send_message"] == 3
            assert len(api.messages) == 1
            assert ids(sync) == [message_id]

        asyncio.run(scenario())

    def test_send_failure_discards_provisional(self):
        """Test a rejected send removes its entry and raises a sanitized error."""
        api = FakeApi()
        api.add("existing")

        async def scenario():
            sync = make_sync(api)
            await sync.refresh()
            with pytest.raises(SyncError) as exc_info:
                await sync.send("hello", "   ")
            assert exc_info.value.kind is ErrorKind.VALIDATION
            assert str(exc_info.value) == "Nickname must be between 1 and 20 characters"
            assert ids(sync) == [1]
            assert api.calls["send_message"] == 1

        asyncio.run(scenario())

    def test_send_gives_up_after_budget(self):
        """Test persistent network failure is retried three times, then surfaced."""
        api = FakeApi()
        api.errors["send_message"].extend([TransientError()] * 3)

        async def scenario():
            sync = make_sync(api)
            with pytest.raises(SyncError) as exc_info:
                await sync.send("hello", "alice")
            assert exc_info.value.kind is ErrorKind.TRANSIENT
            assert api.calls["send_message"] == 3
            assert sync.messages == ()

        asyncio.run(scenario())

    def test_provisional_entries_keep_creation_order(self):
        """Test concurrent sends trail confirmed entries in the order they were made."""
        api = FakeApi()
        api.add("existing")

        async def scenario():
            gate = api.gates["send_message"] = asyncio.Event()
            sync = make_sync(api)
            await sync.refresh()
            tasks = [asyncio.create_task(sync.send(f"m{i}", "alice")) for i in range(3)]
            await settle()
            assert [m.content for m in sync.messages] == ["existing", "m0", "m1", "m2"]

            gate.set()
            await asyncio.gather(*tasks)
            assert [m.is_optimistic for m in sync.messages] == [False] * 4

        asyncio.run(scenario())


class TestMutations:

    def test_edit(self):
        """Test an edit is visible at once and kept after success."""
        api = FakeApi()
        mine = api.add("mine", owner="u1")

        async def scenario():
            sync = make_sync(api)
            await sync.refresh()
            await sync.edit(mine, "changed")
            message = sync.find(mine)
            assert (message.content, message.is_edited) == ("changed", True)

        asyncio.run(scenario())

    def test_rejected_edit_rolls_back(self):
        """Test ok=false restores the original entry."""
        api = FakeApi()
        theirs = api.add("theirs", owner="u2")

        async def scenario():
            sync = make_sync(api)
            await sync.refresh()
            before = sync.find(theirs)
            with pytest.raises(SyncError) as exc_info:
                await sync.edit(theirs, "hacked")
            assert str(exc_info.value) == EDIT_REJECTED
            assert exc_info.value.kind is ErrorKind.OWNERSHIP
            assert sync.find(theirs) == before

        asyncio.run(scenario())

    def test_failed_delete_restores_message(self):
        """Test a delete that keeps failing puts the message back."""
        api = FakeApi()
        mine = api.add("mine", owner="u1")
        api.errors["delete_message"].extend([TransientError()] * 3)

        async def scenario():
            sync = make_sync(api)
            await sync.refresh()
            with pytest.raises(SyncError):
                await sync.delete(mine)
            assert ids(sync) == [mine]

        asyncio.run(scenario())

    def test_rejected_delete(self):
        """Test deleting someone else's message is refused and rolled back."""
        api = FakeApi()
        theirs = api.add("theirs", owner="u2")

        async def scenario():
            sync = make_sync(api)
            await sync.refresh()
            with pytest.raises(SyncError) as exc_info:
                await sync.delete(theirs)
            assert exc_info.value.public_message == DELETE_REJECTED
            assert ids(sync) == [theirs]

        asyncio.run(scenario())

    def test_toggle_reaction(self):
        """Test toggling adds, then removes, our reaction."""
        api = FakeApi()
        target = api.add("hi")

        async def scenario():
            sync = make_sync(api)
            await sync.refresh()
            assert await sync.toggle_reaction(target, "❤️") is True
            assert sync.find(target).has_reaction("u1", "❤️")
            assert await sync.toggle_reaction(target, "❤️") is False
            assert not sync.find(target).has_reaction("u1", "❤️")
            assert api.messages[target][1].reactions == []

        asyncio.run(scenario())

    def test_rollback_keeps_concurrent_changes(self):
        """Test a failed mutation does not undo another one that succeeded."""
        api = FakeApi()
        first = api.add("first", owner="u1")
        second = api.add("second", owner="u1")
        api.errors["delete_message"].extend([TransientError()] * 3)

        async def scenario():
            gate = api.gates["delete_message"] = asyncio.Event()
            sync = make_sync(api)
            await sync.refresh()

            failing = asyncio.create_task(sync.delete(first))
            await settle()
            await sync.edit(second, "edited")
            gate.set()
            with pytest.raises(SyncError):
                await failing

            assert ids(sync) == [first, second]
            assert sync.find(second).content == "edited"

        asyncio.run(scenario())

    def test_rollback_does_not_revive_deleted_message(self):
        """Test a failed reaction leaves alone a message deleted while it was in flight."""
        api = FakeApi()
        target = api.add("mine", owner="u1")
        api.errors["add_reaction"].extend([TransientError()] * 3)

        async def scenario():
            gate = api.gates["add_reaction"] = asyncio.Event()
            sync = make_sync(api)
            await sync.refresh()

            reacting = asyncio.create_task(sync.add_reaction(target, "👍"))
            await settle()
            await sync.delete(target)
            gate.set()
            with pytest.raises(SyncError):
                await reacting

            assert ids(sync) == []
            assert target not in api.messages
            assert await sync.refresh() is True
            assert ids(sync) == []

        asyncio.run(scenario())

    def test_unconfirmed_message_cannot_be_edited(self):
        """Test mutations on a provisional entry are refused locally."""
        api = FakeApi()

        async def scenario():
            gate = api.gates["send_message"] = asyncio.Event()
            sync = make_sync(api)
            task = asyncio.create_task(sync.send("hello", "alice"))
            await settle()
            [pending] = sync.messages
            with pytest.raises(SyncError):
                await sync.edit(pending.id, "changed")
            assert api.calls["edit_message"] == 0
            gate.set()
            await task

        asyncio.run(scenario())


class TestMutationRefreshInteraction:

    def test_mutation_cancels_inflight_refresh(self):
        """Test a refresh on the wire when a mutation starts is discarded."""
        api = FakeApi()
        target = api.add("hi", owner="u1")

        async def scenario():
            sync = make_sync(api)
            await sync.refresh()

            gate = api.gates["fetch_messages_after_id"] = asyncio.Event()
            refresh = asyncio.create_task(sync.refresh())
            await settle()
            await sync.edit(target, "edited")
            gate.set()

            assert await refresh is False
            assert sync.find(target).content == "edited"

        asyncio.run(scenario())

    def test_mutation_cancels_overlapping_refreshes(self):
        """Test a poll and a jump-to-reply lookup on the wire are both discarded."""
        api = FakeApi()
        target = api.add("hi", owner="u1")

        async def scenario():
            sync = make_sync(api)
            await sync.refresh()

            fetch_gate = api.gates["get_messages"] = asyncio.Event()
            poll = asyncio.create_task(sync.refresh(full=True))
            lookup = asyncio.create_task(sync.locate_message(999))
            await settle()
            assert api.calls["get_messages"] == 3

            edit_gate = api.gates["edit_message"] = asyncio.Event()
            edit = asyncio.create_task(sync.edit(target, "edited"))
            await settle()
            fetch_gate.set()
            await settle()

            assert await poll is False
            assert await lookup is None
            assert sync.find(target).content == "edited"

            edit_gate.set()
            await edit
            assert sync.find(target).content == "edited"

        asyncio.run(scenario())

    def test_first_refresh_after_mutation_is_full(self):
        """Test server-side state is reconciled right after a mutation."""
        api = FakeApi()
        target = api.add("hi", owner="u1")

        async def scenario():
            sync = make_sync(api)
            await sync.refresh()
            await sync.add_reaction(target, "👍")
            await sync.refresh()
            assert api.calls["get_messages"] == 2
            assert sync.find(target).has_reaction("u1", "👍")

        asyncio.run(scenario())

    def test_refresh_waits_for_mutation(self):
        """Test a refresh requested mid-mutation runs only after it settles."""
        api = FakeApi()

        async def scenario():
            gate = api.gates["send_message"] = asyncio.Event()
            sync = make_sync(api)
            send = asyncio.create_task(sync.send("hello", "alice"))
            await settle()
            refresh = asyncio.create_task(sync.refresh())
            await settle()
            assert api.calls["get_messages"] == 0

            gate.set()
            await send
            assert await refresh is True
            assert ids(sync) == [1]

        asyncio.run(scenario())


class TestLocate:

    def test_cached_message_needs_no_fetch(self):
        """Test a cache hit does not touch the server."""
        api = FakeApi()
        target = api.add("hi")

        async def scenario():
            sync = make_sync(api)
            await sync.refresh()
            assert (await sync.locate_message(target)).id == target
            assert api.calls["get_messages"] == 1

        asyncio.run(scenario())

    def test_miss_forces_one_full_refresh(self):
        """Test a miss refetches once and finds a message not yet polled."""
        api = FakeApi()

        async def scenario():
            sync = make_sync(api)
            await sync.refresh()
            target = api.add("late")
            assert (await sync.locate_message(target)).content == "late"
            assert api.calls["get_messages"] == 2

        asyncio.run(scenario())

    def test_unavailable_message(self):
        """Test a message that is gone yields None after one refetch."""
        api = FakeApi()

        async def scenario():
            sync = make_sync(api)
            await sync.refresh()
            assert await sync.locate_message(42) is None
            assert api.calls["get_messages"] == 2

        asyncio.run(scenario())


class TestLifecycle:

    def test_close_cancels_pending_send(self):
        """Test leaving the room cancels retries and rolls back the send."""
        api = FakeApi()

        async def scenario():
            api.gates["send_message"] = asyncio.Event()
            sync = make_sync(api)
            send = asyncio.create_task(sync.send("hello", "alice"))
            await settle()

            await sync.close()
            with pytest.raises(SyncError) as exc_info:
                await send
            assert exc_info.value.kind is ErrorKind.CANCELLED
            assert sync.messages == ()
            assert sync.state is SyncState.STOPPED

            with pytest.raises(SyncError):
                await sync.send("again", "alice")

        asyncio.run(scenario())

    def test_create_room_verifies(self):
        """Test creation reports success only once the room is visible."""
        api = FakeApi(rooms=())

        async def scenario():
            assert await create_room(api, " new ") == "new"
            with pytest.raises(SyncError) as exc_info:
                await create_room(api, "new")
            assert exc_info.value.public_message == "Room already exists. Please use Join Room."

            api.verify_rooms = False
            with pytest.raises(SyncError) as exc_info:
                await create_room(api, "other")
            assert "verification failed" in exc_info.value.public_message

        asyncio.run(scenario())

    def test_join_room(self):
        """Test joining an existing room starts syncing; a missing one fails."""
        api = FakeApi()
        api.add("hi")

        async def scenario():
            sync = await join_room(api, " abc ", "u1", settings=FAST, sleep=no_sleep)
            await settle()
            assert sync.state is SyncState.SYNCED
            assert ids(sync) == [1]
            await sync.close()

            with pytest.raises(SyncError) as exc_info:
                await join_room(api, "missing", "u1", settings=FAST, sleep=no_sleep)
            assert exc_info.value.kind is ErrorKind.NOT_FOUND

        asyncio.run(scenario())


class TestAgainstApp:
    """Two clients syncing through the real server."""

    def test_two_clients(self, tables):
        """Test sends, reactions and edits propagate between clients."""

        async def scenario():
            transport = httpx.ASGITransport(app=app)
            async with ChatApiClient(base_url="http://testserver", transport=transport) as api:
                await create_room(api, "abc")
                alice = RoomSync(api, "abc", "u1", settings=FAST, sleep=no_sleep)
                bob = RoomSync(api, "abc", "u2", settings=FAST, sleep=no_sleep)
                await alice.refresh()
                await bob.refresh()

                message_id = await alice.send("hi", "alice")
                await bob.refresh()
                assert [(m.id, m.content) for m in bob.messages] == [(message_id, "hi")]

                await bob.add_reaction(message_id, "❤️")
                await alice.edit(message_id, "hi all")
                await alice.refresh()
                await bob.refresh()

                for sync in (alice, bob):
                    message = sync.find(message_id)
                    assert message.content == "hi all"
                    assert message.is_edited is True
                    assert message.has_reaction("u2", "❤️")

                await alice.close()
                await bob.close()

        asyncio.run(scenario())
