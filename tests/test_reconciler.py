import asyncio

import pytest

from sealchat.client.events import EventFeed
from sealchat.client.reconciler import ChatState, identity_of
from sealchat.core.proto import T_NEW_MESSAGE, Message, UserSummary


def msg(mid, sender, receiver, text="hi", ts=1):
    return {"id": mid, "sender_id": sender, "receiver_id": receiver, "text": text, "created_at": ts}


def expanded(user_id):
    return {"user_id": user_id, "first_name": user_id.title(), "profile_pic": ""}


@pytest.fixture
def feed():
    return EventFeed()


@pytest.fixture
def state(feed):
    return ChatState("alice", feed)


# -----------------------------
# identity normalisation
# -----------------------------

@pytest.mark.parametrize(
    "value",
    ["bob", {"user_id": "bob"}, {"_id": "bob", "first_name": "Bob"}, {"id": "bob"}, UserSummary(user_id="bob")],
)
def test_identity_of_accepts_every_shape(value):
    assert identity_of(value) == "bob"


@pytest.mark.parametrize("value", ["", None, 42, {"first_name": "nobody"}])
def test_identity_of_rejects_unresolvable(value):
    with pytest.raises(ValueError):
        identity_of(value)


# -----------------------------
# selection and listeners
# -----------------------------

def test_no_conversation_selected_discards_everything(state, feed):
    assert feed.listener_count(T_NEW_MESSAGE) == 0
    assert state.on_live_message(msg("m1", "bob", "alice")) is False
    assert state.append_local(msg("m2", "alice", "bob")) is False
    assert state.messages == []


def test_exactly_one_listener_across_switches(state, feed):
    state.select_conversation("bob")
    state.select_conversation("carol")
    state.select_conversation("bob")
    assert feed.listener_count(T_NEW_MESSAGE) == 1

    state.close()
    assert feed.listener_count(T_NEW_MESSAGE) == 0
    assert not state.listening


def test_switch_resets_view(state, feed):
    state.select_conversation("bob")
    feed.emit(T_NEW_MESSAGE, msg("m1", "bob", "alice"))
    assert len(state.messages) == 1

    state.select_conversation("carol")
    assert state.messages == []
    assert state.selected == "carol"


def test_event_for_previous_conversation_does_not_leak(state, feed):
    state.select_conversation("bob")
    state.select_conversation("carol")

    feed.emit(T_NEW_MESSAGE, msg("m1", "bob", "alice"))

    assert state.messages == []


def test_select_accepts_expanded_counterpart(state):
    state.select_conversation(expanded("bob"))
    assert state.selected == "bob"


# -----------------------------
# scoping
# -----------------------------

@pytest.mark.parametrize(
    "sender,receiver,accepted",
    [
        ("bob", "alice", True),
        ("alice", "bob", True),
        (expanded("bob"), "alice", True),
        ("bob", expanded("alice"), True),
        ("carol", "alice", False),
        ("alice", "carol", False),
        ("bob", "carol", False),
    ],
)
def test_live_message_scoped_to_selected_conversation(state, feed, sender, receiver, accepted):
    state.select_conversation("bob")
    feed.emit(T_NEW_MESSAGE, msg("m1", sender, receiver))
    assert (len(state.messages) == 1) is accepted


def test_malformed_live_payload_is_discarded(state, feed):
    state.select_conversation("bob")
    feed.emit(T_NEW_MESSAGE, {"id": "m1", "sender_id": {"first_name": "?"}, "receiver_id": "alice", "created_at": 1})
    feed.emit(T_NEW_MESSAGE, {"text": "no id"})
    assert state.messages == []


# -----------------------------
# dedup
# -----------------------------

def test_local_append_then_echo_yields_one_entry(state, feed):
    state.select_conversation("bob")
    assert state.append_local(msg("m1", expanded("alice"), "bob", "hey")) is True
    feed.emit(T_NEW_MESSAGE, msg("m1", expanded("alice"), "bob", "hey"))

    assert [m.id for m in state.messages] == ["m1"]


@pytest.mark.parametrize(
    "sender,receiver",
    [("alice", "carol"), ("carol", "alice"), ("bob", "carol"), (expanded("alice"), expanded("carol"))],
)
def test_local_append_outside_selected_conversation_is_refused(state, sender, receiver):
    state.select_conversation("bob")
    assert state.append_local(msg("x", sender, receiver)) is False
    assert state.messages == []


@pytest.mark.asyncio
async def test_send_resolving_after_switch_stays_out_of_new_view(state):
    release = asyncio.Event()

    async def slow_send():
        await release.wait()
        return msg("sent-to-bob", expanded("alice"), "bob")

    state.select_conversation("bob")
    pending = asyncio.create_task(slow_send())
    state.select_conversation("carol")
    release.set()

    assert state.append_local(await pending) is False
    assert state.messages == []


def test_duplicate_live_delivery_applied_once(state):
    state.select_conversation("bob")
    assert state.on_live_message(msg("m1", "bob", "alice")) is True
    assert state.on_live_message(msg("m1", "bob", "alice")) is False
    assert len(state.messages) == 1


def test_live_messages_keep_arrival_order(state):
    state.select_conversation("bob")
    for i in range(3):
        state.on_live_message(msg(f"m{i}", "bob", "alice", ts=i))
    assert [m.id for m in state.messages] == ["m0", "m1", "m2"]


def test_on_append_callback_fires_once_per_new_message(feed):
    seen = []
    state = ChatState("alice", feed, on_append=seen.append)
    state.select_conversation("bob")
    state.on_live_message(msg("m1", "bob", "alice"))
    state.on_live_message(msg("m1", "bob", "alice"))
    assert [m.id for m in seen] == ["m1"]
    assert isinstance(seen[0], Message)


# -----------------------------
# history
# -----------------------------

def test_history_replaces_view_and_feeds_dedup(state):
    generation = state.select_conversation("bob")
    assert state.load_history(generation, [msg("h1", "bob", "alice"), msg("h2", "alice", "bob")]) is True
    assert [m.id for m in state.messages] == ["h1", "h2"]

    assert state.on_live_message(msg("h2", "alice", "bob")) is False
    assert len(state.messages) == 2


def test_history_keeps_live_messages_that_arrived_during_fetch(state):
    generation = state.select_conversation("bob")
    state.on_live_message(msg("live", "bob", "alice", ts=3))
    state.on_live_message(msg("h2", "bob", "alice", ts=2))

    state.load_history(generation, [msg("h1", "bob", "alice", ts=1), msg("h2", "bob", "alice", ts=2)])

    assert [m.id for m in state.messages] == ["h1", "h2", "live"]


def test_stale_history_is_dropped(state):
    old = state.select_conversation("bob")
    state.select_conversation("carol")

    assert state.load_history(old, [msg("h1", "bob", "alice")]) is False
    assert state.messages == []


def test_history_after_close_is_dropped(state):
    generation = state.select_conversation("bob")
    state.close()
    assert state.load_history(generation, [msg("h1", "bob", "alice")]) is False


@pytest.mark.asyncio
async def test_open_conversation_switch_during_fetch(state, feed):
    release = asyncio.Event()

    async def slow_fetch(counterpart):
        await release.wait()
        return [msg("h-" + counterpart, counterpart, "alice")]

    async def fast_fetch(counterpart):
        return [msg("h-" + counterpart, counterpart, "alice")]

    pending = asyncio.create_task(state.open_conversation("bob", slow_fetch))
    await asyncio.sleep(0)
    assert await state.open_conversation("carol", fast_fetch) is True

    release.set()
    assert await pending is False
    assert state.selected == "carol"
    assert [m.id for m in state.messages] == ["h-carol"]
    assert feed.listener_count(T_NEW_MESSAGE) == 1
