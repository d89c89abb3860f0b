import asyncio

import pytest

from lexia.models.conversation import DEFAULT_CONVERSATION_TITLE
from lexia.services.change_feed import ChangeFeed, messages_topic
from lexia.services.conversation_store import ConversationNotFound, derive_title

pytestmark = pytest.mark.anyio

USER = "user-1"


def test_derive_title_keeps_short_questions():
    assert derive_title("¿Qué es la prescripción?") == "¿Qué es la prescripción?"


def test_derive_title_uses_question_as_typed():
    question = "   " + "a" * 40
    assert derive_title(question) == "   " + "a" * 37 + "..."


def test_derive_title_truncates_long_questions():
    question = "¿Cuál es el plazo de prescripción de una deuda civil en España?"
    title = derive_title(question)
    assert title == question[:40] + "..."


async def test_new_conversation_has_provisional_title(store):
    conv_id = await store.create_conversation(USER)

    conv = await store.get_conversation(conv_id)
    assert conv.title == DEFAULT_CONVERSATION_TITLE
    assert conv.user_id == USER
    assert conv.last_updated_at >= conv.created_at
    assert (await store.latest_conversation(USER)).id == conv_id


async def test_title_is_set_once(store):
    conv_id = await store.create_conversation(USER)

    first = await store.touch_conversation(conv_id, derive_title("¿Qué es la prescripción?"))
    again = await store.touch_conversation(conv_id, derive_title("¿Qué es la prescripción?"))
    later = await store.touch_conversation(conv_id, derive_title("¿Y la caducidad?"))

    assert first.title == "¿Qué es la prescripción?"
    assert again.title == "¿Qué es la prescripción?"
    assert later.title == "¿Qué es la prescripción?"
    assert first.last_updated_at <= again.last_updated_at <= later.last_updated_at


async def test_touch_without_title_keeps_provisional_title(store):
    conv_id = await store.create_conversation(USER)

    conv = await store.touch_conversation(conv_id)

    assert conv.title == DEFAULT_CONVERSATION_TITLE


async def test_touch_unknown_conversation(store):
    with pytest.raises(ConversationNotFound):
        await store.touch_conversation("missing")


async def test_messages_come_back_in_insert_order(store):
    conv_id = await store.create_conversation(USER)
    texts = ["uno", "dos", "tres", "cuatro"]
    for i, text in enumerate(texts):
        await store.append_message(USER, conv_id, "user" if i % 2 == 0 else "assistant", text)

    messages = await store.list_messages(USER, conv_id)

    assert [m.text for m in messages] == texts
    stamps = [m.timestamp for m in messages]
    assert all(a < b for a, b in zip(stamps, stamps[1:]))
    assert len({m.id for m in messages}) == len(texts)


async def test_append_rejects_unknown_role(store):
    conv_id = await store.create_conversation(USER)

    with pytest.raises(ValueError):
        await store.append_message(USER, conv_id, "system", "hola")


async def test_append_requires_owned_conversation(store):
    conv_id = await store.create_conversation(USER)

    with pytest.raises(ConversationNotFound):
        await store.append_message("intruder", conv_id, "user", "hola")
    with pytest.raises(ConversationNotFound):
        await store.append_message(USER, "missing", "user", "hola")
    assert await store.list_messages(USER, conv_id) == []


async def test_reads_are_scoped_to_owner(store):
    conv_id = await store.create_conversation(USER)
    await store.append_message(USER, conv_id, "user", "hola")

    assert await store.get_conversation(conv_id, "intruder") is None
    assert await store.list_messages("intruder", conv_id) == []
    assert await store.list_conversations("intruder") == []


async def test_conversations_listed_last_updated_first(store):
    older = await store.create_conversation(USER)
    newer = await store.create_conversation(USER)

    assert [c.id for c in await store.list_conversations(USER)] == [newer, older]

    await store.touch_conversation(older)

    assert [c.id for c in await store.list_conversations(USER)] == [older, newer]
    assert (await store.latest_conversation(USER)).id == older


async def test_message_subscription_delivers_snapshots(store):
    conv_id = await store.create_conversation(USER)
    snapshots = []

    unsubscribe = await store.subscribe_messages(USER, conv_id, snapshots.append)
    await store.append_message(USER, conv_id, "user", "¿Qué es la prescripción?")
    await store.append_message(USER, conv_id, "assistant", "La prescripción es...")

    assert snapshots[0] == []
    assert [[m.text for m in s] for s in snapshots[1:]] == [
        ["¿Qué es la prescripción?"],
        ["¿Qué es la prescripción?", "La prescripción es..."],
    ]

    unsubscribe()
    await store.append_message(USER, conv_id, "user", "gracias")
    assert len(snapshots) == 3
    assert store.feed.subscriber_count(messages_topic(USER, conv_id)) == 0


async def test_late_subscriber_sees_current_state(store):
    conv_id = await store.create_conversation(USER)
    await store.append_message(USER, conv_id, "user", "pregunta")
    await store.append_message(USER, conv_id, "assistant", "respuesta")
    snapshots = []

    await store.subscribe_messages(USER, conv_id, snapshots.append)

    assert len(snapshots) == 1
    assert [(m.role, m.text) for m in snapshots[0]] == [("user", "pregunta"), ("assistant", "respuesta")]


async def test_conversation_subscription_follows_touches(store):
    snapshots = []
    await store.subscribe_conversations(USER, snapshots.append)

    conv_id = await store.create_conversation(USER)
    await store.touch_conversation(conv_id, derive_title("¿Qué es la prescripción?"))

    assert snapshots[0] == []
    assert [c.title for c in snapshots[-1]] == ["¿Qué es la prescripción?"]


async def test_failing_subscriber_does_not_block_others(store):
    conv_id = await store.create_conversation(USER)
    received = []

    def broken(snapshot):
        raise RuntimeError("render failed")

    async def healthy(snapshot):
        received.append(snapshot)

    await store.subscribe_messages(USER, conv_id, broken)
    await store.subscribe_messages(USER, conv_id, healthy)
    await store.append_message(USER, conv_id, "user", "hola")

    assert [len(s) for s in received] == [0, 1]


class _RecordingBridge:
    def __init__(self, accept):
        self.accept = accept
        self.published = []

    async def publish(self, topics):
        self.published.append(list(topics))
        return self.accept


async def test_feed_falls_back_to_local_delivery():
    bridge = _RecordingBridge(accept=False)
    feed = ChangeFeed(bridge)
    snapshots = []

    async def loader():
        return ["estado"]

    await feed.subscribe("t", loader, snapshots.append)
    await feed.publish("t")

    assert bridge.published == [["t"]]
    assert snapshots == [["estado"], ["estado"]]


async def test_feed_leaves_delivery_to_bridge():
    bridge = _RecordingBridge(accept=True)
    feed = ChangeFeed(bridge)
    snapshots = []

    async def loader():
        return ["estado"]

    await feed.subscribe("t", loader, snapshots.append)
    await feed.publish("t")

    assert snapshots == [["estado"]]


async def test_notify_loads_each_topic_once():
    feed = ChangeFeed()
    loads = []

    async def loader():
        loads.append(1)
        return []

    await feed.subscribe("t", loader, lambda s: None)
    await feed.subscribe("t", loader, lambda s: None)
    loads.clear()

    await feed.notify("t", "t", "other")

    assert len(loads) == 1


class _GatedLoader:
    """Loader that copies the current state, then waits on the gate of its call number."""

    def __init__(self, state):
        self.state = state
        self.calls = 0
        self.gates: dict[int, asyncio.Event] = {}

    def hold(self, call_number):
        self.gates[call_number] = asyncio.Event()
        return self.gates[call_number]

    async def __call__(self):
        self.calls += 1
        snapshot = list(self.state)
        gate = self.gates.get(self.calls)
        if gate is not None:
            await gate.wait()
        return snapshot


async def test_slow_reload_never_overwrites_newer_snapshot():
    feed = ChangeFeed()
    state = ["m1"]
    loader = _GatedLoader(state)
    deliveries = []
    await feed.subscribe("t", loader, deliveries.append)

    release = loader.hold(2)
    state.append("m2")
    slow = asyncio.create_task(feed.publish("t"))
    await asyncio.sleep(0)
    state.append("m3")
    await feed.publish("t")
    release.set()
    await slow

    assert deliveries == [["m1"], ["m1", "m2", "m3"]]


async def test_initial_snapshot_loses_to_newer_notify():
    feed = ChangeFeed()
    state = ["m1"]
    loader = _GatedLoader(state)
    first_tab, second_tab = [], []
    await feed.subscribe("t", loader, first_tab.append)

    release = loader.hold(2)
    joining = asyncio.create_task(feed.subscribe("t", loader, second_tab.append))
    await asyncio.sleep(0)
    state.append("m2")
    await feed.notify("t")
    release.set()
    await joining

    assert first_tab[-1] == ["m1", "m2"]
    assert second_tab == [["m1", "m2"]]
