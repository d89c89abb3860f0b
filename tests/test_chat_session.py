import httpx
import pytest

from lexia.client.context import AuthContext
from lexia.client.history import ConversationHistory
from lexia.client.relay_client import RelayCallError, RelayClient
from lexia.client.session import (
    FALLBACK_ASSISTANT_TEXT,
    GREETING_ID_PREFIX,
    LEXIA_GREETING_TEXT,
    PLACEHOLDER_ID_PREFIX,
    ChatSession,
    SessionState,
)
from lexia.main import app
from lexia.schemas.chat import ProviderKind
from lexia.services import provider_adapter
from lexia.services.change_feed import messages_topic

pytestmark = pytest.mark.anyio

QUESTION = "¿Qué es la prescripción?"
ANSWER = "La prescripción es..."


class Notifications(list):
    def __call__(self, title, description):
        self.append((title, description))


class Renders(list):
    def __call__(self, messages):
        self.append(list(messages))


async def _open(context, store, relay, **kwargs):
    session = ChatSession(context, store, relay, **kwargs)
    await session.start()
    return session


async def test_empty_conversation_shows_greeting(context, store, fake_relay_factory):
    session = await _open(context, store, fake_relay_factory())

    assert session.state == SessionState.READY
    assert len(session.messages) == 1
    greeting = session.messages[0]
    assert greeting.id == f"{GREETING_ID_PREFIX}{session.conversation_id}"
    assert greeting.role == "assistant"
    assert greeting.text == LEXIA_GREETING_TEXT
    assert greeting.ephemeral
    assert await store.list_messages("user-1", session.conversation_id) == []


async def test_start_resumes_latest_conversation(context, store, fake_relay_factory):
    await store.create_conversation("user-1")
    latest = await store.create_conversation("user-1")

    session = await _open(context, store, fake_relay_factory())

    assert session.conversation_id == latest


async def test_successful_turn_persists_question_then_answer(context, store, fake_relay_factory):
    seen_at_open = []
    relay = fake_relay_factory(["La prescripción ", "es..."])
    session = await _open(context, store, relay)
    conv_id = session.conversation_id

    async def before_open():
        seen_at_open.extend(await store.list_messages("user-1", conv_id))

    relay.before_open = before_open

    assert await session.send(QUESTION) is True

    assert [(m.role, m.text) for m in seen_at_open] == [("user", QUESTION)]
    persisted = await store.list_messages("user-1", conv_id)
    assert [(m.role, m.text) for m in persisted] == [("user", QUESTION), ("assistant", ANSWER)]
    assert [(m.role, m.text) for m in session.messages] == [("user", QUESTION), ("assistant", ANSWER)]
    assert not any(m.ephemeral for m in session.messages)
    assert (await store.get_conversation(conv_id)).title == QUESTION
    assert session.state == SessionState.READY
    assert relay.calls[0]["provider"] == ProviderKind.GEMINI
    assert relay.calls[0]["api_key"] == "gemini-test-key"
    assert relay.calls[0]["history"] == []


async def test_placeholder_grows_with_each_fragment(context, store, fake_relay_factory):
    renders = Renders()
    session = await _open(context, store, fake_relay_factory(["A", "B", "C"]), on_change=renders)

    await session.send("Letras")

    placeholder_texts = [
        m.text for view in renders for m in view if m.id.startswith(PLACEHOLDER_ID_PREFIX)
    ]
    assert placeholder_texts == ["", "A", "AB", "ABC"]
    for view in renders:
        has_placeholder = any(m.id.startswith(PLACEHOLDER_ID_PREFIX) for m in view)
        has_saved_answer = any(not m.ephemeral and m.role == "assistant" for m in view)
        assert not (has_placeholder and has_saved_answer)
        assert sum(m.id.startswith(PLACEHOLDER_ID_PREFIX) for m in view) <= 1


async def test_rejected_key_writes_fallback_and_recovers(context, store, fake_relay_factory):
    notifications = Notifications()
    relay = fake_relay_factory(error=RelayCallError(401, "Clave API de Gemini inválida o sin permisos."))
    session = await _open(context, store, relay, notifier=notifications)

    await session.send(QUESTION)

    persisted = await store.list_messages("user-1", session.conversation_id)
    assert [(m.role, m.text) for m in persisted] == [("user", QUESTION), ("assistant", FALLBACK_ASSISTANT_TEXT)]
    assert len(notifications) == 1
    title, description = notifications[0]
    assert title == "Error de IA"
    assert "Clave API de Gemini inválida" in description
    assert session.state == SessionState.READY
    assert session.input_enabled


async def test_in_band_stream_error_writes_fallback(context, store, fake_relay_factory):
    notifications = Notifications()
    relay = fake_relay_factory(
        ["La prescripción ", "\nSTREAM_ERROR: Error procesando la respuesta del modelo. Detalles: reset"]
    )
    session = await _open(context, store, relay, notifier=notifications)

    await session.send(QUESTION)

    persisted = await store.list_messages("user-1", session.conversation_id)
    assert [m.text for m in persisted] == [QUESTION, FALLBACK_ASSISTANT_TEXT]
    assert len(notifications) == 1
    assert not any(m.ephemeral for m in session.messages)


async def test_empty_answer_is_not_persisted(context, store, fake_relay_factory):
    session = await _open(context, store, fake_relay_factory([]))

    await session.send(QUESTION)

    persisted = await store.list_messages("user-1", session.conversation_id)
    assert [m.role for m in persisted] == ["user"]
    assert session.state == SessionState.READY


async def test_second_turn_sends_prior_turns(context, store, fake_relay_factory):
    relay = fake_relay_factory([ANSWER])
    session = await _open(context, store, relay)

    await session.send(QUESTION)
    await session.send("¿Y la caducidad?")

    history = relay.calls[1]["history"]
    assert [(t.role, t.text) for t in history] == [("user", QUESTION), ("assistant", ANSWER)]
    assert (await store.get_conversation(session.conversation_id)).title == QUESTION


@pytest.mark.parametrize("text", ["", "   "])
async def test_blank_input_is_ignored(context, store, fake_relay_factory, text):
    relay = fake_relay_factory([ANSWER])
    session = await _open(context, store, relay)

    assert await session.send(text) is False
    assert relay.calls == []


async def test_missing_credential_is_ignored(store, fake_relay_factory):
    context = AuthContext(provider=ProviderKind.CHATGPT)
    context.sign_in("user-1")
    relay = fake_relay_factory([ANSWER])
    session = await _open(context, store, relay)

    assert session.input_enabled is False
    assert await session.send(QUESTION) is False
    assert await store.list_messages("user-1", session.conversation_id) == []


async def test_send_while_turn_in_flight_is_ignored(context, store, fake_relay_factory):
    relay = fake_relay_factory([ANSWER])
    session = await _open(context, store, relay)
    nested = []

    async def before_open():
        nested.append(await session.send("otra pregunta"))

    relay.before_open = before_open

    await session.send(QUESTION)

    assert nested == [False]
    assert len(relay.calls) == 1


async def test_second_tab_sees_the_turn(context, store, fake_relay_factory):
    tab_a = await _open(context, store, fake_relay_factory([ANSWER]))
    tab_b = ChatSession(context, store, fake_relay_factory())
    await tab_b.start(tab_a.conversation_id)

    await tab_a.send(QUESTION)

    assert [(m.role, m.text) for m in tab_b.messages] == [("user", QUESTION), ("assistant", ANSWER)]


async def test_sign_out_closes_the_session(context, store, fake_relay_factory):
    session = await _open(context, store, fake_relay_factory())
    conv_id = session.conversation_id

    context.sign_out()

    assert session.state == SessionState.IDLE
    assert session.conversation_id is None
    assert session.messages == []
    assert await session.send(QUESTION) is False
    assert await store.list_messages("user-1", conv_id) == []


async def test_new_conversation_switches_subscription(context, store, fake_relay_factory):
    session = await _open(context, store, fake_relay_factory([ANSWER]))
    first = session.conversation_id
    await session.send(QUESTION)

    second = await session.new_conversation()

    assert second != first
    assert session.conversation_id == second
    assert [m.text for m in session.messages] == [LEXIA_GREETING_TEXT]
    await store.append_message("user-1", first, "user", "en la otra")
    assert [m.text for m in session.messages] == [LEXIA_GREETING_TEXT]


async def test_history_follows_new_titles(context, store, fake_relay_factory):
    history = ConversationHistory(store)
    await history.start("user-1")
    session = await _open(context, store, fake_relay_factory([ANSWER]))

    await session.send(QUESTION)

    assert [c.title for c in history.conversations] == [QUESTION]
    history.close()
    assert history.conversations == []


async def test_turn_through_the_real_relay(context, store, monkeypatch):
    def answer(request):
        assert request.question == QUESTION
        yield "La prescripción "
        yield "es..."

    monkeypatch.setitem(provider_adapter._STRATEGIES, ProviderKind.GEMINI, answer)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://relay.test") as http_client:
        relay = RelayClient("http://relay.test", http_client=http_client)
        session = await _open(context, store, relay)

        await session.send(QUESTION)

    persisted = await store.list_messages("user-1", session.conversation_id)
    assert [(m.role, m.text) for m in persisted] == [("user", QUESTION), ("assistant", ANSWER)]


async def test_start_reports_a_store_that_cannot_create(context, store, fake_relay_factory, monkeypatch):
    notifications = Notifications()

    async def store_down(user_id):
        raise RuntimeError("store down")

    monkeypatch.setattr(store, "create_conversation", store_down)
    session = ChatSession(context, store, fake_relay_factory(), notifier=notifications)

    await session.start()

    assert notifications == [("Error", "No se pudo crear la nueva consulta.")]
    assert session.state == SessionState.IDLE
    assert session.conversation_id is None
    assert await session.send(QUESTION) is False

    monkeypatch.undo()
    await session.start()
    assert session.state == SessionState.READY


async def test_answer_quoting_the_error_word_is_kept(context, store, fake_relay_factory):
    notifications = Notifications()
    answer = ["El registro muestra ", "STREAM_ERROR: timeout", "\nen la línea 3."]
    session = await _open(context, store, fake_relay_factory(answer), notifier=notifications)

    await session.send("¿Qué significa este log?")

    persisted = await store.list_messages("user-1", session.conversation_id)
    assert persisted[-1].role == "assistant"
    assert persisted[-1].text == "".join(answer)
    assert notifications == []


async def test_split_error_marker_is_never_rendered(context, store, fake_relay_factory):
    renders = Renders()
    notifications = Notifications()
    relay = fake_relay_factory(
        ["Hola", "\nSTREAM_", "ERROR: Error procesando la respuesta del modelo. Detalles: reset"]
    )
    session = await _open(context, store, relay, notifier=notifications, on_change=renders)

    await session.send(QUESTION)

    placeholder_texts = [
        m.text for view in renders for m in view if m.id.startswith(PLACEHOLDER_ID_PREFIX)
    ]
    assert placeholder_texts == ["", "Hola"]
    assert len(notifications) == 1
    assert "Detalles: reset" in notifications[0][1]
    persisted = await store.list_messages("user-1", session.conversation_id)
    assert persisted[-1].text == FALLBACK_ASSISTANT_TEXT


async def test_dispose_detaches_from_store_and_auth(context, store, fake_relay_factory):
    session = await _open(context, store, fake_relay_factory())
    conv_id = session.conversation_id
    topic = messages_topic("user-1", conv_id)
    assert store.feed.subscriber_count(topic) == 1

    session.dispose()

    assert store.feed.subscriber_count(topic) == 0
    assert session.state == SessionState.IDLE
    assert session.messages == []
    context.sign_out()
    context.sign_in("user-2")
    assert session.conversation_id is None
    assert session.messages == []
