"""
Chat controller for one signed-in user (one per browser tab / client session).

Per turn: persist the user message, touch the conversation, open the relay,
render the answer into a local placeholder as fragments arrive, then swap the
placeholder for exactly one persisted assistant message. Failures end with a
notification plus a fixed fallback message; the session always returns to READY.

The persisted message list only ever comes from the store subscription and is
replaced wholesale on every delivery.
"""
import enum
import logging
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from lexia.client.context import AuthContext
from lexia.client.relay_client import RelayCallError, RelayClient
from lexia.errors import STREAM_ERROR_MARKER, STREAM_ERROR_PREFIX, LexiaError, UpstreamStreamFailure
from lexia.schemas.chat import MessageRecord, Turn
from lexia.services.conversation_store import ConversationStore, derive_title

logger = logging.getLogger(__name__)

LEXIA_GREETING_TEXT = (
    "¡Hola! Soy LexIA, tu asistente jurídico especializado en Derecho español y europeo. "
    "¿En qué puedo ayudarte hoy?"
)
FALLBACK_ASSISTANT_TEXT = "Lo siento, no pude procesar tu solicitud en este momento."
GREETING_ID_PREFIX = "greeting-"
PLACEHOLDER_ID_PREFIX = "temp_"

Notifier = Callable[[str, str], Any]
RenderListener = Callable[[list["ChatMessage"]], Any]


class SessionState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_INITIAL_LOAD = "awaiting_initial_load"
    READY = "ready"
    SENDING = "sending"
    STREAMING = "streaming"
    ERROR = "error"


class ChatMessage(BaseModel):
    """One rendered message. Ephemeral ones (greeting, placeholder) are never stored."""

    id: str
    conversation_id: str
    user_id: str
    role: str
    text: str
    timestamp: datetime
    ephemeral: bool = False

    @classmethod
    def from_record(cls, record: MessageRecord) -> "ChatMessage":
        return cls(
            id=record.id,
            conversation_id=record.conversation_id,
            user_id=record.user_id,
            role=record.role,
            text=record.text,
            timestamp=record.timestamp,
        )


def log_notifier(title: str, description: str) -> None:
    logger.warning("%s: %s", title, description)


def _describe(exc: Exception) -> str:
    base = "No se pudo obtener respuesta del asistente."
    detail = getattr(exc, "message", None) if isinstance(exc, (RelayCallError, LexiaError)) else str(exc)
    return f"{base} ({detail})" if detail else base


def _without_partial_marker(answer: str) -> str:
    """Hold back a tail that could still grow into the in-band error prefix."""
    for size in range(min(len(answer), len(STREAM_ERROR_PREFIX) - 1), 0, -1):
        if STREAM_ERROR_PREFIX.startswith(answer[-size:]):
            return answer[:-size]
    return answer


class ChatSession:
    def __init__(
        self,
        context: AuthContext,
        store: ConversationStore,
        relay_client: RelayClient,
        notifier: Notifier | None = None,
        on_change: RenderListener | None = None,
    ):
        self._context = context
        self._store = store
        self._relay = relay_client
        self._notifier = notifier or log_notifier
        self._on_change = on_change
        self.state = SessionState.IDLE
        self.conversation_id: str | None = None
        self._user_id: str | None = None
        self._persisted: list[MessageRecord] = []
        self._loaded = False
        self._placeholder: ChatMessage | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._unsubscribe_auth = context.on_auth_state_changed(self._on_auth_state_changed)

    # ---- View ----

    @property
    def messages(self) -> list[ChatMessage]:
        """What the UI shows: persisted messages, greeting when empty, plus the live placeholder."""
        if self.conversation_id is None or self._user_id is None:
            return []
        view = [ChatMessage.from_record(r) for r in self._persisted]
        if not view and self._loaded and self._placeholder is None:
            view.append(
                ChatMessage(
                    id=f"{GREETING_ID_PREFIX}{self.conversation_id}",
                    conversation_id=self.conversation_id,
                    user_id=self._user_id,
                    role="assistant",
                    text=LEXIA_GREETING_TEXT,
                    timestamp=datetime.utcnow(),
                    ephemeral=True,
                )
            )
        if self._placeholder is not None:
            view.append(self._placeholder)
        return view

    @property
    def input_enabled(self) -> bool:
        snapshot = self._context.snapshot()
        return self.state == SessionState.READY and bool(snapshot.user_id and snapshot.credential)

    def _emit(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self.messages)
        except Exception as e:
            logger.warning("Render listener failed: %s", e, exc_info=True)

    def _notify(self, title: str, description: str) -> None:
        try:
            self._notifier(title, description)
        except Exception as e:
            logger.warning("Notifier failed: %s", e, exc_info=True)

    # ---- Conversation lifecycle ----

    async def start(self, conversation_id: str | None = None) -> None:
        """Open the given conversation, else the most recently updated one, else a new one."""
        user_id = self._context.user_id
        if not user_id:
            return
        self.state = SessionState.AWAITING_INITIAL_LOAD
        if conversation_id is None:
            try:
                latest = await self._store.latest_conversation(user_id)
            except Exception as e:
                logger.warning("Could not load latest conversation, starting a new one: %s", e)
                latest = None
            if latest is not None:
                conversation_id = latest.id
            else:
                try:
                    conversation_id = await self._store.create_conversation(user_id)
                except Exception as e:
                    logger.warning("Could not create conversation: %s", e)
                    self._notify("Error", "No se pudo crear la nueva consulta.")
                    # No conversation to show; start() may be called again
                    self.state = SessionState.IDLE
                    self._emit()
                    return
        await self._activate(user_id, conversation_id)

    async def new_conversation(self) -> str | None:
        user_id = self._context.user_id
        if not user_id:
            return None
        try:
            conversation_id = await self._store.create_conversation(user_id)
        except Exception as e:
            logger.warning("Could not create conversation: %s", e)
            self._notify("Error", "No se pudo crear la nueva consulta.")
            return None
        await self._activate(user_id, conversation_id)
        return conversation_id

    async def select_conversation(self, conversation_id: str) -> None:
        user_id = self._context.user_id
        if user_id and conversation_id != self.conversation_id:
            await self._activate(user_id, conversation_id)

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.conversation_id = None
        self._persisted = []
        self._loaded = False
        self._placeholder = None
        self.state = SessionState.IDLE

    def dispose(self) -> None:
        self.close()
        self._unsubscribe_auth()

    async def _activate(self, user_id: str, conversation_id: str) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._user_id = user_id
        self.conversation_id = conversation_id
        self._persisted = []
        self._loaded = False
        self._placeholder = None
        self.state = SessionState.AWAITING_INITIAL_LOAD
        self._emit()
        try:
            self._unsubscribe = await self._store.subscribe_messages(
                user_id,
                conversation_id,
                lambda snapshot: self._on_messages(conversation_id, snapshot),
            )
        except Exception as e:
            logger.warning("Could not subscribe to conversation %s: %s", conversation_id, e)
            self._notify("Error", "No se pudieron cargar los mensajes.")
            self.state = SessionState.READY
            self._emit()

    def _on_messages(self, conversation_id: str, snapshot: list[MessageRecord]) -> None:
        # Deliveries for a conversation we already left are ignored
        if conversation_id != self.conversation_id:
            return
        self._persisted = list(snapshot)
        self._loaded = True
        if self.state == SessionState.AWAITING_INITIAL_LOAD:
            self.state = SessionState.READY
        self._emit()

    def _on_auth_state_changed(self, user_id: str | None) -> None:
        if user_id is None or (self._user_id is not None and user_id != self._user_id):
            self.close()
            self._user_id = user_id

    # ---- Turn ----

    async def send(self, text: str) -> bool:
        """
        Run one turn. Returns False without doing anything when there is no text,
        no credential, no active conversation, or a turn is already in flight.
        """
        snapshot = self._context.snapshot()
        conversation_id = self.conversation_id
        if (
            not text
            or not text.strip()
            or not snapshot.user_id
            or not snapshot.credential
            or not conversation_id
            or self.state != SessionState.READY
        ):
            return False

        user_id = snapshot.user_id
        history = [Turn(role=r.role, text=r.text) for r in self._persisted]
        self.state = SessionState.SENDING
        self._emit()
        try:
            await self._store.append_message(user_id, conversation_id, "user", text)
            await self._touch(conversation_id, derive_title(text))

            async with self._relay.open_turn(snapshot.provider, text, snapshot.credential, history) as stream:
                answer = await self._stream_into_placeholder(stream, user_id, conversation_id)

            self._drop_placeholder()
            if answer.strip():
                await self._store.append_message(user_id, conversation_id, "assistant", answer)
                await self._touch(conversation_id)
        except Exception as e:
            logger.warning("Chat turn failed in %s: %s", conversation_id, e)
            self.state = SessionState.ERROR
            self._drop_placeholder()
            self._notify("Error de IA", _describe(e))
            try:
                await self._store.append_message(user_id, conversation_id, "assistant", FALLBACK_ASSISTANT_TEXT)
            except Exception as store_error:
                logger.warning("Fallback message could not be saved: %s", store_error)
                self._notify("Error", "No se pudo guardar la respuesta de error.")
        finally:
            self._placeholder = None
            self.state = SessionState.READY
            self._emit()
        return True

    async def _stream_into_placeholder(self, stream, user_id: str, conversation_id: str) -> str:
        self.state = SessionState.STREAMING
        self._placeholder = ChatMessage(
            id=f"{PLACEHOLDER_ID_PREFIX}{int(time.time() * 1000)}",
            conversation_id=conversation_id,
            user_id=user_id,
            role="assistant",
            text="",
            timestamp=datetime.utcnow(),
            ephemeral=True,
        )
        self._emit()

        answer = ""
        async for fragment in stream:
            answer += fragment
            cut = answer.find(STREAM_ERROR_PREFIX)
            if cut != -1:
                raise UpstreamStreamFailure(answer[cut + len(STREAM_ERROR_MARKER):].strip())
            visible = _without_partial_marker(answer)
            if visible != self._placeholder.text:
                self._placeholder = self._placeholder.model_copy(update={"text": visible})
                self._emit()
        return answer

    def _drop_placeholder(self) -> None:
        if self._placeholder is not None:
            self._placeholder = None
            self._emit()

    async def _touch(self, conversation_id: str, title: str | None = None) -> None:
        # Metadata only: a failed touch is reported but never aborts the turn
        try:
            await self._store.touch_conversation(conversation_id, title)
        except Exception as e:
            logger.warning("touch_conversation failed for %s: %s", conversation_id, e)
            self._notify("Error", "No se pudo actualizar la consulta.")
