"""Live conversation list for the history sidebar (last updated first)."""
import logging
from collections.abc import Callable
from typing import Any

from lexia.schemas.chat import ConversationRecord
from lexia.services.conversation_store import ConversationStore

logger = logging.getLogger(__name__)


class ConversationHistory:
    def __init__(
        self,
        store: ConversationStore,
        on_change: Callable[[list[ConversationRecord]], Any] | None = None,
    ):
        self._store = store
        self._on_change = on_change
        self.conversations: list[ConversationRecord] = []
        self.loading = False
        self._unsubscribe: Callable[[], None] | None = None

    async def start(self, user_id: str) -> None:
        self.close()
        self.loading = True
        try:
            self._unsubscribe = await self._store.subscribe_conversations(user_id, self._on_snapshot)
        except Exception as e:
            logger.warning("Could not load conversation history: %s", e)
        finally:
            self.loading = False

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.conversations = []

    def _on_snapshot(self, snapshot: list[ConversationRecord]) -> None:
        self.conversations = list(snapshot)
        self.loading = False
        if self._on_change is not None:
            self._on_change(self.conversations)
