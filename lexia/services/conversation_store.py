"""
Conversation store client: conversations + messages with live subscriptions.
- Messages are append-only; conversations get metadata touches only.
- Title is set once, from the first user turn, while still provisional.
- Subscribers receive full ascending snapshots on subscribe and after every change.
Blocking SQLAlchemy work runs in the default executor with a session per call.
"""
import asyncio
import logging
from collections.abc import Callable
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from lexia.database import SessionLocal
from lexia.repositories.chat_repository import ChatRepository
from lexia.schemas.chat import ConversationRecord, MessageRecord
from lexia.services.change_feed import (
    ChangeFeed,
    SnapshotCallback,
    Unsubscribe,
    conversations_topic,
    messages_topic,
)

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 40
MESSAGE_ROLES = ("user", "assistant")


class ConversationNotFound(LookupError):
    pass


def derive_title(question: str) -> str:
    """First 40 characters of the question as typed, with an ellipsis when it was longer."""
    return question[:TITLE_MAX_CHARS] + ("..." if len(question) > TITLE_MAX_CHARS else "")


class ConversationStore:
    """Async facade over the chat repository plus the change feed."""

    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        feed: ChangeFeed | None = None,
        repository: ChatRepository | None = None,
    ):
        self._session_factory = session_factory or SessionLocal
        self._feed = feed or ChangeFeed()
        self._repo = repository or ChatRepository()

    @property
    def feed(self) -> ChangeFeed:
        return self._feed

    async def _run(self, fn: Callable[[Session], Any]) -> Any:
        loop = asyncio.get_running_loop()

        def _do():
            db = self._session_factory()
            try:
                return fn(db)
            finally:
                db.close()

        return await loop.run_in_executor(None, _do)

    # ---- Conversations ----

    async def create_conversation(self, user_id: str) -> str:
        conv_id = await self._run(lambda db: self._repo.create_conversation(db, user_id).id)
        await self._feed.publish(conversations_topic(user_id))
        return conv_id

    async def get_conversation(self, conversation_id: str, user_id: str | None = None) -> ConversationRecord | None:
        def _do(db: Session):
            if user_id is None:
                conv = self._repo.get_conversation(db, conversation_id)
            else:
                conv = self._repo.get_conversation_for_user(db, user_id, conversation_id)
            return ConversationRecord.model_validate(conv) if conv else None

        return await self._run(_do)

    async def latest_conversation(self, user_id: str) -> ConversationRecord | None:
        def _do(db: Session):
            conv = self._repo.get_latest_conversation(db, user_id)
            return ConversationRecord.model_validate(conv) if conv else None

        return await self._run(_do)

    async def list_conversations(self, user_id: str) -> list[ConversationRecord]:
        return await self._run(
            lambda db: [ConversationRecord.model_validate(c) for c in self._repo.list_conversations(db, user_id)]
        )

    async def touch_conversation(
        self, conversation_id: str, title_if_first_turn: str | None = None
    ) -> ConversationRecord:
        """Advance last_updated_at; apply the title only if the conversation still has the provisional one."""

        def _do(db: Session):
            conv = self._repo.touch_conversation(db, conversation_id, title_if_first_turn)
            return ConversationRecord.model_validate(conv) if conv else None

        record = await self._run(_do)
        if record is None:
            raise ConversationNotFound(conversation_id)
        await self._feed.publish(conversations_topic(record.user_id))
        return record

    # ---- Messages ----

    async def append_message(self, user_id: str, conversation_id: str, role: str, text: str) -> MessageRecord:
        """Insert-only write. The store assigns id and timestamp."""
        if role not in MESSAGE_ROLES:
            raise ValueError(f"Unsupported message role: {role!r}")

        def _do(db: Session):
            if self._repo.get_conversation_for_user(db, user_id, conversation_id) is None:
                return None
            return MessageRecord.model_validate(
                self._repo.save_message(db, user_id, conversation_id, role, text)
            )

        record = await self._run(_do)
        if record is None:
            raise ConversationNotFound(conversation_id)
        await self._feed.publish(messages_topic(user_id, conversation_id))
        return record

    async def list_messages(self, user_id: str, conversation_id: str) -> list[MessageRecord]:
        return await self._run(
            lambda db: [
                MessageRecord.model_validate(m) for m in self._repo.list_messages(db, user_id, conversation_id)
            ]
        )

    # ---- Live subscriptions ----

    async def subscribe_messages(
        self, user_id: str, conversation_id: str, callback: SnapshotCallback
    ) -> Unsubscribe:
        """Ascending-by-timestamp snapshot now and after every change to the conversation's messages."""
        return await self._feed.subscribe(
            messages_topic(user_id, conversation_id),
            lambda: self.list_messages(user_id, conversation_id),
            callback,
        )

    async def subscribe_conversations(self, user_id: str, callback: SnapshotCallback) -> Unsubscribe:
        """Conversations of the user, last updated first, now and after every change."""
        return await self._feed.subscribe(
            conversations_topic(user_id),
            lambda: self.list_conversations(user_id),
            callback,
        )
