"""
Conversation + Message persistence. DB as source of truth.
All operations are sync (run_in_executor from the async store client).
Messages are insert-only; conversations only ever get metadata updates.
Ownership: reads are scoped by user_id as well as conversation id.
"""
from datetime import datetime, timedelta

from sqlalchemy import desc, func
from sqlalchemy.orm import Session

from lexia.models.conversation import Conversation, DEFAULT_CONVERSATION_TITLE
from lexia.models.message import Message


def create_conversation(db: Session, user_id: str) -> Conversation:
    """New conversation with the provisional title."""
    now = datetime.utcnow()
    conv = Conversation(
        user_id=user_id,
        title=DEFAULT_CONVERSATION_TITLE,
        created_at=now,
        last_updated_at=now,
    )
    db.add(conv)
    db.commit()
    db.refresh(conv)
    return conv


def get_conversation(db: Session, conversation_id: str) -> Conversation | None:
    return db.get(Conversation, conversation_id)


def get_conversation_for_user(db: Session, user_id: str, conversation_id: str) -> Conversation | None:
    return (
        db.query(Conversation)
        .filter(Conversation.id == conversation_id, Conversation.user_id == user_id)
        .first()
    )


def get_latest_conversation(db: Session, user_id: str) -> Conversation | None:
    """Most recently updated conversation of the user, used to pick the active one."""
    return (
        db.query(Conversation)
        .filter(Conversation.user_id == user_id)
        .order_by(desc(Conversation.last_updated_at))
        .first()
    )


def list_conversations(db: Session, user_id: str) -> list[Conversation]:
    """All conversations of the user, last updated first."""
    return (
        db.query(Conversation)
        .filter(Conversation.user_id == user_id)
        .order_by(desc(Conversation.last_updated_at), desc(Conversation.created_at))
        .all()
    )


def _next_timestamp(db: Session, conversation_id: str) -> datetime:
    """Server timestamp that is strictly after every message already in the conversation."""
    now = datetime.utcnow()
    last = (
        db.query(func.max(Message.timestamp))
        .filter(Message.conversation_id == conversation_id)
        .scalar()
    )
    if last is not None and last >= now:
        return last + timedelta(microseconds=1)
    return now


def save_message(
    db: Session,
    user_id: str,
    conversation_id: str,
    role: str,
    text: str,
) -> Message:
    """
    Insert one message. Never updates an existing message row.
    Bumping the conversation counter first takes its row write lock, so concurrent
    writers to one conversation read the last timestamp and insert one at a time.
    """
    db.query(Conversation).filter(Conversation.id == conversation_id).update(
        {Conversation.message_count: Conversation.message_count + 1}, synchronize_session=False
    )
    seq = db.query(Conversation.message_count).filter(Conversation.id == conversation_id).scalar()
    msg = Message(
        user_id=user_id,
        conversation_id=conversation_id,
        role=role,
        text=text,
        timestamp=_next_timestamp(db, conversation_id),
        seq=seq,
    )
    db.add(msg)
    db.commit()
    db.refresh(msg)
    return msg


def list_messages(db: Session, user_id: str, conversation_id: str) -> list[Message]:
    """Messages of one conversation owned by user_id, ordered by timestamp asc."""
    return (
        db.query(Message)
        .filter(Message.user_id == user_id, Message.conversation_id == conversation_id)
        .order_by(Message.timestamp, Message.seq)
        .all()
    )


def touch_conversation(db: Session, conversation_id: str, title: str | None = None) -> Conversation | None:
    """
    Advance last_updated_at (never backwards). If title is given it is applied only
    while the conversation still has the provisional title, so it is set exactly once.
    """
    if title:
        db.query(Conversation).filter(
            Conversation.id == conversation_id,
            Conversation.title == DEFAULT_CONVERSATION_TITLE,
        ).update({Conversation.title: title}, synchronize_session=False)
    conv = db.get(Conversation, conversation_id)
    if conv is None:
        db.rollback()
        return None
    now = datetime.utcnow()
    if conv.last_updated_at is None or now > conv.last_updated_at:
        conv.last_updated_at = now
    db.commit()
    db.refresh(conv)
    return conv


class ChatRepository:
    """Thin wrapper for dependency injection; delegates to module functions."""

    @staticmethod
    def create_conversation(db: Session, user_id: str) -> Conversation:
        return create_conversation(db, user_id)

    @staticmethod
    def get_conversation(db: Session, conversation_id: str) -> Conversation | None:
        return get_conversation(db, conversation_id)

    @staticmethod
    def get_conversation_for_user(db: Session, user_id: str, conversation_id: str) -> Conversation | None:
        return get_conversation_for_user(db, user_id, conversation_id)

    @staticmethod
    def get_latest_conversation(db: Session, user_id: str) -> Conversation | None:
        return get_latest_conversation(db, user_id)

    @staticmethod
    def list_conversations(db: Session, user_id: str) -> list[Conversation]:
        return list_conversations(db, user_id)

    @staticmethod
    def save_message(db: Session, user_id: str, conversation_id: str, role: str, text: str) -> Message:
        return save_message(db, user_id, conversation_id, role, text)

    @staticmethod
    def list_messages(db: Session, user_id: str, conversation_id: str) -> list[Message]:
        return list_messages(db, user_id, conversation_id)

    @staticmethod
    def touch_conversation(db: Session, conversation_id: str, title: str | None = None) -> Conversation | None:
        return touch_conversation(db, conversation_id, title)
