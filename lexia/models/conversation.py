"""A chat thread owned by one user. Title is derived once from the first user turn."""
import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.orm import relationship

from lexia.database import Base

DEFAULT_CONVERSATION_TITLE = "Nueva Consulta"


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(128), nullable=False, index=True)
    title = Column(String(255), nullable=False, default=DEFAULT_CONVERSATION_TITLE)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    # Last message sequence number handed out; bumped under the row lock on every insert
    message_count = Column(Integer, nullable=False, default=0, server_default="0")

    # Insertion order: timestamp, then per-conversation sequence number
    messages = relationship(
        "Message",
        back_populates="conversation",
        order_by="[Message.timestamp, Message.seq]",
        lazy="select",
    )
