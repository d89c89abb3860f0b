from lexia.models.conversation import Conversation, DEFAULT_CONVERSATION_TITLE
from lexia.models.message import Message

__all__ = ["Conversation", "DEFAULT_CONVERSATION_TITLE", "Message"]
