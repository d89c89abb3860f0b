import enum
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class ProviderKind(str, enum.Enum):
    GEMINI = "gemini"
    CHATGPT = "chatgpt"


# ---- Relay ----

class Turn(BaseModel):
    role: Literal["user", "assistant"]
    text: str


class RelayRequest(BaseModel):
    question: str = Field(..., min_length=1)
    api_key: str = Field(..., min_length=1, alias="apiKey")
    history: list[Turn] = Field(default_factory=list)


class SummaryRequest(BaseModel):
    document_text: str = Field(..., min_length=1, alias="documentText")
    api_key: str = Field(..., min_length=1, alias="apiKey")


class SummaryResponse(BaseModel):
    summary: str


class ErrorResponse(BaseModel):
    message: str


# ---- Store records (detached snapshots handed to subscribers) ----

class MessageRecord(BaseModel):
    id: str
    user_id: str
    conversation_id: str
    role: str  # "user" | "assistant"
    text: str
    timestamp: datetime

    class Config:
        from_attributes = True


class ConversationRecord(BaseModel):
    id: str
    user_id: str
    title: str
    created_at: datetime
    last_updated_at: datetime

    class Config:
        from_attributes = True


# ---- Store HTTP surface ----

class ConversationCreateResponse(BaseModel):
    id: str


class MessageCreate(BaseModel):
    role: Literal["user", "assistant"]
    text: str = Field(..., min_length=1)


class TouchRequest(BaseModel):
    question: str | None = Field(None, description="First user question; the title is derived from it once")


class ConversationListResponse(BaseModel):
    conversations: list[ConversationRecord]


class MessageListResponse(BaseModel):
    messages: list[MessageRecord]
