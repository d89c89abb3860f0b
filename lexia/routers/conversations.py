"""
Conversation store endpoints for the current user (bearer JWT):
- GET  /api/conversations: conversations, last updated first
- POST /api/conversations: new conversation with provisional title
- GET  /api/conversations/{id}/messages: messages ordered by timestamp asc
- POST /api/conversations/{id}/messages: append one message (insert-only)
- POST /api/conversations/{id}/touch: bump last update; title on first turn
- WS   /api/conversations/ws?token=JWT: live conversation list
- WS   /api/conversations/{id}/messages/ws?token=JWT: live message snapshots
Ownership: another user's conversation answers 404.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status, WebSocket, WebSocketDisconnect

from lexia.auth import get_current_user_id, get_user_id_from_token
from lexia.schemas.chat import (
    ConversationCreateResponse,
    ConversationListResponse,
    ConversationRecord,
    MessageCreate,
    MessageListResponse,
    MessageRecord,
    TouchRequest,
)
from lexia.services.conversation_store import ConversationStore, derive_title

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/conversations", tags=["conversations"])


def get_store(request: Request) -> ConversationStore:
    return request.app.state.store


async def _owned_conversation(store: ConversationStore, user_id: str, conversation_id: str) -> ConversationRecord:
    conv = await store.get_conversation(conversation_id, user_id)
    if conv is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return conv


@router.get("", response_model=ConversationListResponse)
async def list_conversations(
    user_id: str = Depends(get_current_user_id),
    store: ConversationStore = Depends(get_store),
):
    return ConversationListResponse(conversations=await store.list_conversations(user_id))


@router.post("", response_model=ConversationCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_conversation(
    user_id: str = Depends(get_current_user_id),
    store: ConversationStore = Depends(get_store),
):
    return ConversationCreateResponse(id=await store.create_conversation(user_id))


@router.get("/{conversation_id}/messages", response_model=MessageListResponse)
async def list_messages(
    conversation_id: str,
    user_id: str = Depends(get_current_user_id),
    store: ConversationStore = Depends(get_store),
):
    await _owned_conversation(store, user_id, conversation_id)
    return MessageListResponse(messages=await store.list_messages(user_id, conversation_id))


@router.post("/{conversation_id}/messages", response_model=MessageRecord, status_code=status.HTTP_201_CREATED)
async def append_message(
    conversation_id: str,
    body: MessageCreate,
    user_id: str = Depends(get_current_user_id),
    store: ConversationStore = Depends(get_store),
):
    await _owned_conversation(store, user_id, conversation_id)
    return await store.append_message(user_id, conversation_id, body.role, body.text)


@router.post("/{conversation_id}/touch", response_model=ConversationRecord)
async def touch_conversation(
    conversation_id: str,
    body: TouchRequest,
    user_id: str = Depends(get_current_user_id),
    store: ConversationStore = Depends(get_store),
):
    await _owned_conversation(store, user_id, conversation_id)
    title = derive_title(body.question) if body.question and body.question.strip() else None
    return await store.touch_conversation(conversation_id, title)


async def _authenticate_websocket(websocket: WebSocket) -> str | None:
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4001)
        return None
    user_id = get_user_id_from_token(token)
    if not user_id:
        await websocket.close(code=4003)
        return None
    return user_id


async def _hold_open(websocket: WebSocket, unsubscribe) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        unsubscribe()


@router.websocket("/ws")
async def conversations_websocket(websocket: WebSocket):
    """Push the full conversation list on connect and after every change."""
    await websocket.accept()
    user_id = await _authenticate_websocket(websocket)
    if user_id is None:
        return
    store: ConversationStore = websocket.app.state.store

    async def push(snapshot: list[ConversationRecord]) -> None:
        await websocket.send_json({"conversations": [c.model_dump(mode="json") for c in snapshot]})

    unsubscribe = await store.subscribe_conversations(user_id, push)
    await _hold_open(websocket, unsubscribe)


@router.websocket("/{conversation_id}/messages/ws")
async def messages_websocket(websocket: WebSocket, conversation_id: str):
    """Push the full ordered message list on connect and after every change."""
    await websocket.accept()
    user_id = await _authenticate_websocket(websocket)
    if user_id is None:
        return
    store: ConversationStore = websocket.app.state.store
    if await store.get_conversation(conversation_id, user_id) is None:
        await websocket.close(code=4004)
        return

    async def push(snapshot: list[MessageRecord]) -> None:
        await websocket.send_json({"messages": [m.model_dump(mode="json") for m in snapshot]})

    unsubscribe = await store.subscribe_messages(user_id, conversation_id, push)
    await _hold_open(websocket, unsubscribe)
