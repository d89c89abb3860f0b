"""
Streaming relay endpoints (one per provider, same body shape):
- POST /api/lexia-chat: Gemini
- POST /api/lexia-chat-openai: ChatGPT
- POST /api/chat/{provider}: either, by provider kind
Body: {"question": str, "apiKey": str, "history"?: [{"role", "text"}]}.
200 text/plain stream on success; {"message": str} with 4xx/5xx otherwise.

Document summary (whole answer, not streamed):
- POST /api/summarize: Gemini
- POST /api/summarize/{provider}
Body: {"documentText": str, "apiKey": str}; 200 {"summary": str}.
"""
from fastapi import APIRouter, Request

from lexia.errors import InvalidInput
from lexia.schemas.chat import ErrorResponse, ProviderKind, SummaryResponse
from lexia.services.relay_service import (
    open_relay,
    parse_relay_request,
    parse_summary_request,
    run_summary,
)

router = APIRouter(prefix="/api", tags=["relay"])

_ERROR_RESPONSES = {code: {"model": ErrorResponse} for code in (400, 401, 403, 404, 429, 500)}


async def _relay(request: Request, provider: ProviderKind):
    try:
        payload = await request.json()
    except ValueError as e:
        raise InvalidInput("El cuerpo de la solicitud debe ser JSON válido.") from e
    body = parse_relay_request(payload, provider)
    return await open_relay(body, provider)


@router.post("/lexia-chat", responses=_ERROR_RESPONSES)
async def lexia_chat(request: Request):
    """Relay a turn to Gemini. Only the current question is forwarded."""
    return await _relay(request, ProviderKind.GEMINI)


@router.post("/lexia-chat-openai", responses=_ERROR_RESPONSES)
async def lexia_chat_openai(request: Request):
    """Relay a turn to ChatGPT with the prior turns as history."""
    return await _relay(request, ProviderKind.CHATGPT)


@router.post("/chat/{provider}", responses=_ERROR_RESPONSES)
async def relay_chat(provider: ProviderKind, request: Request):
    return await _relay(request, provider)


async def _summary(request: Request, provider: ProviderKind) -> SummaryResponse:
    try:
        payload = await request.json()
    except ValueError as e:
        raise InvalidInput("El cuerpo de la solicitud debe ser JSON válido.") from e
    return await run_summary(parse_summary_request(payload, provider), provider)


@router.post("/summarize", response_model=SummaryResponse, responses=_ERROR_RESPONSES)
async def summarize(request: Request):
    """Summarize a legal document with Gemini. Body: {"documentText", "apiKey"}."""
    return await _summary(request, ProviderKind.GEMINI)


@router.post("/summarize/{provider}", response_model=SummaryResponse, responses=_ERROR_RESPONSES)
async def summarize_with(provider: ProviderKind, request: Request):
    return await _summary(request, provider)
