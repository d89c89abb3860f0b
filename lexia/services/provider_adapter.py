"""
LLM provider adapter for LexIA.
Gemini through google-genai, ChatGPT through openai. The user's own API key
is passed per request; no client is cached and no key is kept server-side.
"""
import logging
from typing import Callable, Iterator

import openai
from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from pydantic import BaseModel, Field

from lexia.config import get_settings
from lexia.errors import (
    AuthenticationFailed,
    Forbidden,
    InvalidInput,
    LexiaError,
    ModelUnavailable,
    RateLimited,
    UnknownRelayError,
    stream_error_fragment,
)
from lexia.schemas.chat import ProviderKind, Turn

logger = logging.getLogger(__name__)

LEXIA_SYSTEM_INSTRUCTION = (
    "Eres LexIA, asistente jurídico especializado en Derecho español y europeo. "
    "Responde con lenguaje claro y, cuando proceda, menciona la norma o jurisprudencia aplicable. "
    "Puedes usar emojis relevantes y profesionales de forma sutil cuando sea apropiado "
    "(ej. ⚖️, 🏛️, 🇪🇸, 🇪🇺, 📄, ✅)."
)

PROVIDER_LABELS = {
    ProviderKind.GEMINI: "Gemini",
    ProviderKind.CHATGPT: "OpenAI",
}

GEMINI_SAFETY_CATEGORIES = (
    types.HarmCategory.HARM_CATEGORY_HARASSMENT,
    types.HarmCategory.HARM_CATEGORY_HATE_SPEECH,
    types.HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
    types.HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
)


class ProviderRequest(BaseModel):
    provider: ProviderKind
    question: str
    credential: str = Field(..., repr=False)
    prior_turns: list[Turn] = Field(default_factory=list)
    system_persona: str = LEXIA_SYSTEM_INSTRUCTION


# ---- Gemini ----


def build_gemini_request(request: ProviderRequest) -> dict:
    """Keyword arguments for generate_content_stream. Only the current question is sent."""
    settings = get_settings()
    config = types.GenerateContentConfig(
        system_instruction=request.system_persona,
        temperature=settings.gemini_temperature,
        max_output_tokens=settings.gemini_max_output_tokens,
        safety_settings=[
            types.SafetySetting(
                category=category,
                threshold=types.HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
            )
            for category in GEMINI_SAFETY_CATEGORIES
        ],
    )
    # Prior turns are not forwarded to Gemini (the ChatGPT variant gets them).
    contents = [types.Content(role="user", parts=[types.Part.from_text(text=request.question)])]
    return {"model": settings.gemini_model, "contents": contents, "config": config}


def _gemini_chunk_text(chunk) -> str | None:
    if not chunk:
        return None
    text = getattr(chunk, "text", None)
    if text:
        return text
    if chunk.candidates:
        c = chunk.candidates[0]
        if c.content and c.content.parts:
            return getattr(c.content.parts[0], "text", None)
    return None


def _stream_gemini(request: ProviderRequest) -> Iterator[str]:
    client = genai.Client(api_key=request.credential)
    stream = client.models.generate_content_stream(**build_gemini_request(request))
    for chunk in stream:
        text = _gemini_chunk_text(chunk)
        if text:
            yield text


# ---- ChatGPT ----


def build_openai_messages(request: ProviderRequest) -> list[dict]:
    """System persona, then one message per prior turn, then the new question."""
    messages = [{"role": "system", "content": request.system_persona}]
    for turn in request.prior_turns:
        if not turn.text.strip():
            continue
        messages.append({"role": turn.role, "content": turn.text})
    messages.append({"role": "user", "content": request.question})
    return messages


def _stream_openai(request: ProviderRequest) -> Iterator[str]:
    settings = get_settings()
    client = openai.OpenAI(api_key=request.credential)
    stream = client.chat.completions.create(
        model=settings.openai_model,
        messages=build_openai_messages(request),
        temperature=settings.openai_temperature,
        max_tokens=settings.openai_max_tokens,
        stream=True,
    )
    for chunk in stream:
        if not chunk.choices:
            continue
        text = getattr(chunk.choices[0].delta, "content", None)
        if text:
            yield text


_STRATEGIES: dict[ProviderKind, Callable[[ProviderRequest], Iterator[str]]] = {
    ProviderKind.GEMINI: _stream_gemini,
    ProviderKind.CHATGPT: _stream_openai,
}


# ---- Error classification ----


def _classify_openai(exc: openai.APIError) -> LexiaError:
    if isinstance(exc, openai.AuthenticationError) or getattr(exc, "code", None) == "invalid_api_key":
        return AuthenticationFailed("Clave API de OpenAI inválida o sin permisos.")
    if isinstance(exc, openai.PermissionDeniedError):
        return Forbidden()
    if isinstance(exc, openai.NotFoundError):
        # OpenAI's own text ("does not exist or you do not have access to it") is more specific
        return ModelUnavailable(exc.message or None)
    if isinstance(exc, openai.RateLimitError):
        return RateLimited()
    return UnknownRelayError(f"Error de API OpenAI: {exc.message}")


def _classify_gemini(exc: genai_errors.APIError) -> LexiaError:
    message = exc.message or str(exc)
    status_text = (exc.status or "").upper()
    if (
        "API key not valid" in message
        or "API key is invalid" in message
        or exc.code == 401
        or status_text == "UNAUTHENTICATED"
    ):
        return AuthenticationFailed("Clave API de Gemini inválida o sin permisos.")
    if exc.code == 403 or status_text == "PERMISSION_DENIED":
        return Forbidden()
    if exc.code == 404 or status_text == "NOT_FOUND":
        return ModelUnavailable()
    if exc.code == 429 or status_text == "RESOURCE_EXHAUSTED":
        return RateLimited()
    return UnknownRelayError(message)


def classify_provider_error(exc: Exception) -> LexiaError:
    """Map an SDK exception raised before streaming started onto the relay taxonomy."""
    if isinstance(exc, LexiaError):
        return exc
    if isinstance(exc, openai.APIError):
        return _classify_openai(exc)
    if isinstance(exc, genai_errors.APIError):
        return _classify_gemini(exc)
    return UnknownRelayError(str(exc) or None)


# ---- Public entry point ----


def _require_credential(request: ProviderRequest) -> None:
    if not isinstance(request.credential, str) or not request.credential:
        raise InvalidInput(f"La clave API de {PROVIDER_LABELS[request.provider]} es requerida.")


def _guarded_stream(request: ProviderRequest) -> Iterator[str]:
    started = False
    try:
        for fragment in _STRATEGIES[request.provider](request):
            started = True
            yield fragment
    except Exception as e:
        if not started:
            raise classify_provider_error(e) from e
        logger.exception("%s stream failed mid-flight", PROVIDER_LABELS[request.provider])
        yield stream_error_fragment(getattr(e, "message", None) or str(e))


def stream_answer(request: ProviderRequest) -> Iterator[str]:
    """
    Validate eagerly, then return a lazy iterator of text fragments in upstream order.
    Failures before the first fragment raise a LexiaError subclass on iteration;
    failures after it end the iterator with the in-band STREAM_ERROR fragment.
    """
    if not isinstance(request.question, str) or not request.question:
        raise InvalidInput("La pregunta es requerida y debe ser texto.")
    _require_credential(request)
    return _guarded_stream(request)


# ---- Document summary ----

SUMMARY_INSTRUCTION = (
    "Por favor, resume el siguiente documento legal, identificando los puntos clave "
    "y los argumentos principales:\n\nDocumento:\n{document_text}"
)


def build_summary_request(provider: ProviderKind, document_text: str, credential: str) -> ProviderRequest:
    """One-shot request: the document goes in as the question, with no prior turns."""
    return ProviderRequest(
        provider=provider,
        question=SUMMARY_INSTRUCTION.format(document_text=document_text),
        credential=credential,
    )


def summarize_document(provider: ProviderKind, document_text: str, credential: str) -> str:
    """
    Blocking, non-streaming summary of a legal document through the same provider
    strategies as the chat. Any upstream failure is raised as a LexiaError.
    """
    if not isinstance(document_text, str) or not document_text.strip():
        raise InvalidInput("El texto del documento es requerido.")
    request = build_summary_request(provider, document_text, credential)
    _require_credential(request)
    try:
        return "".join(_STRATEGIES[request.provider](request))
    except Exception as e:
        raise classify_provider_error(e) from e
