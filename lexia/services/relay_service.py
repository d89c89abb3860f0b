"""
Streaming relay: run the provider iterator in a worker thread and forward every
fragment to the HTTP response the moment it arrives (no buffering, no grouping).
The relay holds no state between requests and never touches the store;
persisting the turn is the caller's job.
"""
import asyncio
import logging
from collections.abc import AsyncGenerator
from typing import Any, Iterator

from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from lexia.errors import InvalidInput, LexiaError, stream_error_fragment
from lexia.schemas.chat import ProviderKind, RelayRequest, SummaryRequest, SummaryResponse
from lexia.services.provider_adapter import (
    PROVIDER_LABELS,
    ProviderRequest,
    classify_provider_error,
    stream_answer,
    summarize_document,
)

logger = logging.getLogger(__name__)

RELAY_MEDIA_TYPE = "text/plain; charset=utf-8"


def parse_relay_request(payload: Any, provider: ProviderKind) -> RelayRequest:
    """Validate the raw JSON body. Each rejection carries its own display message."""
    if not isinstance(payload, dict):
        raise InvalidInput("El cuerpo de la solicitud debe ser un objeto JSON.")
    question = payload.get("question")
    if not question or not isinstance(question, str):
        raise InvalidInput("La pregunta es requerida y debe ser texto.")
    api_key = payload.get("apiKey")
    if not api_key or not isinstance(api_key, str):
        raise InvalidInput(f"La clave API de {PROVIDER_LABELS[provider]} es requerida.")
    try:
        return RelayRequest.model_validate(
            {"question": question, "apiKey": api_key, "history": payload.get("history") or []}
        )
    except ValidationError as e:
        raise InvalidInput("El historial de la conversación no es válido.") from e


def _sync_producer(
    fragments: Iterator[str],
    queue: asyncio.Queue,
    loop: asyncio.AbstractEventLoop,
) -> None:
    """
    Run in thread: drain the provider iterator; put each fragment into queue via loop.
    Puts None when the stream ends, or the exception if iteration raised.
    """
    try:
        for fragment in fragments:
            loop.call_soon_threadsafe(queue.put_nowait, fragment)
        loop.call_soon_threadsafe(queue.put_nowait, None)
    except Exception as e:
        loop.call_soon_threadsafe(queue.put_nowait, e)


async def _relay_body(
    first: str | None,
    queue: asyncio.Queue,
    producer_future: asyncio.Future,
) -> AsyncGenerator[str, None]:
    item: Any = first
    while item is not None:
        if isinstance(item, Exception):
            # Status is already 200: the failure can only travel in the body
            logger.warning("Relay stream aborted after start: %s", item)
            yield stream_error_fragment(str(item))
            break
        yield item
        item = await queue.get()
    await producer_future


async def open_relay(body: RelayRequest, provider: ProviderKind) -> StreamingResponse:
    """
    Start the provider stream and wait for its first item only. A failure at that
    point is raised as a LexiaError (rendered as a JSON error with its status);
    anything later is streamed as data.
    """
    fragments = stream_answer(
        ProviderRequest(
            provider=provider,
            question=body.question,
            credential=body.api_key,
            prior_turns=body.history,
        )
    )

    queue: asyncio.Queue = asyncio.Queue()
    loop = asyncio.get_running_loop()
    producer_future = loop.run_in_executor(None, _sync_producer, fragments, queue, loop)

    first = await queue.get()
    if isinstance(first, Exception):
        await producer_future
        error = first if isinstance(first, LexiaError) else classify_provider_error(first)
        if error.status_code >= 500:
            logger.error("%s relay failed before streaming: %s", PROVIDER_LABELS[provider], first, exc_info=first)
        else:
            logger.warning("%s relay rejected: %s", PROVIDER_LABELS[provider], error.message)
        raise error

    return StreamingResponse(
        _relay_body(first, queue, producer_future),
        media_type=RELAY_MEDIA_TYPE,
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


def parse_summary_request(payload: Any, provider: ProviderKind) -> SummaryRequest:
    if not isinstance(payload, dict):
        raise InvalidInput("El cuerpo de la solicitud debe ser un objeto JSON.")
    document_text = payload.get("documentText")
    if not isinstance(document_text, str) or not document_text.strip():
        raise InvalidInput("El texto del documento es requerido.")
    api_key = payload.get("apiKey")
    if not api_key or not isinstance(api_key, str):
        raise InvalidInput(f"La clave API de {PROVIDER_LABELS[provider]} es requerida.")
    return SummaryRequest.model_validate({"documentText": document_text, "apiKey": api_key})


async def run_summary(body: SummaryRequest, provider: ProviderKind) -> SummaryResponse:
    """Whole-answer call; the blocking SDK work runs in the default executor."""
    loop = asyncio.get_running_loop()
    try:
        summary = await loop.run_in_executor(
            None, summarize_document, provider, body.document_text, body.api_key
        )
    except LexiaError as e:
        if e.status_code >= 500:
            logger.error("%s summary failed: %s", PROVIDER_LABELS[provider], e.message, exc_info=e)
        else:
            logger.warning("%s summary rejected: %s", PROVIDER_LABELS[provider], e.message)
        raise
    return SummaryResponse(summary=summary)
