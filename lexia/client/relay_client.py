"""
HTTP client for the streaming relay. open_turn() checks the status first, then
hands out a RelayStream that yields decoded text fragments in arrival order.
"""
import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager

import httpx

from lexia.config import get_settings
from lexia.schemas.chat import ProviderKind, Turn

logger = logging.getLogger(__name__)

RELAY_PATHS = {
    ProviderKind.GEMINI: "/api/lexia-chat",
    ProviderKind.CHATGPT: "/api/lexia-chat-openai",
}

# No read timeout: long answers may pause between chunks
DEFAULT_TIMEOUT = httpx.Timeout(10.0, read=None)


class RelayCallError(Exception):
    """Relay answered with a non-200 status before streaming."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and isinstance(data.get("message"), str) and data["message"]:
        return data["message"]
    if data is None:
        return "Error desconocido del servidor."
    return f"Error: {response.reason_phrase or response.status_code}"


class RelayStream:
    """Fragments of one answer. Not restartable."""

    def __init__(self, response: httpx.Response):
        self._chunks = response.aiter_text()

    async def next_fragment(self) -> str | None:
        """Next non-empty fragment, or None at end of stream."""
        async for text in self._chunks:
            if text:
                return text
        return None

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        fragment = await self.next_fragment()
        if fragment is None:
            raise StopAsyncIteration
        return fragment


class RelayClient:
    def __init__(self, base_url: str | None = None, http_client: httpx.AsyncClient | None = None):
        self._base_url = (base_url or get_settings().relay_base_url).rstrip("/")
        self._http_client = http_client

    def url_for(self, provider: ProviderKind) -> str:
        return f"{self._base_url}{RELAY_PATHS[ProviderKind(provider)]}"

    @asynccontextmanager
    async def open_turn(
        self,
        provider: ProviderKind,
        question: str,
        api_key: str,
        history: Sequence[Turn] = (),
    ) -> AsyncIterator[RelayStream]:
        payload = {
            "question": question,
            "apiKey": api_key,
            "history": [t.model_dump() for t in history],
        }
        client = self._http_client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
        try:
            async with client.stream("POST", self.url_for(provider), json=payload) as response:
                if response.status_code != 200:
                    await response.aread()
                    message = _error_message(response)
                    logger.warning("Relay returned %s: %s", response.status_code, message)
                    raise RelayCallError(response.status_code, message)
                yield RelayStream(response)
        finally:
            if self._http_client is None:
                await client.aclose()
