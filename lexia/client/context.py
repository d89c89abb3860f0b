"""
Auth + provider context for the chat controller.
Replaces process-wide globals: components receive this object explicitly,
register for auth changes through on_auth_state_changed, and read an immutable
snapshot at the start of every request cycle.
"""
import logging
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, Field

from lexia.schemas.chat import ProviderKind

logger = logging.getLogger(__name__)

AuthListener = Callable[[str | None], Any]


class ContextSnapshot(BaseModel):
    user_id: str | None = None
    provider: ProviderKind = ProviderKind.GEMINI
    credential: str | None = Field(None, repr=False)

    class Config:
        frozen = True


class AuthContext:
    """Current user id, selected provider and per-provider API keys."""

    def __init__(
        self,
        provider: ProviderKind = ProviderKind.GEMINI,
        api_keys: dict[ProviderKind, str] | None = None,
    ):
        self._user_id: str | None = None
        self._provider = provider
        self._api_keys: dict[ProviderKind, str] = dict(api_keys or {})
        self._listeners: list[AuthListener] = []

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def provider(self) -> ProviderKind:
        return self._provider

    def on_auth_state_changed(self, listener: AuthListener) -> Callable[[], None]:
        """Call listener now with the current user id and on every sign-in/out. Returns unsubscribe."""
        self._listeners.append(listener)
        self._call(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def sign_in(self, user_id: str) -> None:
        if not user_id:
            raise ValueError("user_id is required")
        if user_id == self._user_id:
            return
        self._user_id = user_id
        self._notify()

    def sign_out(self) -> None:
        if self._user_id is None:
            return
        self._user_id = None
        self._notify()

    def set_api_key(self, provider: ProviderKind, key: str | None) -> None:
        if key:
            self._api_keys[provider] = key
        else:
            self._api_keys.pop(provider, None)

    def select_provider(self, provider: ProviderKind) -> None:
        self._provider = ProviderKind(provider)

    def credential(self, provider: ProviderKind | None = None) -> str | None:
        return self._api_keys.get(provider or self._provider)

    def snapshot(self) -> ContextSnapshot:
        return ContextSnapshot(
            user_id=self._user_id,
            provider=self._provider,
            credential=self.credential(),
        )

    def _notify(self) -> None:
        for listener in list(self._listeners):
            self._call(listener)

    def _call(self, listener: AuthListener) -> None:
        try:
            listener(self._user_id)
        except Exception as e:
            logger.warning("Auth state listener failed: %s", e, exc_info=True)
