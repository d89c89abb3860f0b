from contextlib import asynccontextmanager

import pytest
from sqlalchemy.orm import sessionmaker

from lexia.client.context import AuthContext
from lexia.database import Base, build_engine
from lexia.models import Conversation, Message  # noqa: F401 - load models
from lexia.schemas.chat import ProviderKind
from lexia.services.change_feed import ChangeFeed
from lexia.services.conversation_store import ConversationStore


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'lexia-test.db'}")
    Base.metadata.create_all(engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return ConversationStore(session_factory, ChangeFeed())


@pytest.fixture
def context():
    ctx = AuthContext(provider=ProviderKind.GEMINI, api_keys={ProviderKind.GEMINI: "gemini-test-key"})
    ctx.sign_in("user-1")
    return ctx


class FakeStream:
    def __init__(self, fragments):
        self._fragments = list(fragments)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._fragments:
            raise StopAsyncIteration
        return self._fragments.pop(0)


class FakeRelayClient:
    """Stands in for RelayClient; records calls and replays fixed fragments."""

    def __init__(self, fragments=(), error=None, before_open=None):
        self.fragments = list(fragments)
        self.error = error
        self.before_open = before_open
        self.calls = []

    @asynccontextmanager
    async def open_turn(self, provider, question, api_key, history=()):
        self.calls.append(
            {"provider": provider, "question": question, "api_key": api_key, "history": list(history)}
        )
        if self.before_open is not None:
            await self.before_open()
        if self.error is not None:
            raise self.error
        yield FakeStream(self.fragments)


@pytest.fixture
def fake_relay_factory():
    return FakeRelayClient
