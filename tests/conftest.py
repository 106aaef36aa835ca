from collections.abc import Callable

import pytest

from teleplay.checkpoint import MemoryCheckpointStore
from teleplay.model import BotSession, Handler
from tests.fakes import TOKEN, FakeSource


async def _echo(text: str, update) -> str:
    return f"you said: {text}"


@pytest.fixture
def fake_source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def memory_store() -> MemoryCheckpointStore:
    return MemoryCheckpointStore()


@pytest.fixture
def make_session() -> Callable[..., BotSession]:
    def _factory(handler: Handler = _echo, **kwargs) -> BotSession:
        kwargs.setdefault("poll_interval_s", 0.5)
        return BotSession(token=TOKEN, handler=handler, **kwargs)

    return _factory
