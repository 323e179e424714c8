"""Shared test fixtures for backend tests."""

import asyncio
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from chatlog.models.thread import Message
from chatlog.services.chat import ChatService
from chatlog.services.llm.base import CompletionProvider
from chatlog.services.log_store import LogStore

# In-memory SQLite with StaticPool so all connections (including threads) share one DB
test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

BASE_MS = 1_700_000_000_000


@pytest.fixture(autouse=True)
def setup_test_db():
    """Create all tables before each test, drop after."""
    import chatlog.models  # noqa: F401 - register models
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


class FakeProvider(CompletionProvider):
    """Completion provider that numbers its replies and records prompts."""

    def __init__(self, error: Exception | None = None, delay: float = 0.0, reply: str | None = None):
        self.error = error
        self.delay = delay
        self.reply = reply
        self.prompts: list[str] = []
        self.users: list[str] = []

    async def complete(self, prompt: str, instructions: str = "", user: str = "User") -> str:
        self.prompts.append(prompt)
        self.users.append(user)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        if self.reply is not None:
            return self.reply
        return f"Reply number {len(self.prompts)}."


class StepClock:
    """Millisecond clock that advances a fixed step on every read."""

    def __init__(self, start: int = BASE_MS, step: int = 15_000):
        self.now = start
        self.step = step

    def __call__(self) -> int:
        value = self.now
        self.now += self.step
        return value


def make_message(
    message_id: str,
    role: str,
    timestamp: int,
    sequence: int | None = None,
    content: str | None = None,
    thread_id: str = "t1",
    reply_to: str | None = None,
) -> Message:
    return Message(
        id=message_id,
        conversation_id=thread_id,
        role=role,
        content=content if content is not None else f"{role} says {message_id}",
        timestamp=timestamp,
        sequence=sequence,
        reply_to=reply_to,
    )


@pytest.fixture
def log():
    return LogStore(test_engine)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def chat_service(provider, clock):
    return ChatService(test_engine, provider, clock=clock, batch_window=0.05)


@pytest.fixture
def client(provider):
    """FastAPI TestClient with the database and completion provider patched."""
    with (
        patch("chatlog.main.engine", test_engine),
        patch("chatlog.main.get_completion_provider", return_value=provider),
    ):
        from chatlog.main import app

        with TestClient(app) as c:
            yield c
