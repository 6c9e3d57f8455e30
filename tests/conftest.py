"""Shared fixtures: offline token counter, scripted provider, in-memory stores."""

import pytest
from pydantic import BaseModel

from assistant.config import Settings
from assistant.core.tokens import TokenCounter
from assistant.tools.registry import ToolExecutionResult, ToolRegistry
from tests.fakes import ByteEncoding, InMemoryConversationStore, RecordingTraceSink


class EchoInput(BaseModel):
    message: str = "default"


class AddInput(BaseModel):
    a: float
    b: float


class LookupInput(BaseModel):
    key: str


@pytest.fixture
def settings() -> Settings:
    return Settings(
        ANTHROPIC_API_KEY="test-key",
        ANTHROPIC_AUTH_TOKEN="",
        model="claude-3-5-haiku-20241022",
        max_iterations=3,
        max_tokens=1024,
    )


@pytest.fixture
def counter() -> TokenCounter:
    return TokenCounter(encoding=ByteEncoding())


@pytest.fixture
def registry() -> ToolRegistry:
    """Registry with echo, add and a lookup tool that fails for unknown keys."""
    reg = ToolRegistry()

    async def echo(params: EchoInput) -> dict:
        return {"echo": params.message}

    async def add(params: AddInput) -> float:
        return params.a + params.b

    async def lookup(params: LookupInput) -> ToolExecutionResult:
        if params.key != "known":
            return ToolExecutionResult.fail(f"No entry for {params.key}")
        return ToolExecutionResult.ok({"value": 42})

    reg.register("echo", echo, EchoInput, "Echo a message back")
    reg.register("add", add, AddInput, "Add two numbers")
    reg.register("lookup", lookup, LookupInput, "Look up a key")
    return reg


@pytest.fixture
def store() -> InMemoryConversationStore:
    return InMemoryConversationStore()


@pytest.fixture
def sink() -> RecordingTraceSink:
    return RecordingTraceSink()
