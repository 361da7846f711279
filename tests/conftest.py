"""Shared fixtures for the test suite."""

import asyncio
from typing import Any, Dict, List, Optional, Sequence

import pytest

from zeus_chat.config import Settings
from zeus_chat.domain.models import Conversation, Message
from zeus_chat.repositories.memory import InMemoryConversationRepository
from zeus_chat.services.completion import CompletionClient, CompletionResult, TokenUsage


class FakeCompletionClient(CompletionClient):
    """Scriptable completion client.

    ``replies`` are returned in order (the last one repeats), ``error`` is
    raised instead when set, and ``gate`` holds every call until it is set.
    """

    def __init__(self) -> None:
        self.replies: List[str] = ["Hi there! How can I help?"]
        self.usage: Optional[TokenUsage] = TokenUsage(prompt_tokens=10, completion_tokens=20, total_tokens=30)
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.calls: List[Dict[str, Any]] = []

    async def complete(
        self,
        model_id: str,
        messages: Sequence[Message],
        provider: Optional[str] = None,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> CompletionResult:
        self.calls.append(
            {
                "model_id": model_id,
                "messages": list(messages),
                "provider": provider,
                "system_prompt": system_prompt,
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
        )
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        index = min(len(self.calls) - 1, len(self.replies) - 1)
        return CompletionResult(
            content=self.replies[index], model_id=model_id, provider=provider or "aimlapi", usage=self.usage
        )

    async def list_models(self, provider: Optional[str] = None) -> List[Dict[str, Any]]:
        return [{"id": "gpt-4", "object": "model"}]


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, rate_limit=1000, log_level="WARNING")


@pytest.fixture
def repository() -> InMemoryConversationRepository:
    return InMemoryConversationRepository()


@pytest.fixture
def completion_client() -> FakeCompletionClient:
    return FakeCompletionClient()


@pytest.fixture
def make_conversation():
    """Build (not store) a conversation owned by ``user-1`` unless told otherwise."""

    def factory(**overrides: Any) -> Conversation:
        fields = {"user_id": "user-1", "title": "Test Chat", "model_id": "gpt-4", "provider": "openai"}
        fields.update(overrides)
        return Conversation(**fields)

    return factory


@pytest.fixture
def eventually():
    """Poll ``predicate`` until it holds, failing after ``timeout`` seconds."""

    async def wait_for(predicate, timeout: float = 1.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.01)

    return wait_for
