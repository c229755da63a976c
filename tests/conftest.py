import asyncio
from collections.abc import AsyncGenerator, AsyncIterator
from typing import Any

import pytest

from conversational_engine.config import ModelConfig
from conversational_engine.conversation_database.data_models.conversation import Conversation
from conversational_engine.conversation_database.data_models.message import MessageDraft
from conversational_engine.conversation_database.tree import MessageTree
from conversational_engine.llms.base import LLM, LLMMessage, Roles, TokenChunk
from conversational_engine.tools.base import Tool, ToolDescription
from conversational_engine.tools.local import LocalToolServerRegistry


class FakeLLM(LLM):
    """Scripted LLM: 'responses' are returned by 'generate' in order, 'chunks' are streamed."""

    def __init__(
        self,
        chunks: list[str | TokenChunk] | None = None,
        responses: list[LLMMessage | Exception] | None = None,
        stream_error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.chunks = chunks or []
        self.responses = list(responses or [])
        self.stream_error = stream_error
        self.delay = delay
        self.generate_calls: list[tuple[list[LLMMessage], list[ToolDescription] | None]] = []
        self.stream_calls: list[list[LLMMessage]] = []

    async def generate(
        self, conversation: list[LLMMessage], tools: list[ToolDescription] | None = None
    ) -> LLMMessage:
        self.generate_calls.append((conversation, tools))
        if not self.responses:
            return LLMMessage(content="")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def generate_stream(self, conversation: list[LLMMessage]) -> AsyncGenerator[TokenChunk, None]:
        self.stream_calls.append(conversation)
        for chunk in self.chunks:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield chunk if isinstance(chunk, TokenChunk) else TokenChunk(text=chunk)
        if self.stream_error is not None:
            raise self.stream_error


class ForecastTool(Tool):
    name = "forecast"
    description = "Weather forecast for a city."
    parameters = {"type": "object", "properties": {"city": {"type": "string"}}, "required": ["city"]}

    async def call(self, args: dict[str, Any]) -> dict[str, Any]:
        return {"city": args.get("city"), "weather": "sunny"}


class BrokenTool(Tool):
    name = "broken"
    description = "Always fails."
    parameters = {"type": "object", "properties": {}}

    async def call(self, args: dict[str, Any]) -> str:
        raise RuntimeError("backend unavailable")


async def collect(updates: AsyncIterator) -> list:
    return [update async for update in updates]


def build_conversation(*user_messages: str, preprompt: str = "You are helpful.", title: str | None = None):
    """A conversation with one user/assistant exchange per entry; the last assistant message is empty."""
    conversation = Conversation(
        id="conversation-1", model="test-model", preprompt=preprompt, create_timestamp=0, update_timestamp=0
    )
    if title is not None:
        conversation.title = title
    tree = MessageTree(conversation)
    tree.create_root(preprompt)
    assistant_id = None
    for index, content in enumerate(user_messages):
        user_id = tree.append_child(None, MessageDraft(role=Roles.USER, content=content))
        is_last = index == len(user_messages) - 1
        assistant_id = tree.append_child(
            user_id, MessageDraft(role=Roles.ASSISTANT, content="" if is_last else f"answer {index}")
        )
    return conversation, tree, assistant_id


@pytest.fixture
def model() -> ModelConfig:
    return ModelConfig(id="test-model")


@pytest.fixture
def tool_registry() -> LocalToolServerRegistry:
    return LocalToolServerRegistry({"weather": [ForecastTool(), BrokenTool()]})
