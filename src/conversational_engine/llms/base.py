"""
Core LLM abstractions and message data models.

All concrete LLM backends (currently 'OpenAILLM') implement the 'LLM' ABC. The
shared message format ('LLMMessage') is backend-agnostic: the orchestrator, the
tool router and the title generator only ever see 'LLMMessage' and 'TokenChunk'.

Streaming is expressed as a sequence of 'TokenChunk' objects: the canonical
shape every provider delta is mapped into before it reaches the reasoning
extractor. A chunk carries answer text, an optional side-channel reasoning
delta, and on the last chunk the provider's finish reason.
"""

from abc import ABC, abstractmethod
from enum import StrEnum
from collections.abc import AsyncGenerator

from pydantic import BaseModel

from conversational_engine.tools.base import ToolDescription


class Roles(StrEnum):
    """Conversation roles as used by the OpenAI chat completions API."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class Function(BaseModel):
    """The function name and JSON-encoded arguments inside a tool call."""

    name: str
    arguments: str


class ToolCall(BaseModel):
    """A single tool invocation requested by the LLM."""

    id: str
    function: Function
    type: str = "function"


class LLMMessage(BaseModel):
    """
    A single message in a conversation sent to or received from an LLM.

    'tool_calls' is populated when the assistant requests tool invocations in
    a non-streaming completion.
    """

    content: str = ""
    role: Roles = Roles.ASSISTANT
    tool_calls: list[ToolCall] | None = None


class TokenChunk(BaseModel):
    """
    One streamed delta from a provider.

    Attributes:
        text: Answer text contained in this delta (may be empty).
        reasoning: Reasoning text delivered on a provider side channel
            (e.g. 'reasoning_content'), kept apart from 'text'.
        special: True for control tokens that must not reach the answer.
        finish_reason: Set on the final chunk ('stop', 'length', ...).
    """

    text: str = ""
    reasoning: str | None = None
    special: bool = False
    finish_reason: str | None = None


class LLM(ABC):
    """
    Abstract base class for language model backends.

    'generate' is used for the single non-streaming calls of a turn (tool
    selection, tool-result synthesis, titles, reasoning summaries). Passing
    'tools' offers the given function schemas to the model; the returned
    message then may carry 'tool_calls'.
    """

    @abstractmethod
    async def generate(
        self, conversation: list[LLMMessage], tools: list[ToolDescription] | None = None
    ) -> LLMMessage:
        """Return a single complete response for the given conversation."""
        pass

    @abstractmethod
    def generate_stream(self, conversation: list[LLMMessage]) -> AsyncGenerator[TokenChunk, None]:
        """Yield response chunks as they arrive from the model."""
        pass
