"""
OpenAI-compatible chat completions backend.

Works with any server implementing the OpenAI chat completions API. Streaming
deltas are mapped onto 'TokenChunk': 'delta.content' becomes answer text, a
non-standard 'delta.reasoning_content' (emitted by several open-weight model
servers) becomes the reasoning side channel, and 'finish_reason' is forwarded
on the last chunk. Provider failures are re-raised as 'ProviderError'.
"""

from collections.abc import AsyncGenerator
from typing import Any

from loguru import logger
from openai import AsyncOpenAI, OpenAIError

from conversational_engine.config import GenerationParameters
from conversational_engine.exceptions import ProviderError
from conversational_engine.llms.base import LLM, Function, LLMMessage, Roles, TokenChunk, ToolCall
from conversational_engine.tools.base import ToolDescription


class OpenAILLM(LLM):
    def __init__(
        self,
        model_name: str,
        api_key: str = "",
        base_url: str | None = None,
        parameters: GenerationParameters | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.model_name = model_name
        self.parameters = parameters or GenerationParameters()
        self.client = client or AsyncOpenAI(api_key=api_key or "sk-", base_url=base_url)

    def _request_body(self, conversation: list[LLMMessage]) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model_name,
            "messages": [{"role": message.role.value, "content": message.content} for message in conversation],
        }
        if self.parameters.temperature is not None:
            body["temperature"] = self.parameters.temperature
        if self.parameters.top_p is not None:
            body["top_p"] = self.parameters.top_p
        if self.parameters.max_new_tokens is not None:
            body["max_tokens"] = self.parameters.max_new_tokens
        if self.parameters.stop:
            body["stop"] = self.parameters.stop
        return body

    async def generate(
        self, conversation: list[LLMMessage], tools: list[ToolDescription] | None = None
    ) -> LLMMessage:
        body = self._request_body(conversation)
        if tools:
            body["tools"] = tools
            body["tool_choice"] = "auto"
        try:
            completion = await self.client.chat.completions.create(**body)
        except OpenAIError as e:
            raise ProviderError(str(e)) from e

        if not completion.choices:
            return LLMMessage(role=Roles.ASSISTANT, content="")
        message = completion.choices[0].message
        tool_calls = [
            ToolCall(
                id=call.id,
                type=call.type,
                function=Function(name=call.function.name, arguments=call.function.arguments or ""),
            )
            for call in message.tool_calls or []
            if call.type == "function"
        ]
        return LLMMessage(role=Roles.ASSISTANT, content=message.content or "", tool_calls=tool_calls or None)

    async def generate_stream(self, conversation: list[LLMMessage]) -> AsyncGenerator[TokenChunk, None]:
        try:
            # Closing the stream releases the HTTP response, also when the consumer stops early.
            async with await self.client.chat.completions.create(
                **self._request_body(conversation), stream=True
            ) as stream:
                async for chunk in stream:
                    if not chunk.choices:
                        continue
                    choice = chunk.choices[0]
                    reasoning = getattr(choice.delta, "reasoning_content", None)
                    yield TokenChunk(
                        text=choice.delta.content or "",
                        reasoning=reasoning if isinstance(reasoning, str) and reasoning else None,
                        finish_reason=choice.finish_reason,
                    )
        except OpenAIError as e:
            logger.error(f"Streaming from {self.model_name} failed: {e}")
            raise ProviderError(str(e)) from e
