import asyncio
import time
from collections.abc import AsyncGenerator

import pytest

from conftest import FakeLLM, build_conversation, collect
from conversational_engine.config import GenerationParameters, ModelConfig, SummarizeReasoning, TokensReasoning
from conversational_engine.conversation_database.abort import AbortRegistry, InMemoryAbortRegistry
from conversational_engine.exceptions import NoOutputError, ProviderError
from conversational_engine.generation.orchestrator import GenerationOrchestrator, build_prompt, strip_stop_sequences
from conversational_engine.generation.tool_router import ToolCallRouter
from conversational_engine.generation.updates import (
    FinalAnswerUpdate,
    MessageUpdateStatus,
    ReasoningStreamUpdate,
    StatusUpdate,
    StreamUpdate,
    TitleUpdate,
    is_keep_alive,
    is_terminal,
)
from conversational_engine.llms.base import LLMMessage, Roles, TokenChunk


class AbortingLLM(FakeLLM):
    """Streams tokens and requests a stop right before the second one."""

    def __init__(self, registry: AbortRegistry, conversation_id: str, tokens: list[str]) -> None:
        super().__init__(chunks=tokens)
        self.registry = registry
        self.conversation_id = conversation_id
        self.sent: list[str] = []

    async def generate_stream(self, conversation: list[LLMMessage]) -> AsyncGenerator[TokenChunk, None]:
        for index, token in enumerate(self.chunks):
            if index == 1:
                await self.registry.touch(self.conversation_id)
            self.sent.append(token)
            yield TokenChunk(text=token)


class SlowClosingLLM(AbortingLLM):
    """Like 'AbortingLLM', but releasing the provider stream takes a while."""

    async def generate_stream(self, conversation: list[LLMMessage]) -> AsyncGenerator[TokenChunk, None]:
        try:
            async for chunk in super().generate_stream(conversation):
                yield chunk
        finally:
            await asyncio.sleep(0.2)


def _orchestrator(llm, model=None, registry=None, **kwargs) -> GenerationOrchestrator:
    return GenerationOrchestrator(
        llm=llm,
        model=model or ModelConfig(id="test-model"),
        abort_registry=registry or InMemoryAbortRegistry(),
        title_llm=kwargs.pop("title_llm", FakeLLM()),
        **kwargs,
    )


async def _run(orchestrator: GenerationOrchestrator, *user_messages: str, **kwargs) -> list:
    conversation, tree, assistant_id = build_conversation(*user_messages, title=kwargs.pop("title", None))
    context = tree.subtree(assistant_id)[:-1]
    return await collect(orchestrator.text_generation(conversation, context, **kwargs))


def _terminals(updates: list) -> list:
    return [update for update in updates if is_terminal(update)]


@pytest.mark.asyncio
async def test_started_first_and_exactly_one_final_answer():
    updates = await _run(_orchestrator(FakeLLM(chunks=["Hel", "lo"])), "Hi")

    assert updates[0] == StatusUpdate(status=MessageUpdateStatus.STARTED)
    assert sum(1 for update in updates if update == updates[0]) == 1
    assert [update.token for update in updates if isinstance(update, StreamUpdate)] == ["Hel", "lo"]
    assert _terminals(updates) == [FinalAnswerUpdate(text="Hello")]


@pytest.mark.asyncio
async def test_prompt_contains_preprompt_and_history():
    llm = FakeLLM(chunks=["ok"])
    await _run(_orchestrator(llm), "first", "second")

    prompt = llm.stream_calls[0]
    assert [message.role for message in prompt] == [Roles.SYSTEM, Roles.USER, Roles.ASSISTANT, Roles.USER]
    assert prompt[0].content == "You are helpful."
    assert prompt[-1].content == "second"


@pytest.mark.asyncio
async def test_heartbeat_stops_with_main_task():
    llm = FakeLLM(chunks=["a", "b", "c"], delay=0.03)
    updates = await _run(_orchestrator(llm, keep_alive_interval=0.005), "Hi")

    assert any(is_keep_alive(update) for update in updates)
    final_index = next(i for i, update in enumerate(updates) if isinstance(update, FinalAnswerUpdate))
    assert not any(is_keep_alive(update) for update in updates[final_index:])
    assert len(_terminals(updates)) == 1


@pytest.mark.asyncio
async def test_abort_interrupts_and_keeps_partial_answer():
    registry = InMemoryAbortRegistry()
    llm = AbortingLLM(registry, "conversation-1", ["a", "b", "c", "d"])
    orchestrator = _orchestrator(llm, registry=registry, keep_alive_interval=0.001)

    updates = await _run(orchestrator, "Hi", prompted_at=time.time() - 1)

    final = _terminals(updates)
    assert final == [FinalAnswerUpdate(text="ab", interrupted=True)]
    final_index = updates.index(final[0])
    assert updates[final_index + 1 :] == [] or all(
        isinstance(update, TitleUpdate) for update in updates[final_index + 1 :]
    )
    assert llm.sent == ["a", "b"]


@pytest.mark.asyncio
async def test_no_keepalives_once_abort_is_detected():
    registry = InMemoryAbortRegistry()
    llm = SlowClosingLLM(registry, "conversation-1", ["a", "b", "c"])
    orchestrator = _orchestrator(llm, registry=registry, keep_alive_interval=0.01)

    updates = await _run(orchestrator, "Hi", prompted_at=time.time() - 1)

    last_token = max(i for i, update in enumerate(updates) if isinstance(update, StreamUpdate))
    assert not any(is_keep_alive(update) for update in updates[last_token:])
    assert _terminals(updates) == [FinalAnswerUpdate(text="ab", interrupted=True)]


@pytest.mark.asyncio
async def test_aborted_summarize_turn_does_not_repeat_reasoning():
    registry = InMemoryAbortRegistry()
    llm = AbortingLLM(registry, "conversation-1", ["secret ", "thoughts", "more"])
    model = ModelConfig(id="test-model", reasoning=SummarizeReasoning())

    updates = await _run(_orchestrator(llm, model=model, registry=registry), "Hi", prompted_at=time.time() - 1)

    reasoning = "".join(update.token for update in updates if isinstance(update, ReasoningStreamUpdate))
    assert reasoning == "secret thoughts"
    assert _terminals(updates) == [FinalAnswerUpdate(text="", interrupted=True)]


@pytest.mark.asyncio
async def test_stop_request_from_before_the_turn_is_ignored():
    registry = InMemoryAbortRegistry()
    await registry.touch("conversation-1")
    updates = await _run(_orchestrator(FakeLLM(chunks=["a", "b"]), registry=registry), "Hi")
    assert _terminals(updates) == [FinalAnswerUpdate(text="ab")]


@pytest.mark.asyncio
async def test_provider_error_becomes_error_status():
    llm = FakeLLM(chunks=["partial"], stream_error=ProviderError("connection reset"))
    updates = await _run(_orchestrator(llm), "Hi")

    assert _terminals(updates) == [StatusUpdate(status=MessageUpdateStatus.ERROR, message="connection reset")]
    assert not any(isinstance(update, FinalAnswerUpdate) for update in updates)


@pytest.mark.asyncio
async def test_empty_generation_reports_no_output():
    updates = await _run(_orchestrator(FakeLLM(chunks=[])), "Hi")
    assert _terminals(updates) == [
        StatusUpdate(status=MessageUpdateStatus.ERROR, message=NoOutputError.default_message)
    ]


@pytest.mark.asyncio
async def test_length_finish_reason_marks_interrupted():
    llm = FakeLLM(chunks=[TokenChunk(text="truncated", finish_reason="length")])
    updates = await _run(_orchestrator(llm), "Hi")
    assert _terminals(updates) == [FinalAnswerUpdate(text="truncated", interrupted=True)]


@pytest.mark.asyncio
async def test_stop_sequences_are_stripped():
    model = ModelConfig(id="test-model", parameters=GenerationParameters(stop=["</s>"]))
    updates = await _run(_orchestrator(FakeLLM(chunks=["done", "</s>"]), model=model), "Hi")
    assert _terminals(updates) == [FinalAnswerUpdate(text="done")]


@pytest.mark.asyncio
async def test_reasoning_never_reaches_the_final_answer():
    model = ModelConfig(id="test-model", reasoning=TokensReasoning())
    llm = FakeLLM(chunks=["a", "<think>", "b", "c", "</think>", "d"])
    updates = await _run(_orchestrator(llm, model=model), "Hi")

    assert [update.token for update in updates if isinstance(update, ReasoningStreamUpdate)] == ["b", "c"]
    assert _terminals(updates) == [FinalAnswerUpdate(text="ad")]


@pytest.mark.asyncio
async def test_title_is_generated_for_new_conversations():
    title_llm = FakeLLM(responses=[LLMMessage(content='"👋 Greeting"')])
    updates = await _run(_orchestrator(FakeLLM(chunks=["Hello"]), title_llm=title_llm), "Hi there")

    assert TitleUpdate(title="👋 Greeting") in updates
    assert title_llm.generate_calls[0][0][-1].content == "Hi there"


@pytest.mark.asyncio
async def test_title_is_skipped_for_titled_conversations():
    title_llm = FakeLLM(responses=[LLMMessage(content="unused")])
    updates = await _run(_orchestrator(FakeLLM(chunks=["Hello"]), title_llm=title_llm), "Hi", title="Existing")

    assert not any(isinstance(update, TitleUpdate) for update in updates)
    assert title_llm.generate_calls == []


@pytest.mark.asyncio
async def test_title_failure_does_not_fail_the_turn():
    title_llm = FakeLLM(responses=[RuntimeError("title model down")])
    updates = await _run(_orchestrator(FakeLLM(chunks=["Hello"]), title_llm=title_llm), "Hi")
    assert _terminals(updates) == [FinalAnswerUpdate(text="Hello")]


@pytest.mark.asyncio
async def test_inline_tool_command_skips_generation(tool_registry):
    llm = FakeLLM(chunks=["never"])
    orchestrator = _orchestrator(llm, tool_router=ToolCallRouter(tool_registry, llm))
    updates = await _run(orchestrator, "weather.forecast {bad json")

    assert [type(update) for update in updates] == [StatusUpdate, FinalAnswerUpdate]
    assert updates[-1].text.startswith("Invalid JSON args:")
    assert llm.stream_calls == []


@pytest.mark.asyncio
async def test_no_tool_call_falls_through_to_streaming(tool_registry):
    llm = FakeLLM(chunks=["plain answer"], responses=[LLMMessage(content="")])
    orchestrator = _orchestrator(llm, tool_router=ToolCallRouter(tool_registry, llm))
    updates = await _run(orchestrator, "Tell me a joke")

    assert _terminals(updates) == [FinalAnswerUpdate(text="plain answer")]
    assert llm.generate_calls[0][1] is not None


def test_build_prompt_without_system_role():
    _, tree, assistant_id = build_conversation("Hi")
    prompt = build_prompt(tree.subtree(assistant_id)[:-1], "Be brief.", system_role_supported=False)

    assert [message.role for message in prompt] == [Roles.USER, Roles.USER]
    assert prompt[0].content == "Be brief.\n\nYou are helpful."


def test_strip_stop_sequences():
    assert strip_stop_sequences("answer<|end|>", ["</s>", "<|end|>"]) == "answer"
    assert strip_stop_sequences("answer", ["</s>"]) == "answer"
