"""
Generation of one assistant turn.

'GenerationOrchestrator.text_generation' turns a conversation's model context
into one ordered 'MessageUpdate' stream. After the initial 'Status{started}'
three producers run concurrently and are merged with 'merge_async_generators':

    title      best-effort title for new conversations, cancelled on abort
    main       tool routing, then provider streaming through 'ReasoningExtractor'
    heartbeat  'Status{keepAlive}' every 'keep_alive_interval' until main is done
               or a stop request was detected

Every turn ends with exactly one terminal event: a 'FinalAnswer', or a
'Status{error}' when the provider failed or nothing was generated. Provider
errors never escape the stream. Keepalives are dropped once main has finished
or an abort was detected, so nothing but title events can follow the terminal
event.

A stop request is honoured when the abort registry holds a timestamp newer than
the start of the turn. Main then stops after the current token and finalizes
with the partial answer and 'interrupted=True'.
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import aclosing

from loguru import logger

from conversational_engine.config import ModelConfig
from conversational_engine.conversation_database.abort import AbortRegistry
from conversational_engine.conversation_database.data_models.conversation import Conversation
from conversational_engine.conversation_database.data_models.message import Message
from conversational_engine.exceptions import NoOutputError
from conversational_engine.generation.reasoning import ReasoningExtractor
from conversational_engine.generation.title import generate_title_for_conversation
from conversational_engine.generation.tool_router import ToolCallRouter
from conversational_engine.generation.updates import (
    FinalAnswerUpdate,
    MessageUpdate,
    MessageUpdateStatus,
    StatusUpdate,
    TitleUpdate,
    is_keep_alive,
    is_terminal,
)
from conversational_engine.llms.base import LLM, LLMMessage, Roles
from conversational_engine.skills.registry import SkillRegistry
from conversational_engine.utils.streams import merge_async_generators


def build_prompt(
    messages: list[Message], preprompt: str | None, system_role_supported: bool = True, skills_prompt: str = ""
) -> list[LLMMessage]:
    """Model context for 'messages' (root first).

    The preprompt is merged into the leading system message and 'skills_prompt'
    is appended to it. Models without a system role get that message as a user
    message instead.
    """
    prompt = [LLMMessage(role=message.role, content=message.content) for message in messages]
    if prompt and prompt[0].role == Roles.SYSTEM:
        system = prompt.pop(0)
        content = system.content
    else:
        content = ""
    if preprompt and not content.startswith(preprompt):
        content = f"{preprompt}\n\n{content}".strip()
    if skills_prompt:
        content = f"{content}\n\n{skills_prompt}".strip()
    if content:
        role = Roles.SYSTEM if system_role_supported else Roles.USER
        prompt.insert(0, LLMMessage(role=role, content=content))
    return prompt


def last_user_content(messages: list[Message]) -> str:
    return next((message.content for message in reversed(messages) if message.role == Roles.USER), "")


def strip_stop_sequences(text: str, stop: list[str]) -> str:
    for sequence in stop:
        if sequence and text.endswith(sequence):
            return text[: -len(sequence)]
    return text


class GenerationOrchestrator:
    """
    Runs turns for one model.

    Attributes:
        llm: Provider used for streaming and the auxiliary calls.
        model: Configuration of the model (reasoning strategy, stop sequences, system role support).
        abort_registry: Source of stop-generating requests.
        tool_router: Tool routing, or None when no tool servers are configured.
        title_llm: Model used for titles; defaults to 'llm'.
        reasoning_summary: Request periodic reasoning progress summaries.
        keep_alive_interval: Seconds between heartbeat events.
        skill_registry: Skills whose instructions are added to the system prompt, or None.
    """

    def __init__(
        self,
        llm: LLM,
        model: ModelConfig,
        abort_registry: AbortRegistry,
        tool_router: ToolCallRouter | None = None,
        title_llm: LLM | None = None,
        reasoning_summary: bool = False,
        keep_alive_interval: float = 0.1,
        skill_registry: SkillRegistry | None = None,
    ) -> None:
        self.llm = llm
        self.model = model
        self.abort_registry = abort_registry
        self.tool_router = tool_router
        self.title_llm = title_llm or llm
        self.reasoning_summary = reasoning_summary
        self.keep_alive_interval = keep_alive_interval
        self.skill_registry = skill_registry

    def build_prompt(self, conversation: Conversation, messages: list[Message]) -> list[LLMMessage]:
        """Model context for a turn over 'messages', including activated skills."""
        skills_prompt = ""
        question = last_user_content(messages)
        if self.skill_registry is not None and question:
            skills_prompt = self.skill_registry.skills_prompt(question)
        return build_prompt(messages, conversation.preprompt, self.model.system_role_supported, skills_prompt)

    async def text_generation(
        self,
        conversation: Conversation,
        messages: list[Message],
        is_continue: bool = False,
        prompted_at: float | None = None,
    ) -> AsyncGenerator[MessageUpdate, None]:
        """Stream the updates of one turn.

        Args:
            conversation: The conversation the turn belongs to.
            messages: Model context, root first. For a continued turn the last
                element is the partial assistant message.
            is_continue: Whether an existing assistant message is being continued.
            prompted_at: Epoch seconds the turn was requested; stop requests
                older than this are ignored. Defaults to now.
        """
        prompted_at = time.time() if prompted_at is None else prompted_at
        done = asyncio.Event()
        aborted = asyncio.Event()
        logger.info(f"Starting generation for conversation {conversation.id} with model {self.model.id}")
        yield StatusUpdate(status=MessageUpdateStatus.STARTED)

        merged = merge_async_generators(
            [
                self._title(conversation, aborted),
                self._main(conversation, messages, is_continue, prompted_at, done, aborted),
                self._heartbeat(done, aborted),
            ]
        )
        finished = False
        try:
            async for update in merged:
                if is_keep_alive(update) and (done.is_set() or aborted.is_set() or finished):
                    continue
                finished = finished or is_terminal(update)
                yield update
        finally:
            done.set()
            await merged.aclose()

    async def _main(
        self,
        conversation: Conversation,
        messages: list[Message],
        is_continue: bool,
        prompted_at: float,
        done: asyncio.Event,
        aborted: asyncio.Event,
    ) -> AsyncGenerator[MessageUpdate, None]:
        try:
            async for update in self._generate(conversation, messages, is_continue, prompted_at, aborted):
                if is_terminal(update):
                    done.set()
                yield update
        except Exception as e:
            logger.exception(f"Generation failed for conversation {conversation.id}: {e}")
            done.set()
            yield StatusUpdate(status=MessageUpdateStatus.ERROR, message=str(e))
        finally:
            done.set()

    async def _generate(
        self,
        conversation: Conversation,
        messages: list[Message],
        is_continue: bool,
        prompted_at: float,
        aborted: asyncio.Event,
    ) -> AsyncGenerator[MessageUpdate, None]:
        question = last_user_content(messages)
        prompt = self.build_prompt(conversation, messages)

        if self.tool_router is not None and not is_continue and messages and messages[-1].role == Roles.USER:
            command = self.tool_router.match_inline(messages[-1].content)
            if command is not None:
                async for update in self.tool_router.run_inline(command):
                    yield update
                return
            call = await self.tool_router.select_tool_call(prompt)
            if call is not None:
                async for update in self.tool_router.run_tool_call(call, question):
                    yield update
                return

        extractor = ReasoningExtractor(self.model.reasoning, llm=self.llm, summarize_progress=self.reasoning_summary)
        raw_text = ""
        interrupted = False
        try:
            for update in extractor.start():
                yield update
            async with aclosing(self.llm.generate_stream(prompt)) as stream:
                async for chunk in stream:
                    if not chunk.special:
                        raw_text += chunk.text
                    for update in extractor.feed(chunk):
                        yield update
                    if chunk.finish_reason == "length":
                        interrupted = True
                    if await self._is_aborted(conversation.id, prompted_at):
                        logger.info(f"Stop requested for conversation {conversation.id}, interrupting generation")
                        aborted.set()
                        break

            async for update in extractor.finish(raw_text, question, interrupted=aborted.is_set()):
                yield update
        finally:
            extractor.close()

        text = strip_stop_sequences(extractor.final_answer, self.model.parameters.stop)
        if aborted.is_set():
            yield FinalAnswerUpdate(text=text, interrupted=True)
            return
        if not text.strip():
            logger.warning(f"No output generated for conversation {conversation.id}")
            yield StatusUpdate(status=MessageUpdateStatus.ERROR, message=NoOutputError.default_message)
            return
        yield FinalAnswerUpdate(text=text, interrupted=interrupted)

    async def _is_aborted(self, conversation_id: str, prompted_at: float) -> bool:
        requested_at = await self.abort_registry.read(conversation_id)
        return requested_at is not None and requested_at > prompted_at

    async def _title(self, conversation: Conversation, aborted: asyncio.Event) -> AsyncGenerator[MessageUpdate, None]:
        title_task = asyncio.create_task(self._first_title(conversation))
        abort_task = asyncio.create_task(aborted.wait())
        try:
            await asyncio.wait({title_task, abort_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            title_task.cancel()
            abort_task.cancel()
            await asyncio.gather(title_task, abort_task, return_exceptions=True)

        if title_task.cancelled():
            logger.debug(f"Title generation cancelled for conversation {conversation.id}")
            return
        if title_task.exception() is not None:
            logger.error(f"Title generation failed for conversation {conversation.id}: {title_task.exception()}")
            return
        title = title_task.result()
        if title is not None:
            yield title

    async def _first_title(self, conversation: Conversation) -> TitleUpdate | None:
        async with aclosing(generate_title_for_conversation(conversation, self.title_llm)) as updates:
            async for update in updates:
                if isinstance(update, TitleUpdate):
                    return update
        return None

    async def _heartbeat(self, *stops: asyncio.Event) -> AsyncGenerator[MessageUpdate, None]:
        """Keepalives until any of 'stops' is set."""
        while not any(stop.is_set() for stop in stops):
            waiters = [asyncio.create_task(stop.wait()) for stop in stops]
            try:
                stopped, _ = await asyncio.wait(
                    waiters, timeout=self.keep_alive_interval, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                for waiter in waiters:
                    waiter.cancel()
            if not stopped:
                yield StatusUpdate(status=MessageUpdateStatus.KEEP_ALIVE)
