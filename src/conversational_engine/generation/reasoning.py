"""
Separation of model "thinking" from the user-visible answer.

'ReasoningExtractor' is a small state machine fed with every streamed
'TokenChunk' of a turn. It turns each chunk into 'Stream' (answer) or
'Reasoning.Stream' events according to the model's reasoning strategy:

    tokens     Reasoning is delimited by begin / end markers in the raw text.
               Text after the end marker in the same chunk is answer text again.
    regex      Everything streamed is reasoning; at the end the configured
               pattern extracts the final answer from it (group 1).
    summarize  Everything streamed is reasoning; at the end an auxiliary LLM
               call condenses it into the final answer.

Reasoning delivered on a provider side channel ('TokenChunk.reasoning') is
always streamed as reasoning, whatever the strategy. Markers split across two
chunks are not recognised.

While reasoning, short progress summaries can be requested from the auxiliary
LLM every 'summary_interval' seconds. They run in the background and surface as
'Reasoning.Status' on the next token; failures are logged and ignored.
"""

import asyncio
import re
import time
from collections.abc import AsyncGenerator, Callable
from textwrap import dedent

from loguru import logger

from conversational_engine.config import ReasoningConfig, RegexReasoning, SummarizeReasoning, TokensReasoning
from conversational_engine.generation.updates import (
    MessageUpdate,
    ReasoningStatusUpdate,
    ReasoningStreamUpdate,
    StreamUpdate,
)
from conversational_engine.llms.base import LLM, LLMMessage, Roles, TokenChunk

SUMMARIZE_PREPROMPT = dedent("""
    Your task is to summarize concisely all your reasoning steps and then give the final answer. Keep it short, one short paragraph at most. If the reasoning steps explicitly include a code solution, make sure to include it in your answer.

    If the user is just having a casual conversation that doesn't require explanations, answer directly without explaining your steps, otherwise summarize step by step, skipping dead-ends and excess detail.

    Do not use prefixes such as Response: or Answer: when answering to the user.
""").strip()

PROGRESS_PREPROMPT = (
    "You summarize the latest step of an ongoing reasoning process for a progress indicator. "
    "Answer with at most eight words, in the present tense, without a final period."
)


class ReasoningExtractor:
    """
    Per-turn reasoning state machine.

    Attributes:
        config: The model's reasoning strategy, or None for plain models.
        reasoning: Whether the stream is currently inside reasoning.
        reasoning_text: Everything routed to reasoning so far.
        answer_text: Everything routed to the answer so far.
        final_answer: Set by 'finish'.
    """

    def __init__(
        self,
        config: ReasoningConfig | None,
        llm: LLM | None = None,
        summarize_progress: bool = False,
        summary_interval: float = 4.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.llm = llm
        self.summarize_progress = summarize_progress and llm is not None
        self.summary_interval = summary_interval
        self._clock = clock
        self.reasoning = False
        self.reasoning_text = ""
        self.answer_text = ""
        self.final_answer = ""
        self._started_at = clock()
        self._last_summary_at = self._started_at
        self._pending_status: str | None = None
        self._summary_task: asyncio.Task[None] | None = None

    def start(self) -> list[MessageUpdate]:
        """Events to emit before the first token."""
        starts_in_reasoning = isinstance(self.config, (RegexReasoning, SummarizeReasoning)) or (
            isinstance(self.config, TokensReasoning) and self.config.begin_token == ""
        )
        if not starts_in_reasoning:
            return []
        self.reasoning = True
        return [ReasoningStatusUpdate(status="Started reasoning...")]

    def feed(self, chunk: TokenChunk) -> list[MessageUpdate]:
        updates: list[MessageUpdate] = []
        if chunk.reasoning:
            self.reasoning_text += chunk.reasoning
            updates.append(ReasoningStreamUpdate(token=chunk.reasoning))
        if chunk.special or not chunk.text:
            return updates

        if isinstance(self.config, TokensReasoning):
            updates.extend(self._split_on_markers(chunk.text, self.config))
        elif self.reasoning:
            updates.extend(self._reason(chunk.text))
        else:
            updates.append(self._answer(chunk.text))
        return updates

    def _split_on_markers(self, text: str, config: TokensReasoning) -> list[MessageUpdate]:
        updates: list[MessageUpdate] = []
        while text:
            if self.reasoning:
                end = text.find(config.end_token)
                if end == -1:
                    updates.extend(self._reason(text))
                    break
                if end > 0:
                    updates.extend(self._reason(text[:end]))
                self.reasoning = False
                updates.append(ReasoningStatusUpdate(status=self._done_status()))
                text = text[end + len(config.end_token) :]
            else:
                begin = text.find(config.begin_token) if config.begin_token else -1
                if begin == -1:
                    updates.append(self._answer(text))
                    break
                if begin > 0:
                    updates.append(self._answer(text[:begin]))
                self.reasoning = True
                text = text[begin + len(config.begin_token) :]
        return updates

    def _answer(self, text: str) -> MessageUpdate:
        self.answer_text += text
        return StreamUpdate(token=text)

    def _reason(self, text: str) -> list[MessageUpdate]:
        updates: list[MessageUpdate] = []
        self.reasoning_text += text
        if self._pending_status:
            updates.append(ReasoningStatusUpdate(status=self._pending_status))
            self._pending_status = None
        self._maybe_request_progress_summary()
        updates.append(ReasoningStreamUpdate(token=text))
        return updates

    def _maybe_request_progress_summary(self) -> None:
        if not self.summarize_progress:
            return
        if self._summary_task is not None and not self._summary_task.done():
            return
        if self._clock() - self._last_summary_at < self.summary_interval:
            return
        self._last_summary_at = self._clock()
        self._summary_task = asyncio.create_task(self._summarize_progress(self.reasoning_text))

    async def _summarize_progress(self, reasoning: str) -> None:
        if self.llm is None:
            return
        try:
            summary = await self.llm.generate(
                [
                    LLMMessage(role=Roles.SYSTEM, content=PROGRESS_PREPROMPT),
                    LLMMessage(role=Roles.USER, content=reasoning[-4000:]),
                ]
            )
        except Exception as e:
            logger.error(f"Reasoning progress summary failed: {e}")
            return
        if summary.content.strip():
            self._pending_status = summary.content.strip()

    def _done_status(self) -> str:
        return f"Done in {round(self._clock() - self._started_at)}s."

    async def finish(self, raw_text: str, question: str, interrupted: bool = False) -> AsyncGenerator[MessageUpdate, None]:
        """Compute 'final_answer' and yield the closing reasoning events.

        'raw_text' is all answer-channel text the provider sent, used as the
        fallback answer by the regex and summarize strategies. An interrupted
        turn makes no auxiliary call and never falls back to 'raw_text', which
        was already streamed as reasoning; its answer is the streamed answer text.
        """
        self.close()
        match self.config:
            case None | TokensReasoning():
                self.final_answer = self.answer_text
            case RegexReasoning(regex=pattern):
                found = re.search(pattern, self.reasoning_text)
                if found and found.groups():
                    self.final_answer = found.group(1)
                else:
                    self.final_answer = self.answer_text if interrupted else raw_text
            case SummarizeReasoning():
                if interrupted:
                    self.final_answer = self.answer_text
                    return
                if self.llm is None:
                    self.final_answer = raw_text
                    return
                yield ReasoningStatusUpdate(status="Summarizing reasoning...")
                try:
                    summary = await self.llm.generate(
                        [
                            LLMMessage(role=Roles.SYSTEM, content=SUMMARIZE_PREPROMPT),
                            LLMMessage(
                                role=Roles.USER,
                                content=f"Question: {question}\n\nReasoning: {self.reasoning_text}",
                            ),
                        ]
                    )
                except Exception as e:
                    logger.error(f"Reasoning summarization failed, using raw output: {e}")
                    self.final_answer = raw_text
                    return
                self.final_answer = summary.content
                yield ReasoningStatusUpdate(status=self._done_status())

    def close(self) -> None:
        if self._summary_task is not None and not self._summary_task.done():
            self._summary_task.cancel()
        self._summary_task = None
