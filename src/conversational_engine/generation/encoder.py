"""
Wire encoding and persistence of a turn's updates.

'StreamProtocolEncoder' sits between the orchestrator and the client. For every
update it:

    1. applies the update to the target message (and the conversation title),
    2. writes one compact JSON line to the wire,
    3. persists the conversation at the checkpoints below.

Checkpoints: before the first update, after every 'Title' update, and once more
when the stream ends for any reason (completion, error, client disconnect or
task cancellation), so partial content is never lost.

After the 'FinalAnswer' line a flush boundary is written: an empty line, or with
'legacy_padding' 4096 spaces. Legacy padding also NUL-pads stream tokens to 16
characters, which older clients rely on to defeat proxy buffering.
"""

import asyncio
import json
from collections.abc import AsyncGenerator, AsyncIterator
from typing import assert_never

from loguru import logger

from conversational_engine.conversation_database.data_models.conversation import Conversation, ConversationDatabase
from conversational_engine.conversation_database.data_models.message import Message, MessageFile
from conversational_engine.generation.title import sanitize_title
from conversational_engine.generation.updates import (
    FileUpdate,
    FinalAnswerUpdate,
    MessageUpdate,
    MessageUpdateStatus,
    ReasoningStatusUpdate,
    ReasoningStreamUpdate,
    StatusUpdate,
    StreamUpdate,
    TitleUpdate,
    ToolCallUpdate,
    ToolErrorUpdate,
    ToolEtaUpdate,
    ToolResultUpdate,
    is_keep_alive,
    is_terminal,
)
from conversational_engine.utils.time import get_current_timestamp

LEGACY_TOKEN_LENGTH = 16
LEGACY_FLUSH_PADDING = 4096


class StreamProtocolEncoder:
    """
    Encodes and persists the updates of one turn.

    Attributes:
        conversation_db: Persistence backend used at the checkpoints.
        conversation: The conversation being generated, mutated in place.
        message: The assistant message receiving the updates.
        legacy_padding: Pad tokens and the flush boundary for older clients.
    """

    def __init__(
        self,
        conversation_db: ConversationDatabase,
        conversation: Conversation,
        message: Message,
        legacy_padding: bool = False,
    ) -> None:
        self.conversation_db = conversation_db
        self.conversation = conversation
        self.message = message
        self.legacy_padding = legacy_padding
        self.initial_content = message.content

    def apply(self, update: MessageUpdate) -> None:
        """Reflect 'update' on the target message and conversation."""
        match update:
            case StreamUpdate(token=token):
                self.message.content += token
            case ReasoningStreamUpdate(token=token):
                self.message.reasoning = (self.message.reasoning or "") + token
            case TitleUpdate(title=title):
                self.conversation.title = sanitize_title(title) or self.conversation.title
            case FinalAnswerUpdate(text=text, interrupted=interrupted):
                self.message.content = self.initial_content + text
                self.message.interrupted = interrupted
            case FileUpdate(name=name, hash=file_hash, mime=mime):
                self.message.files.append(MessageFile(type="hash", name=name, value=file_hash, mime=mime))
            case (
                StatusUpdate()
                | ReasoningStatusUpdate()
                | ToolCallUpdate()
                | ToolEtaUpdate()
                | ToolResultUpdate()
                | ToolErrorUpdate()
            ):
                pass
            case _:
                assert_never(update)

        if not isinstance(update, (StreamUpdate, ReasoningStreamUpdate)) and not is_keep_alive(update):
            self.message.updates.append(update)
        self.message.update_timestamp = get_current_timestamp()

    def encode(self, update: MessageUpdate) -> str:
        record = update.model_dump(mode="json", exclude_none=True)
        if self.legacy_padding and isinstance(update, StreamUpdate):
            record["token"] = update.token.ljust(LEGACY_TOKEN_LENGTH, "\0")
        return json.dumps(record, separators=(",", ":"), ensure_ascii=False) + "\n"

    def flush_boundary(self) -> str:
        if self.legacy_padding:
            return " " * LEGACY_FLUSH_PADDING + "\n"
        return "\n"

    async def persist(self) -> None:
        await self.conversation_db.update_messages(
            self.conversation.id, self.conversation.messages, title=self.conversation.title
        )

    async def stream(self, updates: AsyncIterator[MessageUpdate]) -> AsyncGenerator[str, None]:
        """Consume 'updates' and yield the wire lines."""
        await self.persist()
        terminated = False
        try:
            async for update in updates:
                if isinstance(update, StreamUpdate) and not update.token:
                    continue
                self.apply(update)
                yield self.encode(update)
                if isinstance(update, TitleUpdate):
                    await self._persist_title()
                if isinstance(update, FinalAnswerUpdate):
                    yield self.flush_boundary()
                terminated = terminated or is_terminal(update)

            if not terminated:
                finished = StatusUpdate(status=MessageUpdateStatus.FINISHED)
                self.apply(finished)
                yield self.encode(finished)
        finally:
            aclose = getattr(updates, "aclose", None)
            if aclose is not None:
                await aclose()
            # Must complete even while the request task is being cancelled.
            await asyncio.shield(self.persist())
            logger.debug(
                f"Persisted message {self.message.id} of conversation {self.conversation.id} "
                f"({len(self.message.content)} chars, interrupted={self.message.interrupted})"
            )

    async def _persist_title(self) -> None:
        try:
            await self.persist()
        except Exception as e:
            logger.error(f"Could not persist title of conversation {self.conversation.id}: {e}")
