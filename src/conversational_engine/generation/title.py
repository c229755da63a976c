"""
Best-effort conversation title generation.

Runs alongside the main generation of a turn. Only conversations that still
carry the default title get one, based on their first user message. Any failure
is logged and swallowed: a missing title never fails a turn.
"""

import re
from collections.abc import AsyncGenerator

from loguru import logger

from conversational_engine.conversation_database.data_models.conversation import (
    DEFAULT_CONVERSATION_TITLE,
    Conversation,
)
from conversational_engine.generation.updates import MessageUpdate, TitleUpdate
from conversational_engine.llms.base import LLM, LLMMessage, Roles

TITLE_PREPROMPT = (
    "You are a summarization AI. Summarize the user's request into a single short sentence of four words or less. "
    "Do not try to answer it, only summarize the user's query. "
    "Always start your answer with an emoji relevant to the summary."
)
MAX_TITLE_LENGTH = 100

_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE)
_THINK_TAG = re.compile(r"</?think>", re.IGNORECASE)


def sanitize_title(title: str) -> str:
    """Drop reasoning blocks and stray think tags, surrounding quotes and excess length."""
    title = _THINK_BLOCK.sub("", title)
    title = _THINK_TAG.sub("", title).strip().strip('"').strip()
    return title[:MAX_TITLE_LENGTH]


async def generate_title_for_conversation(
    conversation: Conversation, llm: LLM
) -> AsyncGenerator[MessageUpdate, None]:
    if conversation.title != DEFAULT_CONVERSATION_TITLE:
        return
    first_user_message = next(
        (message for message in conversation.messages if message.role == Roles.USER and message.content.strip()),
        None,
    )
    if first_user_message is None:
        return

    try:
        response = await llm.generate(
            [
                LLMMessage(role=Roles.SYSTEM, content=TITLE_PREPROMPT),
                LLMMessage(role=Roles.USER, content=first_user_message.content),
            ]
        )
    except Exception as e:
        logger.error(f"Title generation failed for conversation {conversation.id}: {e}")
        return

    title = sanitize_title(response.content)
    if title:
        logger.debug(f"Generated title for conversation {conversation.id}: {title!r}")
        yield TitleUpdate(title=title)
