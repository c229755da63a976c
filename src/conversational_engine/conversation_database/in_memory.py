"""
In-memory conversation storage.

Stores deep copies so that a running turn mutating its own 'Conversation'
object never leaks into the stored state between persistence checkpoints.
"""

import asyncio

from conversational_engine.conversation_database.data_models.conversation import Conversation, ConversationDatabase
from conversational_engine.conversation_database.data_models.message import Message
from conversational_engine.exceptions import ReferenceNotFoundError
from conversational_engine.utils.time import get_current_timestamp


class InMemoryConversationDatabase(ConversationDatabase):
    def __init__(self) -> None:
        self.conversations: dict[str, Conversation] = {}
        self._lock = asyncio.Lock()

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        async with self._lock:
            self.conversations[conversation.id] = conversation.model_copy(deep=True)
        return conversation

    async def get_conversation_by_id(self, conversation_id: str) -> Conversation:
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            raise ReferenceNotFoundError(f"Conversation with id {conversation_id} not found")
        return conversation.model_copy(deep=True)

    async def update_messages(
        self, conversation_id: str, messages: list[Message], title: str | None = None
    ) -> None:
        async with self._lock:
            conversation = self.conversations.get(conversation_id)
            if conversation is None:
                raise ReferenceNotFoundError(f"Conversation with id {conversation_id} not found")
            update = {
                "messages": [message.model_copy(deep=True) for message in messages],
                "update_timestamp": get_current_timestamp(),
            }
            if title is not None:
                update["title"] = title
            self.conversations[conversation_id] = conversation.model_copy(update=update)

    async def delete_conversation(self, conversation_id: str) -> bool:
        async with self._lock:
            return self.conversations.pop(conversation_id, None) is not None
