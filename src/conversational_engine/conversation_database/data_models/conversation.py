"""
Conversation data model and storage interface.

A conversation owns its whole message tree. The 'ConversationDatabase' ABC is
the pluggable storage backend; the engine only needs to load a conversation and
to replace its message list (optionally with a new title) at the persistence
checkpoints of a turn. 'InMemoryConversationDatabase' is the bundled
implementation; other backends are interchangeable at construction time.
"""

from abc import ABC, abstractmethod

from pydantic import BaseModel, Field

from conversational_engine.conversation_database.data_models.message import Message

DEFAULT_CONVERSATION_TITLE = "New Chat"


class Conversation(BaseModel):
    """A conversation and its message tree."""

    id: str
    model: str
    title: str = DEFAULT_CONVERSATION_TITLE
    preprompt: str | None = None
    root_message_id: str | None = None
    messages: list[Message] = Field(default_factory=list)
    create_timestamp: int
    update_timestamp: int

    def get_message(self, message_id: str) -> Message | None:
        return next((message for message in self.messages if message.id == message_id), None)


class ConversationDatabase(ABC):
    """Abstract repository for 'Conversation' records."""

    @abstractmethod
    async def create_conversation(self, conversation: Conversation) -> Conversation:
        pass

    @abstractmethod
    async def get_conversation_by_id(self, conversation_id: str) -> Conversation:
        """Raise 'ReferenceNotFoundError' when the conversation does not exist."""
        pass

    @abstractmethod
    async def update_messages(
        self, conversation_id: str, messages: list[Message], title: str | None = None
    ) -> None:
        """Replace the stored message list, and the title when one is given."""
        pass

    @abstractmethod
    async def delete_conversation(self, conversation_id: str) -> bool:
        pass
