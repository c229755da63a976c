"""
Conversational engine controller (Facade).

'ConversationalEngineController' is the single entry point for application
logic. It loads conversations from the 'ConversationDatabase', applies the
message-tree mutation a request asks for, and wires a 'GenerationOrchestrator'
to a 'StreamProtocolEncoder' for the turn:

    new message   a user message below 'id' (or the end of the main line) plus
                  an empty assistant reply
    retry         user message + new content: an edited sibling of that user
                  message plus a reply; user message alone: another reply to it;
                  assistant message: a sibling reply to the same context
    continue      the assistant leaf 'id' is extended in place

All validation happens before the stream is returned, so 'ReferenceNotFoundError'
and 'InvalidOperationError' reach the caller as plain exceptions rather than
inside a half-sent stream. Turns of one conversation must be serialized by the
caller.
"""

import time
from collections.abc import AsyncGenerator, Callable

from loguru import logger
from pydantic import BaseModel, Field

from conversational_engine.config import EngineSettings, ModelConfig
from conversational_engine.conversation_database.abort import AbortRegistry
from conversational_engine.conversation_database.data_models.conversation import Conversation, ConversationDatabase
from conversational_engine.conversation_database.data_models.message import Message, MessageDraft, MessageFile
from conversational_engine.conversation_database.tree import MessageTree
from conversational_engine.exceptions import InvalidOperationError
from conversational_engine.generation.encoder import StreamProtocolEncoder
from conversational_engine.generation.orchestrator import GenerationOrchestrator
from conversational_engine.generation.tool_router import ToolCallRouter
from conversational_engine.llms.base import LLM, LLMMessage, Roles
from conversational_engine.llms.openai import OpenAILLM
from conversational_engine.skills.registry import SkillRegistry
from conversational_engine.tools.base import ToolServerRegistry
from conversational_engine.utils.database import generate_uid
from conversational_engine.utils.time import get_current_timestamp


class MessageInput(BaseModel):
    inputs: str | None = None
    id: str | None = None
    is_retry: bool = False
    is_continue: bool = False
    files: list[MessageFile] = Field(default_factory=list)


class ConversationInput(BaseModel):
    model: str
    preprompt: str | None = None


class PreparedTurn(BaseModel):
    """The outcome of the tree mutation for one request."""

    target_id: str
    context: list[Message]
    is_continue: bool = False


class ConversationalEngineController:
    def __init__(
        self,
        conversation_db: ConversationDatabase,
        abort_registry: AbortRegistry,
        settings: EngineSettings,
        tool_registry: ToolServerRegistry | None = None,
        llm_factory: Callable[[ModelConfig], LLM] | None = None,
        skill_registry: SkillRegistry | None = None,
    ):
        self.conversation_db = conversation_db
        self.abort_registry = abort_registry
        self.settings = settings
        self.tool_registry = tool_registry
        self.llm_factory = llm_factory or self._openai_llm
        if skill_registry is None and settings.enable_skills:
            skill_registry = SkillRegistry.from_directory(settings.skills_path, settings.enabled_skills or None)
        self.skill_registry = skill_registry
        self._orchestrators: dict[str, GenerationOrchestrator] = {}

    def _openai_llm(self, model: ModelConfig) -> LLM:
        return OpenAILLM(
            model_name=model.id,
            api_key=self.settings.openai_api_key,
            base_url=self.settings.openai_base_url,
            parameters=model.parameters,
        )

    def get_model(self, model_id: str) -> ModelConfig:
        model = self.settings.get_model(model_id)
        if model is None:
            raise InvalidOperationError(f"Unknown model: {model_id}")
        return model

    def get_orchestrator(self, model: ModelConfig) -> GenerationOrchestrator:
        if model.id not in self._orchestrators:
            llm = self.llm_factory(model)
            tool_router = ToolCallRouter(self.tool_registry, llm) if self.tool_registry is not None else None
            self._orchestrators[model.id] = GenerationOrchestrator(
                llm=llm,
                model=model,
                abort_registry=self.abort_registry,
                tool_router=tool_router,
                reasoning_summary=self.settings.reasoning_summary,
                keep_alive_interval=self.settings.keep_alive_interval,
                skill_registry=self.skill_registry,
            )
        return self._orchestrators[model.id]

    async def create_conversation(self, conversation_input: ConversationInput) -> Conversation:
        self.get_model(conversation_input.model)
        now = get_current_timestamp()
        conversation = Conversation(
            id=generate_uid(),
            model=conversation_input.model,
            preprompt=conversation_input.preprompt,
            create_timestamp=now,
            update_timestamp=now,
        )
        MessageTree(conversation).create_root(conversation_input.preprompt)
        logger.info(f"Created conversation {conversation.id} with model {conversation.model}")
        return await self.conversation_db.create_conversation(conversation)

    async def get_conversation_by_id(self, conversation_id: str) -> Conversation:
        return await self.conversation_db.get_conversation_by_id(conversation_id)

    async def delete_conversation(self, conversation_id: str) -> bool:
        return await self.conversation_db.delete_conversation(conversation_id)

    def _prepare_turn(self, tree: MessageTree, user_input: MessageInput) -> PreparedTurn:
        if user_input.is_continue:
            if user_input.id is None:
                raise InvalidOperationError("A message id is required to continue")
            message = tree.ensure_can_continue(user_input.id)
            if message.role != Roles.ASSISTANT:
                raise InvalidOperationError("Only assistant messages can be continued")
            return PreparedTurn(target_id=message.id, context=tree.subtree(message.id), is_continue=True)

        if user_input.is_retry:
            if user_input.id is None:
                raise InvalidOperationError("A message id is required to retry")
            message = tree.get(user_input.id)
            if message.role == Roles.USER and user_input.inputs is not None:
                user_id = tree.append_sibling(
                    message.id, MessageDraft(role=Roles.USER, content=user_input.inputs, files=user_input.files)
                )
                target_id = tree.append_child(user_id, MessageDraft(role=Roles.ASSISTANT))
                return PreparedTurn(target_id=target_id, context=tree.subtree(user_id))
            if message.role == Roles.USER:
                target_id = tree.append_child(message.id, MessageDraft(role=Roles.ASSISTANT))
                return PreparedTurn(target_id=target_id, context=tree.subtree(message.id))
            if message.role == Roles.ASSISTANT:
                target_id = tree.append_sibling(message.id, MessageDraft(role=Roles.ASSISTANT))
                return PreparedTurn(target_id=target_id, context=tree.subtree(message.id)[:-1])
            raise InvalidOperationError(f"Cannot retry a {message.role} message")

        if user_input.inputs is None:
            raise InvalidOperationError("A new message needs 'inputs'")
        user_id = tree.append_child(
            user_input.id, MessageDraft(role=Roles.USER, content=user_input.inputs, files=user_input.files)
        )
        target_id = tree.append_child(user_id, MessageDraft(role=Roles.ASSISTANT))
        return PreparedTurn(target_id=target_id, context=tree.subtree(user_id))

    async def _start_turn(
        self, conversation_id: str, user_input: MessageInput
    ) -> tuple[str, AsyncGenerator[str, None]]:
        conversation = await self.conversation_db.get_conversation_by_id(conversation_id)
        model = self.get_model(conversation.model)
        tree = MessageTree(conversation)
        turn = self._prepare_turn(tree, user_input)
        prompted_at = time.time()
        logger.info(
            f"Processing message for conversation {conversation_id} "
            f"(retry={user_input.is_retry}, continue={user_input.is_continue})"
        )

        updates = self.get_orchestrator(model).text_generation(
            conversation, turn.context, is_continue=turn.is_continue, prompted_at=prompted_at
        )
        encoder = StreamProtocolEncoder(
            self.conversation_db, conversation, tree.get(turn.target_id), legacy_padding=self.settings.legacy_padding
        )
        return turn.target_id, encoder.stream(updates)

    async def process_new_message_stream(
        self, conversation_id: str, user_input: MessageInput
    ) -> AsyncGenerator[str, None]:
        """Set up a turn and return its stream of wire lines.

        Raises 'ReferenceNotFoundError' / 'InvalidOperationError' before
        anything is streamed or stored.
        """
        _, stream = await self._start_turn(conversation_id, user_input)
        return stream

    async def process_new_message(self, conversation_id: str, user_input: MessageInput) -> Message:
        """Run a turn to completion and return the stored assistant message."""
        target_id, stream = await self._start_turn(conversation_id, user_input)
        async for _ in stream:
            pass
        conversation = await self.conversation_db.get_conversation_by_id(conversation_id)
        return MessageTree(conversation).get(target_id)

    async def stop_generating(self, conversation_id: str) -> None:
        await self.conversation_db.get_conversation_by_id(conversation_id)
        await self.abort_registry.touch(conversation_id)
        logger.info(f"Stop requested for conversation {conversation_id}")

    async def delete_message(self, conversation_id: str, message_id: str) -> list[str]:
        conversation = await self.conversation_db.get_conversation_by_id(conversation_id)
        removed = MessageTree(conversation).delete_message(message_id)
        await self.conversation_db.update_messages(conversation_id, conversation.messages)
        return removed

    async def get_prompt(self, conversation_id: str, message_id: str) -> list[LLMMessage]:
        """The model context that generating below 'message_id' would send."""
        conversation = await self.conversation_db.get_conversation_by_id(conversation_id)
        model = self.get_model(conversation.model)
        messages = MessageTree(conversation).subtree(message_id)
        return self.get_orchestrator(model).build_prompt(conversation, messages)
