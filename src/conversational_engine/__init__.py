"""
Generation orchestration and message trees for chat assistants.

A turn is driven through the controller facade:

    from conversational_engine import ConversationalEngineController, EngineSettings

The building blocks are importable on their own for custom wiring:

    from conversational_engine import (
        GenerationOrchestrator, StreamProtocolEncoder, MessageTree,
        ReasoningExtractor, ToolCallRouter, InMemoryAbortRegistry, SkillRegistry,
    )
"""

from conversational_engine.config import EngineSettings, ModelConfig
from conversational_engine.controller import ConversationalEngineController, ConversationInput, MessageInput
from conversational_engine.conversation_database.abort import AbortRegistry, InMemoryAbortRegistry
from conversational_engine.conversation_database.in_memory import InMemoryConversationDatabase
from conversational_engine.conversation_database.tree import MessageTree
from conversational_engine.generation.encoder import StreamProtocolEncoder
from conversational_engine.generation.orchestrator import GenerationOrchestrator
from conversational_engine.generation.reasoning import ReasoningExtractor
from conversational_engine.generation.tool_router import ToolCallRouter
from conversational_engine.skills.registry import SkillRegistry

__all__ = [
    "AbortRegistry",
    "ConversationInput",
    "ConversationalEngineController",
    "EngineSettings",
    "GenerationOrchestrator",
    "InMemoryAbortRegistry",
    "InMemoryConversationDatabase",
    "MessageInput",
    "MessageTree",
    "ModelConfig",
    "ReasoningExtractor",
    "SkillRegistry",
    "StreamProtocolEncoder",
    "ToolCallRouter",
]
