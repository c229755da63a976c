"""
Engine configuration.

Everything is expressed as pydantic models so it can be validated once at
startup. 'EngineSettings.from_env()' reads the process environment:

    OPENAI_API_KEY       API key for the OpenAI-compatible endpoint.
    OPENAI_BASE_URL      Base URL of that endpoint (default: OpenAI).
    MODELS               JSON list of 'ModelConfig' objects.
    MCP_SERVERS          JSON list of 'ToolServerConfig' objects ('[]' disables tools).
    REASONING_SUMMARY    'true' to request periodic reasoning progress summaries.
    ABORT_TTL_SECONDS    Lifetime of a stop-generating request (default 30).
    KEEP_ALIVE_INTERVAL  Seconds between heartbeat events (default 0.1).
    LEGACY_PADDING       'true' to pad stream tokens / flush with spaces for old clients.
    ENABLE_SKILLS        'true' to add skill instructions to the system prompt.
    SKILLS_PATH          Directory of '<skill id>/SKILL.md' files (default ./skills).
    ENABLED_SKILLS       Comma-separated skill ids offered to the model (default: all).
"""

import json
import os
from typing import Annotated, Literal, Union

from loguru import logger
from pydantic import BaseModel, Field, TypeAdapter

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_SKILLS_PATH = "skills"


class TokensReasoning(BaseModel):
    """Reasoning delimited by markers in the raw stream. An empty 'begin_token' means reasoning from the start."""

    type: Literal["tokens"] = "tokens"
    begin_token: str = "<think>"
    end_token: str = "</think>"


class RegexReasoning(BaseModel):
    """The whole stream is reasoning; group 1 of 'regex' extracts the final answer."""

    type: Literal["regex"] = "regex"
    regex: str


class SummarizeReasoning(BaseModel):
    """The whole stream is reasoning; an auxiliary call condenses it into the final answer."""

    type: Literal["summarize"] = "summarize"


ReasoningConfig = Annotated[
    Union[TokensReasoning, RegexReasoning, SummarizeReasoning],
    Field(discriminator="type"),
]


class GenerationParameters(BaseModel):
    temperature: float | None = None
    top_p: float | None = None
    max_new_tokens: int | None = None
    stop: list[str] = Field(default_factory=list)


class ModelConfig(BaseModel):
    """
    A model as exposed to conversations.

    Attributes:
        id: Identifier stored on the conversation and sent to the provider.
        name: Display name; defaults to 'id'.
        reasoning: Reasoning extraction strategy, or None for plain models.
        system_role_supported: When False the system prompt is sent as a user message.
    """

    id: str
    name: str | None = None
    parameters: GenerationParameters = Field(default_factory=GenerationParameters)
    reasoning: ReasoningConfig | None = None
    system_role_supported: bool = True

    @property
    def display_name(self) -> str:
        return self.name or self.id


class ToolServerConfig(BaseModel):
    name: str
    url: str
    headers: dict[str, str] = Field(default_factory=dict)


class EngineSettings(BaseModel):
    openai_api_key: str = ""
    openai_base_url: str = DEFAULT_OPENAI_BASE_URL
    models: list[ModelConfig] = Field(default_factory=list)
    tool_servers: list[ToolServerConfig] = Field(default_factory=list)
    reasoning_summary: bool = False
    abort_ttl_seconds: float = 30.0
    keep_alive_interval: float = 0.1
    legacy_padding: bool = False
    enable_skills: bool = False
    skills_path: str = DEFAULT_SKILLS_PATH
    enabled_skills: list[str] = Field(default_factory=list)

    def get_model(self, model_id: str) -> ModelConfig | None:
        return next((model for model in self.models if model.id == model_id), None)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "EngineSettings":
        env = os.environ if environ is None else environ
        return cls(
            openai_api_key=env.get("OPENAI_API_KEY", ""),
            openai_base_url=env.get("OPENAI_BASE_URL") or DEFAULT_OPENAI_BASE_URL,
            models=_parse_json_list(env.get("MODELS"), list[ModelConfig], "MODELS"),
            tool_servers=_parse_json_list(env.get("MCP_SERVERS"), list[ToolServerConfig], "MCP_SERVERS"),
            reasoning_summary=_parse_bool(env.get("REASONING_SUMMARY")),
            abort_ttl_seconds=float(env.get("ABORT_TTL_SECONDS", 30)),
            keep_alive_interval=float(env.get("KEEP_ALIVE_INTERVAL", 0.1)),
            legacy_padding=_parse_bool(env.get("LEGACY_PADDING")),
            enable_skills=_parse_bool(env.get("ENABLE_SKILLS")),
            skills_path=env.get("SKILLS_PATH") or DEFAULT_SKILLS_PATH,
            enabled_skills=[skill.strip() for skill in env.get("ENABLED_SKILLS", "").split(",") if skill.strip()],
        )


def _parse_bool(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def _parse_json_list(raw: str | None, type_: type, variable: str) -> list:
    if not raw or not raw.strip():
        return []
    try:
        return TypeAdapter(type_).validate_python(json.loads(raw))
    except (ValueError, TypeError) as e:
        logger.error(f"Ignoring invalid {variable} configuration: {e}")
        return []
