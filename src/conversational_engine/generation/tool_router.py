"""
Routing of tool invocations to external tool servers.

Two paths are supported, checked in this order by the orchestrator:

1. Inline commands. A user message such as

       /mcp weather.forecast {"city": "Zurich"}
       weather.forecast {"city": "Zurich"}

   is executed directly, without calling the model. Without the '/mcp' prefix
   a message only counts as a command when its server part names a configured
   server or when it carries a JSON argument blob, so ordinary text such as
   "see example.com" is left alone.

2. Model-issued calls. One non-streaming completion is made with the function
   schemas of every configured server. If the model picks a function it is
   resolved through the precomputed name mapping, invoked, and a single
   follow-up completion (offered no tools) turns the result into the answer.

At most one tool round trip happens per turn. Every failure (unknown server or
function, malformed arguments, failing server) ends in a user-visible final
answer describing it; nothing is raised to the caller.
"""

import json
import re
from collections.abc import AsyncGenerator
from typing import Any

from loguru import logger
from pydantic import BaseModel

from conversational_engine.exceptions import ArgumentParseError, ToolMappingError
from conversational_engine.generation.updates import (
    FinalAnswerUpdate,
    MessageUpdate,
    ToolCallData,
    ToolCallUpdate,
    ToolErrorUpdate,
    ToolEtaUpdate,
    ToolOutput,
    ToolResult,
    ToolResultUpdate,
)
from conversational_engine.llms.base import LLM, LLMMessage, Roles, ToolCall
from conversational_engine.tools.base import ToolDescription, ToolServerRegistry, ToolTarget, build_tool_mapping
from conversational_engine.utils.database import generate_uid

INLINE_COMMAND_PATTERN = re.compile(
    r"^(?P<prefix>/mcp\s+)?(?P<server>[a-z0-9_-]+)\.(?P<tool>[a-zA-Z0-9._-]+)(?:\s+(?P<args>[\s\S]*))?$",
    re.IGNORECASE,
)

SYNTHESIS_PREPROMPT = "You are a helpful assistant. Use the provided tool results as the sole source of truth."
DEFAULT_TOOL_ETA_SECONDS = 10


class InlineCommand(BaseModel):
    server: str
    tool: str
    raw_args: str = ""


def parse_arguments(raw: str | None) -> dict[str, Any]:
    """Decode JSON tool arguments. Empty input means no arguments."""
    if not raw or not raw.strip():
        return {}
    try:
        args = json.loads(raw)
    except ValueError as e:
        raise ArgumentParseError(str(e)) from e
    if not isinstance(args, dict):
        raise ArgumentParseError("arguments must be a JSON object")
    return args


def primitive_parameters(args: dict[str, Any]) -> dict[str, str | int | float | bool]:
    """The flat, client-displayable part of a tool's arguments."""
    return {key: value for key, value in args.items() if isinstance(value, (str, int, float, bool))}


class ToolCallRouter:
    """
    Detects and executes tool calls for one engine instance.

    Attributes:
        registry: Access to the tool servers.
        llm: Model used for tool selection and result synthesis.
        eta_seconds: Rough duration hint sent to clients in the 'Tool.ETA' event.
    """

    def __init__(self, registry: ToolServerRegistry, llm: LLM, eta_seconds: int = DEFAULT_TOOL_ETA_SECONDS) -> None:
        self.registry = registry
        self.llm = llm
        self.eta_seconds = eta_seconds
        self._descriptions: list[ToolDescription] | None = None
        self._mapping: dict[str, ToolTarget] = {}

    async def load_tools(self, refresh: bool = False) -> tuple[list[ToolDescription], dict[str, ToolTarget]]:
        """Function descriptors and name mapping, listed once and cached."""
        if self._descriptions is None or refresh:
            self._descriptions, self._mapping = await build_tool_mapping(self.registry)
            logger.info(f"Loaded {len(self._descriptions)} tool(s) from {len(self.registry.list_servers())} server(s)")
        return self._descriptions, self._mapping

    def match_inline(self, content: str) -> InlineCommand | None:
        match = INLINE_COMMAND_PATTERN.match(content.strip())
        if match is None:
            return None
        raw_args = (match["args"] or "").strip()
        is_command = (
            match["prefix"] is not None
            or match["server"] in self.registry.list_servers()
            or raw_args.startswith(("{", "["))
        )
        if not is_command:
            return None
        return InlineCommand(server=match["server"], tool=match["tool"], raw_args=raw_args)

    async def run_inline(self, command: InlineCommand) -> AsyncGenerator[MessageUpdate, None]:
        try:
            args = parse_arguments(command.raw_args)
            await self._resolve_inline(command)
        except (ArgumentParseError, ToolMappingError) as e:
            logger.info(f"Rejected inline tool command {command.server}.{command.tool}: {e}")
            yield FinalAnswerUpdate(text=_describe_failure(e))
            return

        name = f"{command.server}.{command.tool}"
        async for update in self._invoke(name, ToolTarget(server=command.server, tool=command.tool), args):
            yield update
            if isinstance(update, ToolResultUpdate):
                yield FinalAnswerUpdate(text=update.result.outputs[0].content)

    async def _resolve_inline(self, command: InlineCommand) -> None:
        if command.server not in self.registry.list_servers():
            raise ToolMappingError(f"Unknown tool server: {command.server}")
        target = ToolTarget(server=command.server, tool=command.tool)
        _, mapping = await self.load_tools()
        if target in mapping.values():
            return
        # The cached listing may predate the tool, or the server failed to list last time.
        logger.debug(f"Tool {command.server}.{command.tool} not in cached listing, refreshing")
        _, mapping = await self.load_tools(refresh=True)
        if target not in mapping.values():
            raise ToolMappingError(f"Unknown tool '{command.tool}' on server '{command.server}'")

    async def select_tool_call(self, conversation: list[LLMMessage]) -> ToolCall | None:
        """Ask the model once whether it wants a tool. None means: stream normally."""
        descriptions, _ = await self.load_tools()
        if not descriptions:
            return None
        try:
            response = await self.llm.generate(conversation, tools=descriptions)
        except Exception as e:
            logger.warning(f"Tool selection failed, falling back to normal generation: {e}")
            return None
        if not response.tool_calls:
            return None
        if len(response.tool_calls) > 1:
            logger.debug(f"Model requested {len(response.tool_calls)} tool calls, only the first is executed")
        return response.tool_calls[0]

    async def run_tool_call(self, call: ToolCall, question: str) -> AsyncGenerator[MessageUpdate, None]:
        """Execute a model-issued call and yield Call, ETA, Result or Error, then one FinalAnswer."""
        _, mapping = await self.load_tools()
        name = call.function.name
        try:
            args = parse_arguments(call.function.arguments)
            target = mapping.get(name)
            if target is None:
                raise ToolMappingError(f"Unknown tool function: {name}")
        except (ArgumentParseError, ToolMappingError) as e:
            uuid = generate_uid()
            yield ToolCallUpdate(uuid=uuid, call=ToolCallData(name=name))
            yield ToolEtaUpdate(uuid=uuid, eta=self.eta_seconds)
            yield ToolErrorUpdate(uuid=uuid, message=str(e))
            yield FinalAnswerUpdate(text=_describe_failure(e))
            return

        async for update in self._invoke(name, target, args):
            yield update
            if isinstance(update, ToolResultUpdate):
                yield FinalAnswerUpdate(text=await self._synthesize(question, update.result.outputs[0].content))

    async def _invoke(
        self, name: str, target: ToolTarget, args: dict[str, Any]
    ) -> AsyncGenerator[MessageUpdate, None]:
        """Yield Call and ETA, then Result on success or Error plus a failure FinalAnswer."""
        uuid = generate_uid()
        yield ToolCallUpdate(uuid=uuid, call=ToolCallData(name=name, parameters=primitive_parameters(args)))
        yield ToolEtaUpdate(uuid=uuid, eta=self.eta_seconds)
        logger.info(f"Invoking tool {target.tool} on server {target.server}")
        try:
            output = await self.registry.invoke(target.server, target.tool, args)
        except Exception as e:
            logger.error(f"Tool {target.server}.{target.tool} failed: {e}")
            yield ToolErrorUpdate(uuid=uuid, message=str(e))
            yield FinalAnswerUpdate(text=f"Tool error: {e}")
            return
        yield ToolResultUpdate(uuid=uuid, result=ToolResult(status="success", outputs=[ToolOutput(content=output)]))

    async def _synthesize(self, question: str, output: str) -> str:
        try:
            response = await self.llm.generate(
                [
                    LLMMessage(role=Roles.SYSTEM, content=SYNTHESIS_PREPROMPT),
                    LLMMessage(
                        role=Roles.USER,
                        content=(
                            f"Question: {question}\n\nTool results:\n{output}\n\n"
                            "Using only the tool results above, answer the question concisely. "
                            "If uncertain, say you don't know."
                        ),
                    ),
                ]
            )
        except Exception as e:
            logger.warning(f"Tool result synthesis failed, answering with the raw tool output: {e}")
            return output
        return response.content or output


def _describe_failure(error: Exception) -> str:
    if isinstance(error, ArgumentParseError):
        return f"Invalid JSON args: {error}"
    return str(error)
