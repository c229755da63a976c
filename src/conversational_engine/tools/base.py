"""
Tool abstractions for LLM function calling.

Tools are executed on external tool servers. A 'ToolServerRegistry' knows the
configured servers, lists the tools each one exposes ('ToolSpec') and invokes
them. 'build_tool_mapping' turns the listing into the OpenAI function-calling
descriptors handed to the model, together with the precomputed mapping from a
function name back to its '(server, tool)' pair.

'Tool' is the in-process building block: 'LocalToolServerRegistry' groups
'Tool' instances under server names so tools can be served without a network
hop. 'HttpToolServerRegistry' talks to remote servers.
"""

import re
from abc import ABC, abstractmethod
from typing import Any, TypedDict, Literal

from loguru import logger
from pydantic import BaseModel, Field


class FunctionDescription(TypedDict):
    """JSON schema fragment describing a callable function for the LLM API."""

    name: str
    description: str
    parameters: dict[str, Any]


class ToolDescription(TypedDict):
    """Full tool descriptor in the format expected by OpenAI-compatible APIs."""

    type: Literal["function"]
    function: FunctionDescription


class ToolSpec(BaseModel):
    """A tool as advertised by a tool server."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


class ToolTarget(BaseModel):
    """The server / tool pair a model-facing function name resolves to."""

    server: str
    tool: str


class Tool(ABC):
    """
    Abstract base class for in-process tools.

    Subclasses declare 'name', 'description', and 'parameters' as class
    attributes so that 'spec()' can describe the tool without any additional
    configuration.
    """

    name: str
    description: str
    parameters: dict[str, Any]

    @abstractmethod
    async def call(self, args: dict[str, Any]) -> dict[str, Any] | str:
        """Execute the tool with the given arguments and return its output."""
        pass

    def spec(self) -> ToolSpec:
        return ToolSpec(name=self.name, description=self.description, input_schema=self.parameters)


class ToolServerRegistry(ABC):
    """Abstract access to the configured tool servers."""

    @abstractmethod
    def list_servers(self) -> list[str]:
        """Names of all configured servers."""
        pass

    @abstractmethod
    async def list_tools(self, server: str) -> list[ToolSpec]:
        """Tools exposed by 'server'. Raises 'ToolMappingError' for unknown servers."""
        pass

    @abstractmethod
    async def invoke(self, server: str, tool: str, args: dict[str, Any]) -> str:
        """Run 'tool' on 'server' and return its textual output.

        Raises 'ToolInvocationError' when the server reports a failure.
        """
        pass


_FUNCTION_NAME_PATTERN = re.compile(r"[^a-zA-Z0-9_-]")
MAX_FUNCTION_NAME_LENGTH = 64


def function_name_for(server: str, tool: str) -> str:
    """Model-facing function name for a server tool ('server__tool', API-safe)."""
    name = _FUNCTION_NAME_PATTERN.sub("_", f"{server}__{tool}")
    return name[:MAX_FUNCTION_NAME_LENGTH]


def tool_description(name: str, spec: ToolSpec) -> ToolDescription:
    """Return the tool descriptor in OpenAI function-calling format."""
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": spec.description,
            "parameters": spec.input_schema,
        },
    }


async def build_tool_mapping(
    registry: ToolServerRegistry,
) -> tuple[list[ToolDescription], dict[str, ToolTarget]]:
    """List every server's tools and return the descriptors plus the name mapping.

    A server that fails to list its tools is skipped; the remaining servers stay
    usable. When two tools sanitize to the same function name the first one wins.
    """
    descriptions: list[ToolDescription] = []
    mapping: dict[str, ToolTarget] = {}
    for server in registry.list_servers():
        try:
            specs = await registry.list_tools(server)
        except Exception as e:
            logger.warning(f"Could not list tools of server '{server}': {e}")
            continue
        for spec in specs:
            name = function_name_for(server, spec.name)
            if name in mapping:
                logger.warning(f"Duplicate tool function name '{name}', keeping {mapping[name]}")
                continue
            mapping[name] = ToolTarget(server=server, tool=spec.name)
            descriptions.append(tool_description(name, spec))
    return descriptions, mapping
