"""
In-process tool server registry.

Groups 'Tool' instances under server names so that the router can treat them
exactly like remote tool servers. Handy for built-in tools and for tests.
"""

import json
from typing import Any

from conversational_engine.exceptions import ToolInvocationError, ToolMappingError
from conversational_engine.tools.base import Tool, ToolServerRegistry, ToolSpec


class LocalToolServerRegistry(ToolServerRegistry):
    def __init__(self, servers: dict[str, list[Tool]]) -> None:
        self.servers = {server: {tool.name: tool for tool in tools} for server, tools in servers.items()}

    def list_servers(self) -> list[str]:
        return list(self.servers)

    async def list_tools(self, server: str) -> list[ToolSpec]:
        if server not in self.servers:
            raise ToolMappingError(f"Unknown tool server: {server}")
        return [tool.spec() for tool in self.servers[server].values()]

    async def invoke(self, server: str, tool: str, args: dict[str, Any]) -> str:
        tools = self.servers.get(server)
        if tools is None:
            raise ToolMappingError(f"Unknown tool server: {server}")
        if tool not in tools:
            raise ToolMappingError(f"Unknown tool '{tool}' on server '{server}'")
        try:
            output = await tools[tool].call(args)
        except Exception as e:
            raise ToolInvocationError(str(e)) from e
        if isinstance(output, str):
            return output
        return json.dumps(output, ensure_ascii=False)
