"""
HTTP tool server registry.

Talks JSON-RPC 2.0 to remote tool servers (the 'tools/list' and 'tools/call'
methods of the MCP streamable HTTP transport). Servers may answer with a plain
JSON body or with a single-event 'text/event-stream' body; both are accepted.
Tool outputs are flattened to text: text content blocks are joined with
newlines, other blocks are JSON-encoded.
"""

import itertools
import json
from typing import Any

import httpx
from loguru import logger

from conversational_engine.config import ToolServerConfig
from conversational_engine.exceptions import ToolInvocationError, ToolMappingError
from conversational_engine.tools.base import ToolServerRegistry, ToolSpec


class HttpToolServerRegistry(ToolServerRegistry):
    """
    Registry backed by remote tool servers.

    Attributes:
        servers: Server configurations keyed by name.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        servers: list[ToolServerConfig],
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.servers = {server.name: server for server in servers}
        self.timeout = timeout
        self._transport = transport
        self._ids = itertools.count(1)

    def list_servers(self) -> list[str]:
        return list(self.servers)

    async def list_tools(self, server: str) -> list[ToolSpec]:
        result = await self._rpc(self._server(server), "tools/list", {})
        return [
            ToolSpec(
                name=tool["name"],
                description=tool.get("description") or "",
                input_schema=tool.get("inputSchema") or {"type": "object", "properties": {}},
            )
            for tool in result.get("tools", [])
        ]

    async def invoke(self, server: str, tool: str, args: dict[str, Any]) -> str:
        result = await self._rpc(self._server(server), "tools/call", {"name": tool, "arguments": args})
        output = _flatten_content(result.get("content", []))
        if result.get("isError"):
            raise ToolInvocationError(output or f"Tool '{tool}' failed")
        return output

    def _server(self, name: str) -> ToolServerConfig:
        server = self.servers.get(name)
        if server is None:
            raise ToolMappingError(f"Unknown tool server: {name}")
        return server

    async def _rpc(self, server: ToolServerConfig, method: str, params: dict[str, Any]) -> dict[str, Any]:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        headers = {"Accept": "application/json, text/event-stream", **server.headers}
        logger.debug(f"Tool server '{server.name}' <- {method}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(server.url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise ToolInvocationError(f"Tool server '{server.name}' request failed: {e}") from e

        body = _decode_body(response)
        if "error" in body:
            error = body["error"] or {}
            raise ToolInvocationError(error.get("message") or f"Tool server '{server.name}' returned an error")
        return body.get("result") or {}


def _decode_body(response: httpx.Response) -> dict[str, Any]:
    if response.headers.get("content-type", "").startswith("text/event-stream"):
        data_lines = [line[5:].strip() for line in response.text.splitlines() if line.startswith("data:")]
        if not data_lines:
            raise ToolInvocationError("Tool server sent an empty event stream")
        raw = data_lines[-1]
    else:
        raw = response.text
    try:
        return json.loads(raw)
    except ValueError as e:
        raise ToolInvocationError(f"Tool server sent invalid JSON: {e}") from e


def _flatten_content(blocks: list[dict[str, Any]]) -> str:
    parts = []
    for block in blocks:
        if block.get("type") == "text":
            parts.append(block.get("text", ""))
        else:
            parts.append(json.dumps(block, ensure_ascii=False))
    return "\n".join(parts)
