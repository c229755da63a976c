import json

import httpx
import pytest

from conversational_engine.config import ToolServerConfig
from conversational_engine.exceptions import ToolInvocationError, ToolMappingError
from conversational_engine.tools.base import build_tool_mapping
from conversational_engine.tools.http import HttpToolServerRegistry

TOOLS = [
    {
        "name": "search",
        "description": "Full text search.",
        "inputSchema": {"type": "object", "properties": {"query": {"type": "string"}}},
    },
    {"name": "fetch.page"},
]


def _handler(request: httpx.Request) -> httpx.Response:
    payload = json.loads(request.content)
    assert payload["jsonrpc"] == "2.0"
    assert request.headers["authorization"] == "Bearer secret"
    if payload["method"] == "tools/list":
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": {"tools": TOOLS}})

    name = payload["params"]["name"]
    if name == "search":
        query = payload["params"]["arguments"]["query"]
        result = {"content": [{"type": "text", "text": f"results for {query}"}, {"type": "image", "data": "x"}]}
        body = f"event: message\ndata: {json.dumps({'jsonrpc': '2.0', 'id': payload['id'], 'result': result})}\n\n"
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})
    if name == "failing":
        result = {"content": [{"type": "text", "text": "quota exceeded"}], "isError": True}
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": result})
    if name == "crash":
        return httpx.Response(500, text="internal error")
    return httpx.Response(
        200, json={"jsonrpc": "2.0", "id": payload["id"], "error": {"code": -32602, "message": f"Unknown tool {name}"}}
    )


@pytest.fixture
def registry() -> HttpToolServerRegistry:
    return HttpToolServerRegistry(
        [ToolServerConfig(name="docs", url="http://tools.test/mcp", headers={"Authorization": "Bearer secret"})],
        transport=httpx.MockTransport(_handler),
    )


@pytest.mark.asyncio
async def test_list_tools(registry):
    specs = await registry.list_tools("docs")

    assert [spec.name for spec in specs] == ["search", "fetch.page"]
    assert specs[0].input_schema["properties"]["query"] == {"type": "string"}
    assert specs[1].input_schema == {"type": "object", "properties": {}}


@pytest.mark.asyncio
async def test_build_tool_mapping_sanitizes_function_names(registry):
    descriptions, mapping = await build_tool_mapping(registry)

    assert [description["function"]["name"] for description in descriptions] == ["docs__search", "docs__fetch_page"]
    assert mapping["docs__fetch_page"].tool == "fetch.page"
    assert mapping["docs__search"].server == "docs"


@pytest.mark.asyncio
async def test_invoke_reads_event_stream_and_flattens_content(registry):
    output = await registry.invoke("docs", "search", {"query": "pydantic"})
    assert output == 'results for pydantic\n{"type": "image", "data": "x"}'


@pytest.mark.asyncio
async def test_invoke_errors(registry):
    with pytest.raises(ToolInvocationError, match="quota exceeded"):
        await registry.invoke("docs", "failing", {})
    with pytest.raises(ToolInvocationError, match="request failed"):
        await registry.invoke("docs", "crash", {})
    with pytest.raises(ToolInvocationError, match="Unknown tool missing"):
        await registry.invoke("docs", "missing", {})
    with pytest.raises(ToolMappingError):
        await registry.invoke("elsewhere", "search", {})
