"""Tests for the SDK-backed MCP client, with the SDK transport and session replaced."""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import pytest
from mcp import types as mcp_types

from tool_provider.mcp_host.establisher import connect
from tool_provider.mcp_host.transports import http_client
from tool_provider.mcp_host.transports.http_client import HttpMcpClient

URL = "http://tools.local/mcp"


class FakeTransport:
    """Stands in for streamablehttp_client / sse_client."""

    def __init__(self, *, streamable: bool) -> None:
        self.streamable = streamable
        self.opened: List[Tuple[str, Optional[Dict[str, str]]]] = []
        self.exited = 0

    def __call__(self, url: str, headers: Optional[Dict[str, str]] = None, **kwargs: Any):
        self.opened.append((url, headers))
        return self._open()

    @asynccontextmanager
    async def _open(self) -> AsyncIterator[tuple]:
        try:
            if self.streamable:
                yield ("read", "write", lambda: "session-1")
            else:
                yield ("read", "write")
        finally:
            self.exited += 1


class FakeSession:
    def __init__(self, server: "FakeServer") -> None:
        self.server = server

    async def __aenter__(self) -> "FakeSession":
        self.server.sessions_entered += 1
        return self

    async def __aexit__(self, *exc: Any) -> bool:
        self.server.sessions_exited += 1
        return False

    async def initialize(self) -> None:
        if self.server.init_delay:
            await asyncio.sleep(self.server.init_delay)
        if self.server.init_error is not None:
            raise self.server.init_error
        self.server.initialized += 1

    async def list_tools(self) -> mcp_types.ListToolsResult:
        return mcp_types.ListToolsResult(tools=self.server.tools)

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> mcp_types.CallToolResult:
        self.server.calls.append((name, arguments))
        return self.server.result


class FakeServer:
    """What one remote MCP server looks like through the SDK."""

    def __init__(self) -> None:
        self.tools = [
            mcp_types.Tool(
                name="search",
                description="Search indexed documents.",
                inputSchema={"type": "object", "properties": {"q": {"type": "string"}}},
                annotations=mcp_types.ToolAnnotations(readOnlyHint=True),
            ),
            mcp_types.Tool(
                name="create_todo",
                description="Write access: adds a todo item.",
                inputSchema={"type": "object"},
            ),
        ]
        self.result = mcp_types.CallToolResult(
            content=[mcp_types.TextContent(type="text", text="3 results")],
            structuredContent={"count": 3},
            isError=False,
        )
        self.init_error: Optional[BaseException] = None
        self.init_delay = 0.0
        self.initialized = 0
        self.sessions_entered = 0
        self.sessions_exited = 0
        self.calls: List[tuple] = []
        self.streamable = FakeTransport(streamable=True)
        self.sse = FakeTransport(streamable=False)

    def session(self, read_stream: Any, write_stream: Any) -> FakeSession:
        assert (read_stream, write_stream) == ("read", "write")
        return FakeSession(self)


@pytest.fixture
def server(monkeypatch: pytest.MonkeyPatch) -> FakeServer:
    srv = FakeServer()
    monkeypatch.setattr(http_client, "streamablehttp_client", srv.streamable)
    monkeypatch.setattr(http_client, "sse_client", srv.sse)
    monkeypatch.setattr(http_client, "ClientSession", srv.session)
    return srv


@pytest.mark.asyncio
async def test_connect_initializes_session_and_converts_catalog(server: FakeServer) -> None:
    client = HttpMcpClient(url=URL + "/", headers={"Authorization": "Bearer t"})

    await client.connect()
    tools = await client.list_tools()

    assert client.is_connected
    assert server.initialized == 1
    assert server.streamable.opened == [(URL, {"Authorization": "Bearer t"})]
    assert [t.name for t in tools] == ["search", "create_todo"]
    assert tools[0].input_schema["properties"] == {"q": {"type": "string"}}
    assert tools[0].annotations == {"readOnlyHint": True}
    assert tools[1].annotations is None

    await client.close()

    assert not client.is_connected
    assert server.sessions_exited == 1
    assert server.streamable.exited == 1


@pytest.mark.asyncio
async def test_call_tool_normalizes_result(server: FakeServer) -> None:
    client = HttpMcpClient(url=URL)
    await client.connect()

    ok = await client.call_tool("search", {"q": "policy"})
    server.result = mcp_types.CallToolResult(content=[], isError=True)
    failed = await client.call_tool("search", {"q": ""})

    assert ok["is_error"] is False
    assert ok["structured"] == {"count": 3}
    assert ok["content"][0]["type"] == "text"
    assert ok["content"][0]["text"] == "3 results"
    assert failed["is_error"] is True
    assert "structured" not in failed
    assert failed["content"] == []
    assert server.calls == [("search", {"q": "policy"}), ("search", {"q": ""})]
    await client.close()


@pytest.mark.asyncio
async def test_failed_initialize_raises_and_leaves_no_runner(server: FakeServer) -> None:
    server.init_error = RuntimeError("handshake rejected")
    client = HttpMcpClient(url=URL)

    with pytest.raises(RuntimeError, match="handshake rejected"):
        await client.connect()

    assert client._runner is None
    assert not client.is_connected
    assert server.sessions_exited == 1
    assert server.streamable.exited == 1
    await client.close()


@pytest.mark.asyncio
async def test_initialize_is_bounded_by_timeout(server: FakeServer) -> None:
    server.init_delay = 1.0
    client = HttpMcpClient(url=URL, init_timeout_sec=0.05)

    with pytest.raises(asyncio.TimeoutError):
        await client.connect()

    assert client._runner is None
    assert server.streamable.exited == 1


@pytest.mark.asyncio
async def test_close_is_idempotent_and_safe_before_connect(server: FakeServer) -> None:
    client = HttpMcpClient(url=URL)
    await client.close()

    await client.connect()
    await client.close()
    await client.close()

    assert server.streamable.exited == 1
    assert server.sessions_exited == 1


@pytest.mark.asyncio
async def test_dropped_connection_is_reported_and_close_still_works(server: FakeServer) -> None:
    client = HttpMcpClient(url=URL)
    await client.connect()

    # the SDK's task group cancels the owner task when the remote goes away
    client._runner.cancel()
    await asyncio.gather(client._runner, return_exceptions=True)

    assert not client.is_connected
    with pytest.raises(RuntimeError, match="not connected"):
        await client.list_tools()

    await client.close()
    assert server.streamable.exited == 1


@pytest.mark.asyncio
async def test_sse_transport_is_used_when_requested(server: FakeServer) -> None:
    client = HttpMcpClient(url=URL, transport="sse")

    await client.connect()
    await client.close()

    assert len(server.sse.opened) == 1
    assert server.streamable.opened == []
    assert server.sse.exited == 1


@pytest.mark.asyncio
async def test_connect_uses_sdk_client_by_default(server: FakeServer) -> None:
    handle = await connect(URL, {"x-user": "u1"}, allow_write=False)

    assert handle.is_connected
    assert sorted(handle.tools) == ["search"]

    result = await handle.tools["search"]({"q": "policy"})
    assert result["structured"] == {"count": 3}

    await handle.dispose()
    assert not handle.is_connected
    assert server.streamable.exited == 1
