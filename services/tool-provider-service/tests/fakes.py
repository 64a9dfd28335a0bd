"""Fakes for the MCP transport seam and provider bundles."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from tool_provider.mcp_host.lifecycle import DisposeNotifier
from tool_provider.mcp_host.types import EndpointSpec, ToolDescriptor


def tool(name: str, description: str = "") -> ToolDescriptor:
    return ToolDescriptor(name=name, description=description, inputSchema={"type": "object"})


class FakeMcpClient:
    """In-memory stand-in for HttpMcpClient."""

    def __init__(
        self,
        tools: Optional[List[ToolDescriptor]] = None,
        *,
        fail_connect: Optional[BaseException] = None,
        fail_connect_times: int = 0,
        fail_list: Optional[BaseException] = None,
        gate: Optional[asyncio.Event] = None,
        close_gate: Optional[asyncio.Event] = None,
    ) -> None:
        self._tools = list(tools or [])
        self.fail_connect = fail_connect
        self.fail_connect_times = fail_connect_times
        self.fail_list = fail_list
        self.gate = gate
        self.close_gate = close_gate
        self.connect_calls = 0
        self.close_calls = 0
        self.is_connected = False
        self.calls: List[tuple] = []

    async def connect(self) -> "FakeMcpClient":
        self.connect_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_connect is not None:
            raise self.fail_connect
        if self.connect_calls <= self.fail_connect_times:
            raise ConnectionError(f"flaky connect #{self.connect_calls}")
        self.is_connected = True
        return self

    async def list_tools(self) -> List[ToolDescriptor]:
        if self.fail_list is not None:
            raise self.fail_list
        return list(self._tools)

    async def call_tool(
        self, tool_name: str, arguments: Dict[str, Any], timeout_sec: Optional[float] = None
    ) -> Dict[str, Any]:
        self.calls.append((tool_name, arguments, timeout_sec))
        return {"is_error": False, "structured": {"tool": tool_name, "args": arguments}}

    async def close(self) -> None:
        self.close_calls += 1
        self.is_connected = False
        if self.close_gate is not None:
            await self.close_gate.wait()


class FakeEndpoints:
    """Client factory resolving endpoint URLs to prepared fake clients."""

    def __init__(self, clients: Dict[str, FakeMcpClient]) -> None:
        self.clients = clients
        self.specs: List[EndpointSpec] = []

    def __call__(self, spec: EndpointSpec) -> FakeMcpClient:
        self.specs.append(spec)
        return self.clients[spec.url]


class FakeBundle(DisposeNotifier):
    """Provider bundle double that counts dispose() calls."""

    def __init__(self, label: str = "bundle", *, healthy: bool = True) -> None:
        super().__init__()
        self.label = label
        self.is_healthy = healthy
        self.tools: Dict[str, Any] = {}
        self.dispose_calls = 0

    async def dispose(self) -> None:
        self.dispose_calls += 1
        if self._mark_disposed():
            self._notify_disposed()

    def __repr__(self) -> str:
        return f"FakeBundle({self.label!r})"
