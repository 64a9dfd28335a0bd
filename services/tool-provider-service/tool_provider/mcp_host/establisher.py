# services/tool-provider-service/tool_provider/mcp_host/establisher.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential_jitter

from tool_provider.config import settings
from tool_provider.mcp_host.lifecycle import DisposeNotifier
from tool_provider.mcp_host.transports.http_client import HttpMcpClient
from tool_provider.mcp_host.types import EndpointSpec, McpTransport, ToolDescriptor

logger = logging.getLogger("tool_provider.mcp.establisher")

ClientFactory = Callable[[EndpointSpec], McpTransport]


def build_client(spec: EndpointSpec) -> HttpMcpClient:
    """Default client factory: one SDK-backed network client per endpoint."""
    return HttpMcpClient(
        url=spec.url,
        headers=spec.headers,
        transport=spec.transport,
        init_timeout_sec=settings.mcp_init_timeout_sec,
        call_timeout_sec=settings.mcp_tool_call_timeout_sec,
    )


def is_write_access(tool: ToolDescriptor, marker: Optional[str] = None) -> bool:
    return (marker or settings.mcp_write_access_marker) in (tool.description or "")


def filter_tools(
    catalog: Iterable[ToolDescriptor], *, allow_write: bool, marker: Optional[str] = None
) -> List[ToolDescriptor]:
    """
    Drop write-access tools unless the connection was opened with write access.
    """
    tools = list(catalog)
    if allow_write:
        return tools
    return [t for t in tools if not is_write_access(t, marker)]


class ToolBinding:
    """
    A catalog entry bound to the connection that serves it.
    """

    __slots__ = ("descriptor", "endpoint", "_client")

    def __init__(self, descriptor: ToolDescriptor, endpoint: str, client: McpTransport) -> None:
        self.descriptor = descriptor
        self.endpoint = endpoint
        self._client = client

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def description(self) -> str:
        return self.descriptor.description

    @property
    def input_schema(self) -> Dict[str, Any]:
        return self.descriptor.input_schema

    async def __call__(self, arguments: Dict[str, Any], timeout_sec: Optional[float] = None) -> Dict[str, Any]:
        return await self._client.call_tool(self.name, arguments, timeout_sec)

    def __repr__(self) -> str:
        return f"ToolBinding(name={self.name!r}, endpoint={self.endpoint!r})"


class ConnectionHandle(DisposeNotifier):
    """
    One live connection to one endpoint. Owned by exactly one bundle; dispose() runs once.
    """

    def __init__(
        self,
        endpoint: str,
        client: Optional[McpTransport],
        tools: Mapping[str, ToolBinding],
    ) -> None:
        super().__init__()
        self.endpoint = endpoint
        self._client = client
        self._tools: Dict[str, ToolBinding] = dict(tools)

    @property
    def is_connected(self) -> bool:
        if self._client is None or self.disposed:
            return False
        # the transport notices a dropped connection before the handle does
        return bool(getattr(self._client, "is_connected", True))

    @property
    def tools(self) -> Dict[str, ToolBinding]:
        if self.disposed:
            return {}
        return dict(self._tools)

    async def dispose(self) -> None:
        if not self._mark_disposed():
            return
        client, self._client = self._client, None
        try:
            if client is not None:
                await client.close()
                logger.debug("MCP connection disposed: endpoint=%s", self.endpoint)
        except Exception:
            logger.warning("Error disposing MCP connection: endpoint=%s", self.endpoint, exc_info=True)
        finally:
            self._notify_disposed()

    async def __aenter__(self) -> "ConnectionHandle":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.dispose()

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(endpoint={self.endpoint!r}, "
            f"connected={self.is_connected}, tools={len(self._tools)})"
        )


class StubConnectionHandle(ConnectionHandle):
    """Placeholder for an endpoint that could not be reached: no tools, trivial dispose."""

    def __init__(self, endpoint: str, reason: str = "") -> None:
        super().__init__(endpoint, None, {})
        self.reason = reason


async def _close_quietly(client: McpTransport, endpoint: str) -> None:
    try:
        await client.close()
    except Exception:
        logger.debug("Ignoring close error after failed connect: endpoint=%s", endpoint, exc_info=True)


async def connect(
    endpoint: Union[str, EndpointSpec],
    headers: Optional[Mapping[str, str]] = None,
    allow_write: bool = False,
    *,
    client_factory: Optional[ClientFactory] = None,
    connect_attempts: Optional[int] = None,
    write_access_marker: Optional[str] = None,
) -> ConnectionHandle:
    """
    Open one endpoint and return a handle. Never raises for connection problems:
    transport, handshake and catalog failures degrade to a StubConnectionHandle.
    """
    url = endpoint.url if isinstance(endpoint, EndpointSpec) else str(endpoint)
    client: Optional[McpTransport] = None
    try:
        if isinstance(endpoint, EndpointSpec):
            spec = endpoint
        else:
            spec = EndpointSpec(
                url=url,
                headers=dict(headers or {}),
                allow_write=allow_write,
                transport=settings.mcp_transport,
            )

        client = (client_factory or build_client)(spec)

        attempts = max(1, connect_attempts or settings.mcp_connect_attempts)
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential_jitter(initial=0.2, max=2.0),
            reraise=True,
        ):
            with attempt:
                await client.connect()

        catalog = await client.list_tools()
        exposed = filter_tools(catalog, allow_write=spec.allow_write, marker=write_access_marker)
    except asyncio.CancelledError:
        if client is not None:
            await _close_quietly(client, url)
        raise
    except Exception as e:
        logger.warning(
            "MCP endpoint unavailable; tools from this endpoint will not be available: endpoint=%s cause=%r",
            url, e, exc_info=True,
        )
        if client is not None:
            await _close_quietly(client, url)
        return StubConnectionHandle(url, reason=repr(e))

    tools = {t.name: ToolBinding(t, spec.url, client) for t in exposed}
    logger.info(
        "MCP endpoint connected: endpoint=%s tools=%d hidden_write_tools=%d",
        spec.url, len(tools), len(catalog) - len(exposed),
    )
    return ConnectionHandle(spec.url, client, tools)
