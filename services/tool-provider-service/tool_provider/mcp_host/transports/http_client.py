# services/tool-provider-service/tool_provider/mcp_host/transports/http_client.py
from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from typing import Any, Dict, List, Optional

from mcp import ClientSession  # official SDK session
from mcp.client.sse import sse_client
from mcp.client.streamable_http import streamablehttp_client  # official HTTP transport

from tool_provider.infra.logging import redact_headers
from tool_provider.mcp_host.types import ToolDescriptor, TransportKind

logger = logging.getLogger("tool_provider.mcp.http")


class HttpMcpClient:
    """
    Network MCP client (Streamable HTTP by default, SSE on request).

    The SDK transports are async context managers backed by anyio task groups,
    which must be exited from the task that entered them. A connection may be
    disposed from any task (eviction, expiry sweep, shutdown), so one owner
    task per connection enters the contexts, keeps them open, and exits them
    when close() sets the closing event.
    """

    def __init__(
        self,
        *,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        transport: TransportKind = "streamable_http",
        init_timeout_sec: float = 30.0,
        call_timeout_sec: float = 120.0,
    ) -> None:
        self.url = url.rstrip("/")
        self.headers = dict(headers or {})
        self.transport = transport
        self.init_timeout_sec = init_timeout_sec
        self.call_timeout_sec = call_timeout_sec

        self._connected = False
        self._session: ClientSession | None = None
        self._runner: asyncio.Task[None] | None = None
        self._ready: asyncio.Future[None] | None = None
        self._closing = asyncio.Event()

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> "HttpMcpClient":
        """
        Open the transport and initialize the session. Raises on failure.
        """
        if self._connected:
            return self

        logger.info(
            "Connecting MCP %s: url=%s headers=%s",
            self.transport, self.url, redact_headers(self.headers),
        )
        self._closing = asyncio.Event()
        self._ready = asyncio.get_running_loop().create_future()
        self._runner = asyncio.create_task(self._run(), name=f"mcp-connection:{self.url}")
        try:
            await self._ready
        except BaseException:
            await self._stop_runner()
            raise

        self._connected = True
        logger.info("MCP %s connected: %s", self.transport, self.url)
        return self

    async def _run(self) -> None:
        ready = self._ready
        assert ready is not None
        try:
            async with AsyncExitStack() as stack:
                if self.transport == "sse":
                    read_stream, write_stream = await stack.enter_async_context(
                        sse_client(self.url, headers=self.headers or None)
                    )
                else:
                    # yields (read, write, get_session_id)
                    read_stream, write_stream, _ = await stack.enter_async_context(
                        streamablehttp_client(self.url, headers=self.headers or None)
                    )
                session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
                await asyncio.wait_for(session.initialize(), timeout=self.init_timeout_sec)

                self._session = session
                if not ready.done():
                    ready.set_result(None)
                await self._closing.wait()
        except Exception as e:
            if not ready.done():
                ready.set_exception(e)
            else:
                logger.warning("MCP connection dropped: %s", self.url, exc_info=True)
        finally:
            self._session = None
            self._connected = False
            if not ready.done():
                ready.cancel()

    async def _stop_runner(self) -> None:
        runner = self._runner
        self._runner = None
        if runner is None:
            return
        self._closing.set()
        if not runner.done():
            runner.cancel()
        await asyncio.gather(runner, return_exceptions=True)

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise RuntimeError(f"MCP client not connected: {self.url}")
        return self._session

    async def list_tools(self) -> List[ToolDescriptor]:
        session = self._require_session()
        resp = await asyncio.wait_for(session.list_tools(), timeout=self.init_timeout_sec)
        return [
            ToolDescriptor.model_validate(t.model_dump(by_alias=True, exclude_none=True))
            for t in getattr(resp, "tools", [])
        ]

    async def call_tool(
        self, tool_name: str, arguments: Dict[str, Any], timeout_sec: Optional[float] = None
    ) -> Dict[str, Any]:
        session = self._require_session()
        result = await asyncio.wait_for(
            session.call_tool(tool_name, arguments=arguments),
            timeout=timeout_sec or self.call_timeout_sec,
        )

        # Prefer structuredContent when present; content blocks become plain dicts.
        data: Dict[str, Any] = {"is_error": bool(getattr(result, "isError", False))}
        structured = getattr(result, "structuredContent", None)
        if structured is not None:
            data["structured"] = structured
        content = getattr(result, "content", None)
        if content is not None:
            data["content"] = [cb.model_dump() for cb in content]
        return data

    async def close(self) -> None:
        """
        Ask the owner task to exit the session and transport contexts, then wait for it.
        """
        if self._runner is None:
            return
        self._closing.set()
        runner = self._runner
        try:
            await asyncio.gather(runner, return_exceptions=True)
        finally:
            self._runner = None
            self._connected = False
            logger.info("MCP %s closed: %s", self.transport, self.url)
