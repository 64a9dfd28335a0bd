# services/tool-provider-service/tool_provider/mcp_host/coordinator.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine, Dict, List, Mapping, Optional, Sequence, Set, Union

from tool_provider.config import settings
from tool_provider.mcp_host.establisher import ClientFactory, ConnectionHandle, ToolBinding, connect
from tool_provider.mcp_host.lifecycle import DisposeNotifier
from tool_provider.mcp_host.types import EndpointSpec

logger = logging.getLogger("tool_provider.mcp.coordinator")

EndpointInput = Union[EndpointSpec, Mapping[str, Any]]

# Detached cleanups: strong references so the loop does not drop them mid-flight.
_detached: Set["asyncio.Task[Any]"] = set()


def _on_detached_done(task: "asyncio.Task[Any]") -> None:
    _detached.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Detached MCP cleanup failed: %s", task.get_name(), exc_info=exc)


def _track_detached(task: "asyncio.Task[Any]") -> "asyncio.Task[Any]":
    _detached.add(task)
    task.add_done_callback(_on_detached_done)
    return task


def _spawn_detached(coro: Coroutine[Any, Any, Any], name: str) -> "asyncio.Task[Any]":
    return _track_detached(asyncio.create_task(coro, name=name))


def detached_cleanup_count() -> int:
    return len(_detached)


async def wait_for_detached_cleanups(timeout_sec: Optional[float] = None) -> int:
    """
    Wait for outstanding detached cleanups. Returns how many are still running afterwards.
    """
    tasks = list(_detached)
    if not tasks:
        return 0
    _done, pending = await asyncio.wait(tasks, timeout=timeout_sec)
    return len(pending)


class ProviderBundle(DisposeNotifier):
    """
    The connections established for one cache entry, with a merged tool map.

    Tool names are first-registered-wins: a handle earlier in creation order
    keeps a name, later duplicates are dropped with a warning.
    """

    def __init__(
        self,
        handles: Sequence[ConnectionHandle],
        *,
        requested: Optional[int] = None,
        dispose_grace_sec: Optional[float] = None,
    ) -> None:
        super().__init__()
        self._providers: List[ConnectionHandle] = list(handles)
        self._requested = len(self._providers) if requested is None else requested
        self._dispose_grace_sec = (
            settings.mcp_dispose_grace_sec if dispose_grace_sec is None else dispose_grace_sec
        )
        self._member_listeners: Dict[ConnectionHandle, Callable[[], None]] = {}
        self._tools = self._merge_tools(warn=True)

        for handle in self._providers:
            listener = self._make_member_listener(handle)
            self._member_listeners[handle] = listener
            handle.add_dispose_listener(listener)

    @property
    def providers(self) -> List[ConnectionHandle]:
        return list(self._providers)

    @property
    def tools(self) -> Dict[str, ToolBinding]:
        return dict(self._tools)

    @property
    def is_healthy(self) -> bool:
        """Every requested endpoint connected and exposes at least one tool."""
        if self.disposed or len(self._providers) != self._requested:
            return False
        return all(p.is_connected and p.tools for p in self._providers)

    def _merge_tools(self, *, warn: bool) -> Dict[str, ToolBinding]:
        merged: Dict[str, ToolBinding] = {}
        for handle in self._providers:
            for name, binding in handle.tools.items():
                kept = merged.get(name)
                if kept is None:
                    merged[name] = binding
                elif warn:
                    logger.warning(
                        "Tool name collision: %s from endpoint=%s dropped; already provided by endpoint=%s",
                        name, handle.endpoint, kept.endpoint,
                    )
        return merged

    def _make_member_listener(self, handle: ConnectionHandle) -> Callable[[], None]:
        def _on_member_disposed() -> None:
            if self.disposed:
                return
            self._member_listeners.pop(handle, None)
            try:
                self._providers.remove(handle)
            except ValueError:
                return
            self._tools = self._merge_tools(warn=False)
            if not self._providers and self._mark_disposed():
                logger.debug("Provider bundle emptied by member disposal")
                self._notify_disposed()

        return _on_member_disposed

    async def dispose(self) -> None:
        """
        Dispose every member, waiting at most the grace period. Stragglers keep
        closing in the background.
        """
        if not self._mark_disposed():
            return
        members, self._providers = self._providers, []
        self._tools = {}
        for handle in members:
            listener = self._member_listeners.pop(handle, None)
            if listener is not None:
                handle.remove_dispose_listener(listener)

        try:
            if not members:
                return
            tasks = [
                asyncio.create_task(h.dispose(), name=f"mcp-dispose:{h.endpoint}") for h in members
            ]
            done, pending = await asyncio.wait(tasks, timeout=self._dispose_grace_sec)
            for t in done:
                if not t.cancelled() and t.exception() is not None:
                    logger.warning("Error disposing MCP connection", exc_info=t.exception())
            if pending:
                logger.warning(
                    "Provider bundle dispose: %d connection(s) still closing after %.1fs; continuing",
                    len(pending), self._dispose_grace_sec,
                )
                for t in pending:
                    _track_detached(t)
        finally:
            self._notify_disposed()

    async def __aenter__(self) -> "ProviderBundle":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.dispose()

    def __repr__(self) -> str:
        return (
            f"ProviderBundle(providers={len(self._providers)}/{self._requested}, "
            f"tools={len(self._tools)}, disposed={self.disposed})"
        )


def _endpoint_label(raw: EndpointInput) -> str:
    if isinstance(raw, EndpointSpec):
        return raw.url
    if isinstance(raw, Mapping):
        return str(raw.get("url") or "<missing url>")
    return repr(raw)


async def _dispose_when_settled(task: "asyncio.Task[ConnectionHandle]", endpoint: str) -> None:
    """Own a timed-out connection attempt until it settles, then dispose it."""
    try:
        handle = await task
    except Exception:
        logger.warning("Late MCP connection attempt failed: endpoint=%s", endpoint, exc_info=True)
        return
    await handle.dispose()
    logger.info("Disposed late MCP connection after bundle timeout: endpoint=%s", endpoint)


async def create_bundle(
    endpoints: Sequence[EndpointInput],
    timeout_sec: Optional[float] = None,
    *,
    client_factory: Optional[ClientFactory] = None,
    connect_attempts: Optional[int] = None,
    dispose_grace_sec: Optional[float] = None,
) -> ProviderBundle:
    """
    Connect to every endpoint concurrently and bundle whatever settled within
    timeout_sec. The timeout only bounds the caller's wait: connections still
    pending at the deadline are disposed by detached tasks once they settle.
    """
    timeout = settings.mcp_bundle_timeout_sec if timeout_sec is None else timeout_sec

    async def _open(raw: EndpointInput) -> ConnectionHandle:
        spec = raw if isinstance(raw, EndpointSpec) else EndpointSpec.model_validate(raw)
        return await connect(spec, client_factory=client_factory, connect_attempts=connect_attempts)

    if not endpoints:
        return ProviderBundle([], requested=0, dispose_grace_sec=dispose_grace_sec)

    labels = [_endpoint_label(raw) for raw in endpoints]
    tasks = [
        asyncio.create_task(_open(raw), name=f"mcp-connect:{label}")
        for raw, label in zip(endpoints, labels)
    ]

    try:
        _done, pending = await asyncio.wait(tasks, timeout=timeout)
    except asyncio.CancelledError:
        for task, label in zip(tasks, labels):
            _spawn_detached(_dispose_when_settled(task, label), name=f"mcp-late-dispose:{label}")
        raise

    handles: List[ConnectionHandle] = []
    rejected: List[BaseException] = []
    for task, label in zip(tasks, labels):
        if task in pending:
            _spawn_detached(_dispose_when_settled(task, label), name=f"mcp-late-dispose:{label}")
            continue
        exc = task.exception()
        if exc is not None:
            logger.error("MCP connection setup failed: endpoint=%s cause=%r", label, exc)
            rejected.append(exc)
        else:
            handles.append(task.result())

    if pending:
        logger.warning(
            "MCP bundle timed out after %.1fs; %d endpoint(s) still connecting and will be disposed when they settle",
            timeout, len(pending),
        )
    if rejected:
        logger.error("%d of %d MCP connection(s) failed before connecting", len(rejected), len(tasks))

    logger.debug("MCP bundle resolved; %d connection(s) established", len(handles))
    return ProviderBundle(handles, requested=len(tasks), dispose_grace_sec=dispose_grace_sec)
