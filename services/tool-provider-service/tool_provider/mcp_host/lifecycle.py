# services/tool-provider-service/tool_provider/mcp_host/lifecycle.py
from __future__ import annotations

import logging
from typing import Callable, List

logger = logging.getLogger("tool_provider.mcp.lifecycle")

DisposeListener = Callable[[], None]


class DisposeNotifier:
    """
    Explicit observer registration for "this resource has been disposed".

    Listeners run once, synchronously, in registration order. A failing
    listener is logged and does not stop the others.
    """

    def __init__(self) -> None:
        self._dispose_listeners: List[DisposeListener] = []
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def add_dispose_listener(self, listener: DisposeListener) -> None:
        if listener not in self._dispose_listeners:
            self._dispose_listeners.append(listener)

    def remove_dispose_listener(self, listener: DisposeListener) -> None:
        try:
            self._dispose_listeners.remove(listener)
        except ValueError:
            pass

    def _mark_disposed(self) -> bool:
        """Flip to disposed; False if it already was."""
        if self._disposed:
            return False
        self._disposed = True
        return True

    def _notify_disposed(self) -> None:
        listeners, self._dispose_listeners = self._dispose_listeners, []
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.warning("Dispose listener failed: %r", listener, exc_info=True)
