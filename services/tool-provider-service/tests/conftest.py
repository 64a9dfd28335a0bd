from __future__ import annotations

from typing import Iterator

import pytest

from tool_provider.mcp_host import coordinator, reset_provider_cache


@pytest.fixture(autouse=True)
def clean_module_state() -> Iterator[None]:
    """Detached cleanups and the shared cache are bound to each test's event loop."""
    reset_provider_cache()
    coordinator._detached.clear()
    yield
    reset_provider_cache()
    coordinator._detached.clear()
