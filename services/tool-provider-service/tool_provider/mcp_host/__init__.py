# services/tool-provider-service/tool_provider/mcp_host/__init__.py
from __future__ import annotations

# re-export for convenience
from .types import (
    TransportKind,
    CacheKey,
    CacheStats,
    EndpointSpec,
    McpTransport,
    ProviderCacheOptions,
    ToolDescriptor,
    ToolProviderConfig,
)
from .errors import (
    InvalidProviderConfigError,
    ProviderCacheError,
    ProviderCacheShutdownError,
    ProviderCreationAbandonedError,
)
from .establisher import ConnectionHandle, StubConnectionHandle, ToolBinding, connect
from .coordinator import ProviderBundle, create_bundle, wait_for_detached_cleanups
from .provider_cache import (
    PassthroughProviderCache,
    ProviderCache,
    current_provider_cache,
    get_provider_cache,
    reset_provider_cache,
    stable_hash,
)

__all__ = [
    "TransportKind",
    "CacheKey",
    "CacheStats",
    "EndpointSpec",
    "McpTransport",
    "ProviderCacheOptions",
    "ToolDescriptor",
    "ToolProviderConfig",
    "InvalidProviderConfigError",
    "ProviderCacheError",
    "ProviderCacheShutdownError",
    "ProviderCreationAbandonedError",
    "ConnectionHandle",
    "StubConnectionHandle",
    "ToolBinding",
    "connect",
    "ProviderBundle",
    "create_bundle",
    "wait_for_detached_cleanups",
    "PassthroughProviderCache",
    "ProviderCache",
    "current_provider_cache",
    "get_provider_cache",
    "reset_provider_cache",
    "stable_hash",
]
