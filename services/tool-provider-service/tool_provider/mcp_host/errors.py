# services/tool-provider-service/tool_provider/mcp_host/errors.py
from __future__ import annotations


class ProviderCacheError(RuntimeError):
    """Base class for provider cache failures."""


class ProviderCacheShutdownError(ProviderCacheError):
    def __init__(self, operation: str) -> None:
        super().__init__(
            f"ProviderCache.{operation}() called after shutdown(); create a new cache instance"
        )
        self.operation = operation


class InvalidProviderConfigError(ProviderCacheError, ValueError):
    pass


class ProviderCreationAbandonedError(ProviderCacheError):
    """
    Raised to callers waiting on an in-flight creation that was invalidated
    (invalidate_user / invalidate_session / shutdown) before it settled, or
    whose creator was cancelled.
    """

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"Provider creation for {key} abandoned: {reason}")
        self.key = key
        self.reason = reason
