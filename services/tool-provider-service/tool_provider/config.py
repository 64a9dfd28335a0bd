# services/tool-provider-service/tool_provider/config.py
from __future__ import annotations
import os
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Identity
    service_name: str = os.getenv("SERVICE_NAME", "tool-provider-service")
    service_version: str = os.getenv("SERVICE_VERSION", "0.1.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Provider cache
    provider_cache_enabled: bool = bool(int(os.getenv("PROVIDER_CACHE_ENABLED", "1")))
    provider_cache_max_entries_per_user: int = int(os.getenv("PROVIDER_CACHE_MAX_ENTRIES_PER_USER", "3"))
    provider_cache_max_total_entries: int = int(os.getenv("PROVIDER_CACHE_MAX_TOTAL_ENTRIES", "100"))
    provider_cache_ttl_sec: float = float(os.getenv("PROVIDER_CACHE_TTL_SEC", str(30 * 60)))
    provider_cache_cleanup_interval_sec: float = float(
        os.getenv("PROVIDER_CACHE_CLEANUP_INTERVAL_SEC", str(5 * 60))
    )
    provider_cache_require_healthy: bool = bool(int(os.getenv("PROVIDER_CACHE_REQUIRE_HEALTHY", "0")))

    # MCP connections
    mcp_transport: str = os.getenv("MCP_TRANSPORT", "streamable_http")  # "streamable_http" | "sse"
    mcp_bundle_timeout_sec: float = float(os.getenv("MCP_BUNDLE_TIMEOUT_SEC", "60"))
    mcp_init_timeout_sec: float = float(os.getenv("MCP_INIT_TIMEOUT_SEC", "30"))
    mcp_tool_call_timeout_sec: float = float(os.getenv("MCP_TOOL_CALL_TIMEOUT_SEC", "120"))
    mcp_connect_attempts: int = int(os.getenv("MCP_CONNECT_ATTEMPTS", "2"))
    mcp_dispose_grace_sec: float = float(os.getenv("MCP_DISPOSE_GRACE_SEC", "15"))
    mcp_write_access_marker: str = os.getenv("MCP_WRITE_ACCESS_MARKER", "Write access")

    model_config = SettingsConfigDict(env_file=None, extra="ignore")


settings = Settings()
