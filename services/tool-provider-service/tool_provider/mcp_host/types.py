# services/tool-provider-service/tool_provider/mcp_host/types.py
from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Protocol, Tuple, TypedDict, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

TransportKind = Literal["streamable_http", "sse"]
CacheKey = Tuple[str, str, str]  # (user_id, session_id, config_hash)


class ToolDescriptor(BaseModel):
    """
    One entry of a server's tool catalog, as exposed to the chat backend.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(min_length=1)
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=dict, alias="inputSchema")
    annotations: Optional[Dict[str, Any]] = None

    @field_validator("description", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v


class EndpointSpec(BaseModel):
    """
    Where and how to reach one tool-serving endpoint.
    """
    url: str = Field(min_length=1)
    headers: Dict[str, str] = Field(default_factory=dict)
    allow_write: bool = False
    transport: TransportKind = "streamable_http"


class ToolProviderConfig(BaseModel):
    """
    Per-request knobs that select a distinct provider bundle for a session.
    """
    write_enabled: bool = False
    memory_disabled: bool = False
    headers: Dict[str, str] = Field(default_factory=dict)


class ProviderCacheOptions(BaseModel):
    max_entries_per_user: int = Field(default=3, gt=0)
    max_total_entries: int = Field(default=100, gt=0)
    ttl_sec: float = Field(default=30 * 60, gt=0)
    cleanup_interval_sec: float = Field(default=5 * 60, gt=0)
    require_healthy: bool = False

    @model_validator(mode="after")
    def _check_bounds(self) -> "ProviderCacheOptions":
        if self.max_total_entries < self.max_entries_per_user:
            raise ValueError("max_total_entries must be >= max_entries_per_user")
        return self


class CacheStats(TypedDict):
    total_entries: int
    user_counts: Dict[str, int]
    pending_creations: int
    config: Dict[str, Any]


@runtime_checkable
class McpTransport(Protocol):
    """
    What the establisher needs from a connected MCP client.
    """

    async def connect(self) -> Any: ...

    async def list_tools(self) -> List[ToolDescriptor]: ...

    async def call_tool(
        self, tool_name: str, arguments: Dict[str, Any], timeout_sec: Optional[float] = None
    ) -> Dict[str, Any]: ...

    async def close(self) -> None: ...
