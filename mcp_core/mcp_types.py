from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Protocol

from .types import ToolResult


PROTOCOL_VERSION = "2024-11-05"
SUPPORTED_PROTOCOL_VERSIONS = frozenset({"2024-11-05", "2025-03-26", "2025-06-18"})
CLIENT_INFO = {"name": "wallet-mcp-assistant", "version": "1.0.0"}
# asyncio caps a single line at 64 KiB by default.
DEFAULT_STREAM_LIMIT_BYTES = 16 * 1024 * 1024


@dataclass(frozen=True)
class MCPServerConfig:
    name: str
    command: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    stdio_msg_format: str = "line"
    timeout_seconds: float = 30
    stream_limit_bytes: int = DEFAULT_STREAM_LIMIT_BYTES


class MCPError(RuntimeError):
    pass


class MCPConnectionClosed(MCPError):
    """The server process exited or closed its stdout."""


class MCPTransport(Protocol):
    @property
    def is_alive(self) -> bool: ...

    async def initialize(self) -> Dict[str, object]: ...

    async def list_tools(self) -> List[Dict[str, object]]: ...

    async def call_tool(self, name: str, arguments: Dict[str, object]) -> ToolResult: ...

    async def aclose(self) -> None: ...
