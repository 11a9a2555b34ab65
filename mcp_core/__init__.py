from .client import AnthropicClient, OpenAICompatClient, build_gateway
from .config import AppConfig, SessionConfig, ToolServerConfig, load_config
from .logging_utils import create_session_logger
from .mcp_transport import StdioMCPClient
from .mcp_types import MCPConnectionClosed, MCPError, MCPServerConfig
from .types import (
    ContentBlock,
    ConversationTurn,
    ModelGateway,
    PendingToolInvocation,
    TextBlock,
    ToolDescriptor,
    ToolResult,
    ToolUseBlock,
)

__all__ = [
    "AnthropicClient",
    "AppConfig",
    "ContentBlock",
    "ConversationTurn",
    "MCPConnectionClosed",
    "MCPError",
    "MCPServerConfig",
    "ModelGateway",
    "OpenAICompatClient",
    "PendingToolInvocation",
    "SessionConfig",
    "StdioMCPClient",
    "TextBlock",
    "ToolDescriptor",
    "ToolResult",
    "ToolServerConfig",
    "ToolUseBlock",
    "build_gateway",
    "create_session_logger",
    "load_config",
]
