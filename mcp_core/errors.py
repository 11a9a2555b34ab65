from __future__ import annotations

from typing import Tuple


_STALE_MARKERS: Tuple[str, ...] = ("not initialized", "not connected")


def message_looks_stale(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _STALE_MARKERS)


class AssistantError(RuntimeError):
    kind = "error"

    @property
    def code(self) -> str:
        return type(self).__name__


# Configuration problems are surfaced immediately and never retried.
class ConfigError(AssistantError):
    kind = "config"


class MissingCredential(ConfigError):
    pass


class InvalidCredential(ConfigError):
    pass


class ArtifactMissing(ConfigError):
    def __init__(self, path: str, message: str | None = None) -> None:
        super().__init__(message or f"Server file not found: {path}")
        self.path = path


class ConnectError(AssistantError):
    kind = "connect"


class ArtifactNotFound(ConnectError):
    def __init__(self, path: str) -> None:
        super().__init__(f"Server script file not found: {path}")
        self.path = path


class ArtifactNotExecutable(ConnectError):
    def __init__(self, path: str) -> None:
        super().__init__(f"Server script file is not executable: {path}")
        self.path = path


class HandshakeTimeout(ConnectError):
    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Connection timeout after {timeout_seconds:g} seconds")
        self.timeout_seconds = timeout_seconds


class NoToolsDiscovered(ConnectError):
    def __init__(self, message: str = "No available tools found") -> None:
        super().__init__(message)


class TransportError(ConnectError):
    pass


class ConnectFailed(ConnectError):
    def __init__(self, attempts: int, last_error: BaseException | None) -> None:
        retries = max(0, attempts - 1)
        detail = str(last_error) if last_error is not None else "unknown error"
        super().__init__(f"Failed to connect to MCP server after {retries} retries: {detail}")
        self.attempts = attempts
        self.last_error = last_error


class ToolError(AssistantError):
    kind = "tool"

    @property
    def stale(self) -> bool:
        return False


class NotReady(ToolError):
    def __init__(self, status: str) -> None:
        super().__init__(f"Client not initialized (status={status}). Call connect first.")
        self.status = status

    @property
    def stale(self) -> bool:
        return True


class UnknownTool(ToolError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown tool: {name}")
        self.name = name


class ToolExecutionError(ToolError):
    def __init__(self, tool_name: str, message: str, *, connection_lost: bool = False) -> None:
        super().__init__(f"{tool_name}: {message}")
        self.tool_name = tool_name
        self.connection_lost = connection_lost

    @property
    def stale(self) -> bool:
        return self.connection_lost or message_looks_stale(str(self))


class ModelGatewayError(AssistantError):
    kind = "gateway"

    def __init__(self, message: str, *, status: int | None = None, timeout: bool = False) -> None:
        super().__init__(message)
        self.status = status
        self.timeout = timeout

    @property
    def rejected_credential(self) -> bool:
        return self.status in {401, 403}


class QueryError(AssistantError):
    kind = "query"

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause

    @property
    def cause_kind(self) -> str:
        if isinstance(self.cause, AssistantError):
            return self.cause.kind
        return self.kind

    @property
    def cause_code(self) -> str:
        if isinstance(self.cause, AssistantError):
            return self.cause.code
        return self.code

    @property
    def stale(self) -> bool:
        if isinstance(self.cause, ToolError):
            return self.cause.stale
        return message_looks_stale(str(self))

    @property
    def retryable(self) -> bool:
        if isinstance(self.cause, ModelGatewayError):
            return not self.cause.rejected_credential
        return self.stale


class SessionNotReady(QueryError):
    def __init__(self, status: str) -> None:
        super().__init__(f"Client not initialized (status={status}). Call connect first.")
        self.status = status

    @property
    def stale(self) -> bool:
        return True


__all__ = [
    "ArtifactMissing",
    "ArtifactNotFound",
    "ArtifactNotExecutable",
    "AssistantError",
    "ConfigError",
    "ConnectError",
    "ConnectFailed",
    "HandshakeTimeout",
    "InvalidCredential",
    "MissingCredential",
    "ModelGatewayError",
    "NoToolsDiscovered",
    "NotReady",
    "QueryError",
    "SessionNotReady",
    "ToolError",
    "ToolExecutionError",
    "TransportError",
    "UnknownTool",
    "message_looks_stale",
]
