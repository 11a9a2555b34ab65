from __future__ import annotations

import asyncio
import logging
import os
import stat
import sys
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Tuple

from mcp_core.config import ToolServerConfig
from mcp_core.errors import (
    ArtifactNotExecutable,
    ArtifactNotFound,
    HandshakeTimeout,
    NoToolsDiscovered,
    NotReady,
    ToolExecutionError,
    TransportError,
    UnknownTool,
)
from mcp_core.mcp_transport import StdioMCPClient
from mcp_core.mcp_types import MCPConnectionClosed, MCPError, MCPServerConfig, MCPTransport
from mcp_core.types import ToolResult

from .catalogue import ToolCatalogue


TransportFactory = Callable[[MCPServerConfig], MCPTransport]

_EXECUTE_BITS = stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH


class ConnectionStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    READY = "ready"
    FAILED = "failed"


def ensure_executable(path: Path, *, logger: logging.Logger | None = None) -> Tuple[bool, bool]:
    """Return ``(executable, fixed)``; adds the execute bits on POSIX when they are missing."""
    if os.name == "nt":
        return True, False
    if os.access(path, os.X_OK):
        return True, False
    try:
        mode = path.stat().st_mode
        path.chmod(mode | _EXECUTE_BITS)
    except OSError as err:
        if logger:
            logger.warning("could not add execute permission to %s: %s", path, err)
        return False, False
    return os.access(path, os.X_OK), True


def resolve_launch_command(artifact: Path, settings: ToolServerConfig) -> Tuple[str, List[str]]:
    if settings.command:
        return settings.command, [str(artifact), *settings.args]
    suffix = artifact.suffix.lower()
    if suffix == ".py":
        return sys.executable, [str(artifact), *settings.args]
    if suffix in {".js", ".mjs", ".cjs"}:
        return "node", [str(artifact), *settings.args]
    return str(artifact), list(settings.args)


class ConnectionManager:
    """
    Owns one logical connection to a tool server: spawn, handshake, discovery, invocation,
    teardown. ``catalogue`` is non-empty exactly when ``status`` is READY.
    """

    def __init__(
        self,
        *,
        settings: ToolServerConfig | None = None,
        transport_factory: TransportFactory | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.settings = settings or ToolServerConfig()
        self.logger = logger or logging.getLogger(__name__)
        self._transport_factory = transport_factory or self._default_transport
        self._transport: MCPTransport | None = None
        self._catalogue = ToolCatalogue.empty()
        self._status = ConnectionStatus.UNINITIALIZED
        self._artifact_path: Path | None = None
        self._lock = asyncio.Lock()

    def _default_transport(self, config: MCPServerConfig) -> MCPTransport:
        return StdioMCPClient(config, logger=self.logger)

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def catalogue(self) -> ToolCatalogue:
        if self._status is not ConnectionStatus.READY:
            return ToolCatalogue.empty()
        return self._catalogue

    @property
    def artifact_path(self) -> Path | None:
        return self._artifact_path

    def _server_config(self, artifact: Path) -> MCPServerConfig:
        command, args = resolve_launch_command(artifact, self.settings)
        return MCPServerConfig(
            name=artifact.stem or "server",
            command=command,
            args=args,
            env=dict(self.settings.env),
            stdio_msg_format=self.settings.stdio_msg_format,
            timeout_seconds=self.settings.request_timeout_seconds,
            stream_limit_bytes=self.settings.stream_limit_bytes,
        )

    async def connect(self, artifact_path: str | os.PathLike[str]) -> None:
        async with self._lock:
            if self._status is ConnectionStatus.READY:
                return
            await self._release_transport()
            self._status = ConnectionStatus.CONNECTING
            self._catalogue = ToolCatalogue.empty()
            try:
                await self._open(Path(artifact_path))
            except BaseException:
                await self._release_transport()
                self._catalogue = ToolCatalogue.empty()
                self._status = ConnectionStatus.FAILED
                raise

    async def _open(self, artifact: Path) -> None:
        if not artifact.is_file():
            raise ArtifactNotFound(str(artifact))
        executable, fixed = ensure_executable(artifact, logger=self.logger)
        if fixed:
            self.logger.info("added execute permission to %s", artifact)

        config = self._server_config(artifact)
        if not executable:
            if config.command == str(artifact):
                raise ArtifactNotExecutable(str(artifact))
            self.logger.warning("%s is not executable; launching through %s", artifact, config.command)
        self.logger.info("connecting to tool server: %s %s", config.command, " ".join(config.args))
        self._transport = self._transport_factory(config)

        timeout = self.settings.handshake_timeout_seconds
        try:
            await asyncio.wait_for(self._transport.initialize(), timeout=timeout)
        except asyncio.TimeoutError as err:
            raise HandshakeTimeout(timeout) from err
        except MCPError as err:
            raise TransportError(str(err)) from err

        try:
            raw_tools = await self._transport.list_tools()
            catalogue = ToolCatalogue.from_listing(raw_tools, server_name=config.name)
        except MCPError as err:
            raise NoToolsDiscovered(f"Tool discovery failed: {err}") from err
        except ValueError as err:
            raise NoToolsDiscovered(f"Tool discovery returned an invalid catalogue: {err}") from err
        if not catalogue:
            raise NoToolsDiscovered()

        self._artifact_path = artifact
        self._catalogue = catalogue
        self._status = ConnectionStatus.READY
        self.logger.info("tool server ready with %d tools: %s", len(catalogue), ", ".join(catalogue.names()))

    async def invoke_tool(self, name: str, arguments: Dict[str, object]) -> ToolResult:
        async with self._lock:
            if self._status is not ConnectionStatus.READY or self._transport is None:
                raise NotReady(self._status.value)
            if name not in self._catalogue:
                raise UnknownTool(name)
            try:
                result = await self._transport.call_tool(name, arguments)
            except MCPConnectionClosed as err:
                self.logger.warning("connection lost during %s: %s", name, err)
                await self._release_transport()
                self._catalogue = ToolCatalogue.empty()
                self._status = ConnectionStatus.FAILED
                raise ToolExecutionError(name, str(err), connection_lost=True) from err
            except MCPError as err:
                raise ToolExecutionError(name, str(err)) from err
        if result.is_error:
            raise ToolExecutionError(name, result.text or "tool reported an error")
        return result

    async def teardown(self) -> None:
        async with self._lock:
            if self._transport is None and self._status is ConnectionStatus.UNINITIALIZED:
                return
            await self._release_transport()
            self._catalogue = ToolCatalogue.empty()
            self._status = ConnectionStatus.UNINITIALIZED
            self.logger.info("tool server connection torn down")

    async def _release_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.aclose()
