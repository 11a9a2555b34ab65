from __future__ import annotations

import asyncio
import os
import shutil
import stat
import sys
import tempfile
import unittest
from pathlib import Path
from typing import Dict, List
from unittest import mock

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
from mcp_core.mcp_types import MCPConnectionClosed, MCPError, MCPServerConfig
from mcp_core.types import ToolResult
from mcp_session.connection import ConnectionManager, ConnectionStatus, ensure_executable, resolve_launch_command


WALLET_SERVER = Path(__file__).resolve().parents[1] / "mcp_servers" / "wallet" / "server.py"

ECHO_TOOL = {"name": "echo", "description": "Echo text", "inputSchema": {"type": "object", "properties": {}}}


class FakeTransport:
    def __init__(
        self,
        *,
        tools: List[Dict[str, object]] | None = None,
        init_error: BaseException | None = None,
        init_delay: float = 0.0,
        list_error: BaseException | None = None,
        call_error: BaseException | None = None,
        call_result: ToolResult | None = None,
    ) -> None:
        self.tools = [ECHO_TOOL] if tools is None else tools
        self.init_error = init_error
        self.init_delay = init_delay
        self.list_error = list_error
        self.call_error = call_error
        self.call_result = call_result
        self.calls: List[tuple[str, Dict[str, object]]] = []
        self.initialized = False
        self.closed = False

    @property
    def is_alive(self) -> bool:
        return self.initialized and not self.closed

    async def initialize(self) -> Dict[str, object]:
        if self.init_delay:
            await asyncio.sleep(self.init_delay)
        if self.init_error is not None:
            raise self.init_error
        self.initialized = True
        return {"protocolVersion": "2024-11-05"}

    async def list_tools(self) -> List[Dict[str, object]]:
        if self.list_error is not None:
            raise self.list_error
        return list(self.tools)

    async def call_tool(self, name: str, arguments: Dict[str, object]) -> ToolResult:
        self.calls.append((name, arguments))
        if self.call_error is not None:
            raise self.call_error
        if self.call_result is not None:
            return self.call_result
        return ToolResult(content=[{"type": "text", "text": str(arguments.get("msg", ""))}])

    async def aclose(self) -> None:
        self.closed = True


class ConnectionManagerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._temp_dir = tempfile.TemporaryDirectory(prefix="wallet-connection-")
        self.artifact = Path(self._temp_dir.name) / "server.py"
        self.artifact.write_text("# placeholder\n", encoding="utf-8")
        self.transports: List[FakeTransport] = []
        self.configs: List[MCPServerConfig] = []
        self.transport_kwargs: Dict[str, object] = {}

    def tearDown(self) -> None:
        self._temp_dir.cleanup()

    def _manager(self, transport_kwargs: Dict[str, object] | None = None, **settings: object) -> ConnectionManager:
        if transport_kwargs is not None:
            self.transport_kwargs = transport_kwargs

        def factory(config: MCPServerConfig) -> FakeTransport:
            self.configs.append(config)
            transport = FakeTransport(**self.transport_kwargs)  # type: ignore[arg-type]
            self.transports.append(transport)
            return transport

        return ConnectionManager(settings=ToolServerConfig(**settings), transport_factory=factory)  # type: ignore[arg-type]

    async def test_connect_discovers_catalogue_and_is_idempotent(self) -> None:
        manager = self._manager()
        await manager.connect(self.artifact)
        await manager.connect(self.artifact)

        self.assertIs(manager.status, ConnectionStatus.READY)
        self.assertEqual(manager.catalogue.names(), ["echo"])
        self.assertEqual(manager.artifact_path, self.artifact)
        self.assertEqual(len(self.transports), 1)
        self.assertEqual(self.configs[0].command, sys.executable)
        self.assertEqual(self.configs[0].args, [str(self.artifact)])

    async def test_missing_artifact_fails_without_spawning(self) -> None:
        manager = self._manager()
        with self.assertRaises(ArtifactNotFound) as ctx:
            await manager.connect(Path(self._temp_dir.name) / "absent.py")
        self.assertIn("Server script file not found", str(ctx.exception))
        self.assertIs(manager.status, ConnectionStatus.FAILED)
        self.assertEqual(self.transports, [])

    async def test_directly_launched_artifact_must_be_executable(self) -> None:
        binary = Path(self._temp_dir.name) / "wallet-server"
        binary.write_text("#!/bin/sh\n", encoding="utf-8")
        manager = self._manager()
        with mock.patch("mcp_session.connection.ensure_executable", return_value=(False, False)):
            with self.assertRaisesRegex(ArtifactNotExecutable, "not executable"):
                await manager.connect(binary)
        self.assertIs(manager.status, ConnectionStatus.FAILED)
        self.assertEqual(self.transports, [])

    async def test_interpreted_artifact_without_execute_bit_still_connects(self) -> None:
        manager = self._manager()
        with mock.patch("mcp_session.connection.ensure_executable", return_value=(False, False)):
            with self.assertLogs("mcp_session.connection", "WARNING") as logs:
                await manager.connect(self.artifact)
        self.assertIs(manager.status, ConnectionStatus.READY)
        self.assertEqual(self.configs[0].command, sys.executable)
        self.assertTrue(any("is not executable" in line for line in logs.output))
        await manager.teardown()

    async def test_zero_tools_is_a_failure(self) -> None:
        manager = self._manager({"tools": []})
        with self.assertRaisesRegex(NoToolsDiscovered, "No available tools found"):
            await manager.connect(self.artifact)
        self.assertIs(manager.status, ConnectionStatus.FAILED)
        self.assertFalse(manager.catalogue)
        self.assertTrue(self.transports[0].closed)

    async def test_handshake_timeout_releases_transport(self) -> None:
        manager = self._manager({"init_delay": 1.0}, handshake_timeout_seconds=0.05)
        with self.assertRaisesRegex(HandshakeTimeout, "Connection timeout after 0.05 seconds"):
            await manager.connect(self.artifact)
        self.assertIs(manager.status, ConnectionStatus.FAILED)
        self.assertTrue(self.transports[0].closed)

    async def test_handshake_error_maps_to_transport_error(self) -> None:
        manager = self._manager({"init_error": MCPError("initialize failed")})
        with self.assertRaises(TransportError):
            await manager.connect(self.artifact)
        self.assertIs(manager.status, ConnectionStatus.FAILED)

    async def test_discovery_failure_leaves_no_partial_catalogue(self) -> None:
        manager = self._manager({"list_error": MCPError("tools/list failed")})
        with self.assertRaises(NoToolsDiscovered):
            await manager.connect(self.artifact)
        self.assertEqual(manager.catalogue.names(), [])

        duplicate = self._manager({"tools": [ECHO_TOOL, ECHO_TOOL]})
        with self.assertRaisesRegex(NoToolsDiscovered, "Duplicate tool name"):
            await duplicate.connect(self.artifact)
        self.assertFalse(duplicate.catalogue)

    async def test_connect_after_failure_retries_with_fresh_transport(self) -> None:
        manager = self._manager({"tools": []})
        with self.assertRaises(NoToolsDiscovered):
            await manager.connect(self.artifact)
        self.transport_kwargs = {}
        await manager.connect(self.artifact)
        self.assertIs(manager.status, ConnectionStatus.READY)
        self.assertEqual(len(self.transports), 2)
        self.assertTrue(self.transports[0].closed)
        self.assertFalse(self.transports[1].closed)

    async def test_invoke_before_connect_is_not_ready(self) -> None:
        manager = self._manager()
        with self.assertRaises(NotReady) as ctx:
            await manager.invoke_tool("echo", {})
        self.assertTrue(ctx.exception.stale)

    async def test_unknown_tool_keeps_connection_ready(self) -> None:
        manager = self._manager()
        await manager.connect(self.artifact)
        with self.assertRaisesRegex(UnknownTool, "Unknown tool: nope"):
            await manager.invoke_tool("nope", {})
        self.assertIs(manager.status, ConnectionStatus.READY)
        self.assertEqual(self.transports[0].calls, [])

    async def test_invoke_returns_tool_result(self) -> None:
        manager = self._manager()
        await manager.connect(self.artifact)
        result = await manager.invoke_tool("echo", {"msg": "hi"})
        self.assertEqual(result.text, "hi")
        self.assertEqual(self.transports[0].calls, [("echo", {"msg": "hi"})])

    async def test_lost_connection_marks_failed_and_stale(self) -> None:
        manager = self._manager({"call_error": MCPConnectionClosed("server process exited")})
        await manager.connect(self.artifact)
        with self.assertRaises(ToolExecutionError) as ctx:
            await manager.invoke_tool("echo", {"msg": "hi"})
        self.assertTrue(ctx.exception.connection_lost)
        self.assertTrue(ctx.exception.stale)
        self.assertIs(manager.status, ConnectionStatus.FAILED)
        self.assertFalse(manager.catalogue)
        self.assertTrue(self.transports[0].closed)

    async def test_tool_reported_error_is_not_stale(self) -> None:
        error_result = ToolResult(content=[{"type": "text", "text": "insufficient funds"}], is_error=True)
        manager = self._manager({"call_result": error_result})
        await manager.connect(self.artifact)
        with self.assertRaisesRegex(ToolExecutionError, "insufficient funds") as ctx:
            await manager.invoke_tool("echo", {})
        self.assertFalse(ctx.exception.stale)
        self.assertIs(manager.status, ConnectionStatus.READY)

    async def test_teardown_is_idempotent(self) -> None:
        manager = self._manager()
        await manager.connect(self.artifact)
        await manager.teardown()
        await manager.teardown()
        self.assertIs(manager.status, ConnectionStatus.UNINITIALIZED)
        self.assertFalse(manager.catalogue)
        self.assertTrue(self.transports[0].closed)

    async def test_connects_to_bundled_wallet_server(self) -> None:
        artifact = Path(self._temp_dir.name) / "wallet_server.py"
        shutil.copyfile(WALLET_SERVER, artifact)
        manager = ConnectionManager(settings=ToolServerConfig(handshake_timeout_seconds=10))
        try:
            await manager.connect(artifact)
            self.assertEqual(manager.catalogue.names(), ["connect-wallet", "disconnect-wallet", "get-wallet-state"])
            result = await manager.invoke_tool("connect-wallet", {"address": "0x1234"})
            self.assertEqual(result.text, "Connecting to wallet 0x1234...")
        finally:
            await manager.teardown()
        self.assertIs(manager.status, ConnectionStatus.UNINITIALIZED)


class LaunchCommandTests(unittest.TestCase):
    def test_launch_command_follows_artifact_kind(self) -> None:
        settings = ToolServerConfig(args=["--verbose"])
        self.assertEqual(
            resolve_launch_command(Path("/srv/server.py"), settings),
            (sys.executable, ["/srv/server.py", "--verbose"]),
        )
        self.assertEqual(
            resolve_launch_command(Path("/srv/build/index.js"), settings),
            ("node", ["/srv/build/index.js", "--verbose"]),
        )
        self.assertEqual(
            resolve_launch_command(Path("/srv/wallet-server"), settings),
            ("/srv/wallet-server", ["--verbose"]),
        )

    def test_configured_command_wins(self) -> None:
        settings = ToolServerConfig(command="deno", args=["--allow-net"])
        self.assertEqual(
            resolve_launch_command(Path("/srv/server.ts"), settings),
            ("deno", ["/srv/server.ts", "--allow-net"]),
        )

    @unittest.skipIf(os.name == "nt", "execute bits are POSIX only")
    def test_ensure_executable_adds_missing_bits(self) -> None:
        with tempfile.TemporaryDirectory(prefix="wallet-perms-") as temp_dir:
            path = Path(temp_dir) / "server.js"
            path.write_text("// server\n", encoding="utf-8")
            path.chmod(0o644)
            executable, fixed = ensure_executable(path)
            self.assertTrue(executable)
            self.assertTrue(fixed)
            self.assertTrue(path.stat().st_mode & stat.S_IXUSR)

            executable, fixed = ensure_executable(path)
            self.assertTrue(executable)
            self.assertFalse(fixed)


if __name__ == "__main__":
    unittest.main()
