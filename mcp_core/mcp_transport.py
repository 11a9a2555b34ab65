from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Dict, List

from .mcp_types import (
    CLIENT_INFO,
    PROTOCOL_VERSION,
    SUPPORTED_PROTOCOL_VERSIONS,
    MCPConnectionClosed,
    MCPError,
    MCPServerConfig,
)
from .types import ToolResult


class StdioMCPClient:
    """
    MCP client over a spawned child's stdin/stdout using JSON-RPC framing.

    One process is kept for the lifetime of the client. ``initialize`` spawns it and performs
    the handshake; every later request reuses the same pipes. A process that dies is never
    respawned here: requests fail with ``MCPConnectionClosed`` and the owner decides whether
    to reconnect.
    """

    def __init__(self, config: MCPServerConfig, *, logger: logging.Logger | None = None) -> None:
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self._proc: asyncio.subprocess.Process | None = None
        self._stdin: asyncio.StreamWriter | None = None
        self._stdout: asyncio.StreamReader | None = None
        self._stderr: asyncio.StreamReader | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._stderr_tail: List[str] = []
        self._initialized = False
        self._server_info: Dict[str, object] = {}
        self._request_lock = asyncio.Lock()
        self._next_request_id = 1
        self._configured_msg_format = self._normalize_msg_format(config.stdio_msg_format)
        self._active_msg_format = self._configured_msg_format

    @property
    def is_alive(self) -> bool:
        return self._initialized and self._proc is not None and self._proc.returncode is None

    def _debug_log(self, message: str) -> None:
        self.logger.debug("[mcp:%s] %s", self.config.name, message)

    async def _consume_stderr(self) -> None:
        if self._stderr is None:
            return
        while True:
            chunk = await self._stderr.readline()
            if not chunk:
                return
            text = chunk.decode("utf-8", errors="replace").rstrip("\n")
            if len(self._stderr_tail) >= 50:
                self._stderr_tail.pop(0)
            self._stderr_tail.append(text)
            self._debug_log(f"stderr: {text}")

    def _stderr_hint(self) -> str:
        if not self._stderr_tail:
            return "stderr=empty"
        preview = " | ".join(self._stderr_tail[-5:])
        return f"stderr_tail={preview}"

    def _returncode(self) -> int | None:
        return self._proc.returncode if self._proc is not None else None

    @staticmethod
    def _normalize_msg_format(value: object) -> str:
        candidate = str(value).strip().lower()
        if candidate in {"line", "content-length", "auto"}:
            return candidate
        return "line"

    @staticmethod
    def _build_content_length_frame(payload: Dict[str, object]) -> bytes:
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        header = f"Content-Length: {len(body)}\r\n\r\n".encode("ascii")
        return header + body

    @staticmethod
    def _build_line_frame(payload: Dict[str, object]) -> bytes:
        return (json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8")

    @staticmethod
    async def _read_content_length_frame(stream: asyncio.StreamReader, timeout_seconds: float) -> Dict[str, object]:
        header_bytes = await asyncio.wait_for(stream.readuntil(b"\r\n\r\n"), timeout=timeout_seconds)
        header_text = header_bytes.decode("ascii", errors="replace")
        length = None
        for line in header_text.split("\r\n"):
            if line.lower().startswith("content-length:"):
                length = int(line.split(":", 1)[1].strip())
                break
        if length is None:
            raise MCPError("Missing Content-Length in MCP response")
        body = await asyncio.wait_for(stream.readexactly(length), timeout=timeout_seconds)
        data = json.loads(body.decode("utf-8"))
        if not isinstance(data, dict):
            raise MCPError("Invalid MCP response payload")
        return data

    @staticmethod
    async def _read_line_frame(stream: asyncio.StreamReader, timeout_seconds: float) -> Dict[str, object]:
        while True:
            line = await asyncio.wait_for(stream.readline(), timeout=timeout_seconds)
            if not line:
                raise asyncio.IncompleteReadError(partial=b"", expected=None)
            stripped = line.strip()
            if not stripped:
                continue
            try:
                data = json.loads(stripped.decode("utf-8", errors="replace"))
            except json.JSONDecodeError as err:
                raise MCPError(f"Invalid line-delimited MCP response: {stripped[:200]!r}") from err
            if not isinstance(data, dict):
                raise MCPError("Invalid line-delimited MCP response payload")
            return data

    def _build_frame(self, payload: Dict[str, object], msg_format: str) -> bytes:
        if msg_format == "line":
            return self._build_line_frame(payload)
        return self._build_content_length_frame(payload)

    async def _read_frame(self, stream: asyncio.StreamReader, msg_format: str) -> Dict[str, object]:
        if msg_format == "line":
            return await self._read_line_frame(stream, self.config.timeout_seconds)
        return await self._read_content_length_frame(stream, self.config.timeout_seconds)

    async def _send(self, payload: Dict[str, object], msg_format: str) -> None:
        if self._stdin is None:
            raise MCPConnectionClosed(f"{self.config.name}: stdin is not open")
        try:
            self._stdin.write(self._build_frame(payload, msg_format))
            await self._stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as err:
            raise MCPConnectionClosed(
                f"{self.config.name}: server closed stdin (rc={self._returncode()}; {self._stderr_hint()})"
            ) from err

    async def _start_process(self) -> None:
        self._debug_log(
            f"start process: {self.config.command} {' '.join(self.config.args)} timeout={self.config.timeout_seconds}s"
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                self.config.command,
                *self.config.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **self.config.env},
                limit=self.config.stream_limit_bytes,
            )
        except OSError as err:
            raise MCPError(f"{self.config.name}: failed to spawn {self.config.command!r}: {err}") from err
        self._proc = proc
        if proc.stdin is None or proc.stdout is None:
            raise MCPError(f"{self.config.name}: failed to open stdio pipes")
        self._stdin = proc.stdin
        self._stdout = proc.stdout
        self._stderr = proc.stderr
        self._initialized = False
        self._stderr_tail = []
        if self._stderr is not None:
            self._stderr_task = asyncio.create_task(self._consume_stderr())
        self._active_msg_format = self._configured_msg_format

    async def _close_process(self) -> None:
        if self._stdin is not None:
            self._stdin.close()
        if self._proc is not None:
            if self._proc.returncode is None:
                try:
                    self._proc.terminate()
                except ProcessLookupError:
                    pass
            try:
                await asyncio.wait_for(self._proc.wait(), timeout=2)
            except asyncio.TimeoutError:
                self._proc.kill()
                await self._proc.wait()
        if self._stderr_task is not None:
            self._stderr_task.cancel()
            try:
                await self._stderr_task
            except asyncio.CancelledError:
                pass
        self._proc = None
        self._stdin = None
        self._stdout = None
        self._stderr = None
        self._stderr_task = None
        self._initialized = False

    async def _try_initialize(self, msg_format: str) -> tuple[bool, str]:
        if self._stdin is None or self._stdout is None:
            return False, "missing stdio stream handles"

        request_id = self._next_request_id
        self._next_request_id += 1
        init_payload = {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": "initialize",
            "params": {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": dict(CLIENT_INFO),
            },
        }
        try:
            self._debug_log(f"send initialize (msg-format={msg_format})")
            await self._send(init_payload, msg_format)
            init_resp = await self._read_frame(self._stdout, msg_format)
        except asyncio.TimeoutError:
            return False, f"initialize timeout (rc={self._returncode()}; {self._stderr_hint()})"
        except (asyncio.IncompleteReadError, MCPConnectionClosed):
            return False, f"initialize stream closed (rc={self._returncode()}; {self._stderr_hint()})"
        except (MCPError, ValueError, asyncio.LimitOverrunError) as err:
            return False, f"initialize parse error={err} (rc={self._returncode()}; {self._stderr_hint()})"
        if "error" in init_resp:
            return False, f"initialize failed: {init_resp['error']}"
        result = init_resp.get("result")
        if not isinstance(result, dict):
            return False, "initialize returned no result object"
        server_version = str(result.get("protocolVersion", "")).strip()
        if server_version not in SUPPORTED_PROTOCOL_VERSIONS:
            return False, f"unsupported protocol version from server: {server_version or '<missing>'}"

        notify_payload = {
            "jsonrpc": "2.0",
            "method": "notifications/initialized",
            "params": {},
        }
        await self._send(notify_payload, msg_format)

        self._server_info = result
        self._active_msg_format = msg_format
        self._initialized = True
        self._debug_log(f"initialize ok (msg-format={msg_format}, protocol={server_version})")
        return True, ""

    async def initialize(self) -> Dict[str, object]:
        async with self._request_lock:
            if self.is_alive:
                return dict(self._server_info)
            if self._proc is not None:
                await self._close_process()
            formats = [self._configured_msg_format]
            if self._configured_msg_format == "auto":
                formats = ["line", "content-length"]
            attempts: List[str] = []
            for fmt in formats:
                await self._start_process()
                ok, detail = await self._try_initialize(fmt)
                if ok:
                    return dict(self._server_info)
                attempts.append(f"{fmt} -> {detail}")
                self._debug_log(f"initialize failed (msg-format={fmt}): {detail}")
                await self._close_process()
            raise MCPError(f"{self.config.name}: initialize failed ({'; '.join(attempts)})")

    async def _request(
        self,
        *,
        method: str,
        params: Dict[str, object] | None = None,
    ) -> Dict[str, object]:
        params = params or {}
        async with self._request_lock:
            if not self._initialized:
                raise MCPError(f"{self.config.name}: client not initialized")
            if self._proc is None or self._proc.returncode is not None or self._stdout is None:
                raise MCPConnectionClosed(
                    f"{self.config.name}: server process exited (rc={self._returncode()}; {self._stderr_hint()})"
                )
            request_id = self._next_request_id
            self._next_request_id += 1
            payload = {
                "jsonrpc": "2.0",
                "id": request_id,
                "method": method,
                "params": params,
            }
            self._debug_log(f"send method={method} id={request_id} (msg-format={self._active_msg_format})")
            await self._send(payload, self._active_msg_format)
            try:
                result_resp = await self._read_response_for_id(request_id)
            except asyncio.TimeoutError as err:
                raise MCPError(
                    f"{self.config.name}: {method} timeout after {self.config.timeout_seconds}s "
                    f"(rc={self._returncode()}; {self._stderr_hint()})"
                ) from err
            except asyncio.IncompleteReadError as err:
                raise MCPConnectionClosed(
                    f"{self.config.name}: {method} stream closed before MCP frame "
                    f"(rc={self._returncode()}; {self._stderr_hint()})"
                ) from err
            except (ValueError, asyncio.LimitOverrunError) as err:
                # The stream position is unknown after a malformed or oversized frame.
                raise MCPConnectionClosed(
                    f"{self.config.name}: {method} returned an unreadable frame: {err}"
                ) from err
            if "error" in result_resp:
                raise MCPError(f"{self.config.name}: {method} failed: {result_resp['error']}")
            self._debug_log(f"recv method={method} id={request_id} ok")
            return result_resp

    async def _read_response_for_id(self, expected_id: int) -> Dict[str, object]:
        if self._stdout is None:
            raise MCPConnectionClosed(f"{self.config.name}: missing stdout stream")
        for _ in range(12):
            resp = await self._read_frame(self._stdout, self._active_msg_format)
            resp_id = resp.get("id")
            if resp_id != expected_id:
                self._debug_log(f"skip frame id={resp_id} expected={expected_id}")
                continue
            return resp
        raise MCPError(f"{self.config.name}: too many unmatched responses for request id={expected_id}")

    async def list_tools(self) -> List[Dict[str, object]]:
        data = await self._request(method="tools/list", params={})
        result = data.get("result")
        if not isinstance(result, dict):
            return []
        tools = result.get("tools")
        if not isinstance(tools, list):
            return []
        return [tool for tool in tools if isinstance(tool, dict)]

    async def call_tool(self, name: str, arguments: Dict[str, object]) -> ToolResult:
        data = await self._request(
            method="tools/call",
            params={
                "name": name,
                "arguments": arguments,
            },
        )
        result = data.get("result")
        if not isinstance(result, dict):
            return ToolResult()
        content = result.get("content")
        blocks: List[Dict[str, object]] = []
        if isinstance(content, list):
            blocks = [item for item in content if isinstance(item, dict)]
        elif "text" in result:
            blocks = [{"type": "text", "text": str(result["text"])}]
        return ToolResult(content=blocks, is_error=bool(result.get("isError", False)))

    async def aclose(self) -> None:
        async with self._request_lock:
            self._debug_log("closing stdio process")
            await self._close_process()
