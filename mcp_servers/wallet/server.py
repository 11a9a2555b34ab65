#!/usr/bin/env python3
from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict, Tuple

# stdout is the protocol channel; diagnostics go to stderr.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger("wallet-mcp")

PROTOCOL_VERSION = "2024-11-05"

wallet_state: Dict[str, Any] = {"address": None, "isConnected": False}


def read_frame() -> Tuple[Dict[str, Any] | None, str]:
    """Read one request; returns the payload and the framing it arrived in."""
    while True:
        line = sys.stdin.buffer.readline()
        if not line:
            return None, "line"
        if line.strip():
            break

    text = line.decode("utf-8", errors="replace").strip()
    if not text.lower().startswith("content-length:"):
        payload = json.loads(text)
        if not isinstance(payload, dict):
            raise ValueError("Invalid request payload")
        return payload, "line"

    content_length = int(text.split(":", 1)[1].strip())
    while True:
        header = sys.stdin.buffer.readline()
        if not header or header in (b"\r\n", b"\n"):
            break
    body = sys.stdin.buffer.read(content_length)
    if not body:
        return None, "content-length"
    payload = json.loads(body.decode("utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("Invalid request payload")
    return payload, "content-length"


def write_frame(payload: Dict[str, Any], framing: str) -> None:
    body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    if framing == "line":
        sys.stdout.buffer.write(body + b"\n")
    else:
        sys.stdout.buffer.write(f"Content-Length: {len(body)}\r\n\r\n".encode("ascii"))
        sys.stdout.buffer.write(body)
    sys.stdout.buffer.flush()


def ok(request_id: Any, result: Dict[str, Any]) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def err(request_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def text_result(text: str, *, is_error: bool = False) -> Dict[str, Any]:
    result: Dict[str, Any] = {"content": [{"type": "text", "text": text}]}
    if is_error:
        result["isError"] = True
    return result


def connect_wallet(address: str | None) -> Dict[str, Any]:
    if address:
        wallet_state.update(address=address, isConnected=True)
        return {"success": True, "address": address}
    if wallet_state["isConnected"] and wallet_state["address"]:
        return {"success": True, "address": wallet_state["address"]}
    return {"success": False, "error": "No wallet connected. Connect wallet in client first."}


def disconnect_wallet() -> Dict[str, Any]:
    wallet_state.update(address=None, isConnected=False)
    return {"success": True}


def handle_initialize(request_id: Any) -> Dict[str, Any]:
    return ok(
        request_id,
        {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {
                "tools": {},
            },
            "serverInfo": {
                "name": "wallet",
                "version": "1.0.0",
            },
        },
    )


def handle_tools_list(request_id: Any) -> Dict[str, Any]:
    return ok(
        request_id,
        {
            "tools": [
                {
                    "name": "connect-wallet",
                    "description": "Connect to a crypto wallet",
                    "inputSchema": {
                        "type": "object",
                        "properties": {
                            "address": {
                                "type": "string",
                                "description": "The address of the wallet to connect to",
                            },
                        },
                        "additionalProperties": False,
                    },
                },
                {
                    "name": "disconnect-wallet",
                    "description": "Disconnect the currently connected wallet",
                    "inputSchema": {
                        "type": "object",
                        "properties": {},
                        "additionalProperties": False,
                    },
                },
                {
                    "name": "get-wallet-state",
                    "description": "Return the connected wallet address, if any",
                    "inputSchema": {
                        "type": "object",
                        "properties": {},
                        "additionalProperties": False,
                    },
                },
            ],
        },
    )


def handle_tools_call(request_id: Any, params: Dict[str, Any]) -> Dict[str, Any]:
    name = str(params.get("name", "")).strip()
    arguments = params.get("arguments")
    if not isinstance(arguments, dict):
        arguments = {}

    if name == "connect-wallet":
        address = arguments.get("address")
        result = connect_wallet(str(address).strip() if address else None)
        if result["success"]:
            return ok(request_id, text_result(f"Connecting to wallet {result['address']}..."))
        return ok(request_id, text_result(result["error"], is_error=True))

    if name == "disconnect-wallet":
        disconnect_wallet()
        return ok(request_id, text_result("Wallet disconnected."))

    if name == "get-wallet-state":
        return ok(request_id, text_result(json.dumps(wallet_state)))

    return err(request_id, -32601, f"Unknown tool: {name}")


def main() -> int:
    logger.info("Wallet MCP Server running on stdio")
    while True:
        request, framing = read_frame()
        if request is None:
            return 0

        request_id = request.get("id")
        method = str(request.get("method", "")).strip()
        params = request.get("params")
        if not isinstance(params, dict):
            params = {}

        if method == "initialize":
            write_frame(handle_initialize(request_id), framing)
            continue
        if method.startswith("notifications/"):
            continue
        if method == "tools/list":
            write_frame(handle_tools_list(request_id), framing)
            continue
        if method == "tools/call":
            write_frame(handle_tools_call(request_id, params), framing)
            continue

        write_frame(err(request_id, -32601, f"Unknown method: {method}"), framing)


if __name__ == "__main__":
    raise SystemExit(main())
