#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import replace
from pathlib import Path

from mcp_core.config import AppConfig, config_from_dict, load_config
from mcp_core.logging_utils import close_session_logger, create_session_logger
from mcp_session import CommandRebuilder, DiagnosticsProbe, SessionService, SessionSupervisor


async def _read_line(prompt: str) -> str:
    return await asyncio.to_thread(input, prompt)


def _load(path: str) -> AppConfig:
    if Path(path).is_file():
        return load_config(path)
    return config_from_dict({})


def _print_json(payload: object) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


async def async_main() -> int:
    parser = argparse.ArgumentParser(description="Wallet assistant: chat with a model backed by an MCP tool server")
    parser.add_argument("--config", default="./configs/default.json")
    parser.add_argument("--server", default=None, help="Path to the tool server artifact (overrides config)")
    parser.add_argument("--debug", action="store_true", help="Mirror session logs to stderr")
    parser.add_argument("--log-dir", default="./logs", help="Directory for session log files")
    args = parser.parse_args()

    cfg = _load(args.config)
    if args.server:
        cfg = replace(cfg, tool_server=replace(cfg.tool_server, artifact_path=args.server))

    logger, log_path = create_session_logger(log_dir=args.log_dir, debug=args.debug)
    logger.info(
        "startup provider=%s model=%s server=%s env=%s",
        cfg.provider,
        cfg.model_name,
        cfg.resolve_artifact_path(),
        cfg.environment,
    )

    rebuilder = None
    if cfg.tool_server.build_command:
        rebuilder = CommandRebuilder(
            cfg.tool_server.build_command,
            cwd=cfg.project_root,
            timeout_seconds=cfg.tool_server.build_timeout_seconds,
            logger=logger,
        )
    supervisor = SessionSupervisor(cfg, rebuild_hook=rebuilder, logger=logger)
    service = SessionService(
        supervisor,
        diagnostics=DiagnosticsProbe(supervisor, logger=logger),
        rebuilder=rebuilder,
        logger=logger,
    )

    print(f"wallet assistant started | provider={cfg.provider} | model={cfg.model_name}")
    print(f"log file: {log_path}")
    print("Commands: /quit, /init, /status, /tools, /diag, /reset [reason], /rebuild")

    try:
        while True:
            user_input = (await _read_line("> ")).strip()
            if not user_input:
                continue
            if user_input == "/quit":
                return 0
            if user_input == "/init":
                _print_json(await service.init())
                continue
            if user_input == "/status":
                _print_json(service.status())
                continue
            if user_input == "/tools":
                tools = service.status().get("tools") or []
                if tools:
                    print("\n".join(f"{tool['name']}: {tool['description']}" for tool in tools))
                else:
                    print("(no tools; run /init)")
                continue
            if user_input == "/diag":
                _print_json(await service.diagnose())
                continue
            if user_input == "/reset" or user_input.startswith("/reset "):
                reason = user_input[len("/reset"):].strip() or "manual reset"
                await service.degrade(reason)
                print(f"Session reset: {reason}")
                continue
            if user_input == "/rebuild":
                _print_json(await service.rebuild())
                continue

            response = await service.query(user_input, trace_callback=print)
            if "error" in response:
                print(f"Error: {response['error']}")
            else:
                print(response["result"])
    finally:
        await supervisor.shutdown()
        logger.info("shutdown complete")
        close_session_logger(logger)


def main() -> int:
    return asyncio.run(async_main())


if __name__ == "__main__":
    raise SystemExit(main())
