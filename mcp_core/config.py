from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

from .mcp_types import DEFAULT_STREAM_LIMIT_BYTES


DEFAULT_ARTIFACT_PATH = "mcp_servers/wallet/server.py"

_DEFAULT_KEY_ENV = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}
_DEFAULT_BASE_URL = {
    "anthropic": "https://api.anthropic.com",
    "openai": "https://api.openai.com/v1",
}
_DEFAULT_MODEL = {
    "anthropic": "claude-3-5-sonnet-20241022",
    "openai": "gpt-4o-mini",
}


@dataclass(frozen=True)
class ToolServerConfig:
    artifact_path: str | None = DEFAULT_ARTIFACT_PATH
    command: str | None = None
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    stdio_msg_format: str = "line"
    handshake_timeout_seconds: float = 10.0
    request_timeout_seconds: float = 30.0
    stream_limit_bytes: int = DEFAULT_STREAM_LIMIT_BYTES
    build_command: List[str] = field(default_factory=list)
    build_timeout_seconds: float = 30.0


@dataclass(frozen=True)
class SessionConfig:
    max_retries: int = 2
    retry_delay_seconds: float = 1.0


@dataclass(frozen=True)
class AppConfig:
    provider: str = "anthropic"
    model_name: str = _DEFAULT_MODEL["anthropic"]
    base_url: str = _DEFAULT_BASE_URL["anthropic"]
    api_key_env: str | None = None
    api_key: str | None = None
    max_tokens: int = 1000
    timeout_seconds: int = 60
    environment: str = "development"
    project_root: str | None = None
    tool_server: ToolServerConfig = field(default_factory=ToolServerConfig)
    session: SessionConfig = field(default_factory=SessionConfig)

    def resolve_api_key(self) -> str:
        if self.api_key and self.api_key.strip():
            return self.api_key.strip()

        if self.api_key_env:
            api_key_from_env = os.environ.get(self.api_key_env, "").strip()
            if api_key_from_env:
                return api_key_from_env

        fallback_env = _DEFAULT_KEY_ENV.get(self.provider, "ANTHROPIC_API_KEY")
        return os.environ.get(fallback_env, "").strip()

    def credential_env_name(self) -> str:
        return self.api_key_env or _DEFAULT_KEY_ENV.get(self.provider, "ANTHROPIC_API_KEY")

    def resolve_artifact_path(self) -> Path | None:
        raw = self.tool_server.artifact_path
        if not raw:
            return None
        path = Path(raw).expanduser()
        if path.is_absolute():
            return path
        root = Path(self.project_root).expanduser() if self.project_root else Path.cwd()
        return root / path


_ENV_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _is_env_var_name(value: str) -> bool:
    return bool(_ENV_NAME_PATTERN.match(value))


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _to_float(value: object, default: float, *, minimum: float = 0.0) -> float:
    try:
        parsed = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    if parsed < minimum:
        return default
    return parsed


def _to_int(value: object, default: int, *, minimum: int = 0) -> int:
    try:
        parsed = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    if parsed < minimum:
        return default
    return parsed


def _to_str_list(value: object) -> List[str]:
    if isinstance(value, str):
        return value.split()
    if isinstance(value, list):
        return [str(part) for part in value]
    return []


def _to_str_dict(value: object) -> Dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(k): str(v) for k, v in value.items()}


def _parse_tool_server(raw: object) -> ToolServerConfig:
    item = raw if isinstance(raw, dict) else {}
    defaults = ToolServerConfig()

    artifact_path = defaults.artifact_path
    if "artifact_path" in item:
        artifact_path = _optional_str(item.get("artifact_path"))

    stdio_msg_format = str(item.get("stdio_msg_format", "line")).strip().lower() or "line"
    if stdio_msg_format not in {"auto", "line", "content-length"}:
        stdio_msg_format = "line"

    return ToolServerConfig(
        artifact_path=artifact_path,
        command=_optional_str(item.get("command")),
        args=_to_str_list(item.get("args", [])),
        env=_to_str_dict(item.get("env", {})),
        stdio_msg_format=stdio_msg_format,
        handshake_timeout_seconds=_to_float(
            item.get("handshake_timeout_seconds"), defaults.handshake_timeout_seconds, minimum=0.001
        ),
        request_timeout_seconds=_to_float(
            item.get("request_timeout_seconds"), defaults.request_timeout_seconds, minimum=0.001
        ),
        stream_limit_bytes=_to_int(item.get("stream_limit_bytes"), defaults.stream_limit_bytes, minimum=1024),
        build_command=_to_str_list(item.get("build_command", [])),
        build_timeout_seconds=_to_float(
            item.get("build_timeout_seconds"), defaults.build_timeout_seconds, minimum=0.001
        ),
    )


def _parse_session(raw: object) -> SessionConfig:
    item = raw if isinstance(raw, dict) else {}
    defaults = SessionConfig()
    return SessionConfig(
        max_retries=_to_int(item.get("max_retries"), defaults.max_retries),
        retry_delay_seconds=_to_float(item.get("retry_delay_seconds"), defaults.retry_delay_seconds),
    )


def config_from_dict(raw: Dict[str, object]) -> AppConfig:
    provider = str(raw.get("provider", "anthropic")).strip().lower() or "anthropic"
    if provider not in _DEFAULT_KEY_ENV:
        raise ValueError(f"Unsupported provider: {provider}")

    api_key = _optional_str(raw.get("api_key"))
    api_key_env: str | None = None
    candidate = _optional_str(raw.get("api_key_env"))
    if candidate:
        if _is_env_var_name(candidate):
            api_key_env = candidate
        elif api_key is None:
            # A literal key placed in api_key_env is treated as api_key.
            api_key = candidate
    if api_key_env is None:
        api_key_env = _DEFAULT_KEY_ENV[provider]

    return AppConfig(
        provider=provider,
        model_name=_optional_str(raw.get("model_name")) or _DEFAULT_MODEL[provider],
        base_url=_optional_str(raw.get("base_url")) or _DEFAULT_BASE_URL[provider],
        api_key_env=api_key_env,
        api_key=api_key,
        max_tokens=_to_int(raw.get("max_tokens"), 1000, minimum=1),
        timeout_seconds=_to_int(raw.get("timeout_seconds"), 60, minimum=1),
        environment=_optional_str(raw.get("environment")) or "development",
        project_root=_optional_str(raw.get("project_root")),
        tool_server=_parse_tool_server(raw.get("tool_server")),
        session=_parse_session(raw.get("session")),
    )


def load_config(path: str) -> AppConfig:
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"Config root must be a JSON object: {path}")
    return config_from_dict(raw)
