from __future__ import annotations

import asyncio
import http.client
import json
import logging
import socket
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence
from urllib import error, request

from .config import AppConfig
from .errors import ModelGatewayError
from .types import ContentBlock, Message, ModelGateway, TextBlock, ToolDescriptor, ToolUseBlock


ANTHROPIC_VERSION = "2023-06-01"


def _http_json(
    *,
    url: str,
    headers: Dict[str, str],
    payload: Dict[str, object] | None,
    timeout_seconds: float,
) -> Dict[str, object]:
    body = json.dumps(payload).encode("utf-8") if payload is not None else None
    req = request.Request(
        url=url,
        data=body,
        method="POST" if payload is not None else "GET",
        headers={"Content-Type": "application/json", **headers},
    )
    try:
        with request.urlopen(req, timeout=timeout_seconds) as resp:  # noqa: S310
            raw = resp.read().decode("utf-8", errors="replace")
    except error.HTTPError as err:
        detail = err.read().decode("utf-8", errors="replace")[:500] if err.fp is not None else ""
        raise ModelGatewayError(f"HTTP {err.code} from {url}: {detail or err.reason}", status=err.code) from err
    except error.URLError as err:
        if isinstance(err.reason, (socket.timeout, TimeoutError)):
            raise ModelGatewayError(f"Request to {url} timed out after {timeout_seconds}s", timeout=True) from err
        raise ModelGatewayError(f"Model API unreachable ({url}): {err.reason}") from err
    except (socket.timeout, TimeoutError) as err:
        raise ModelGatewayError(f"Request to {url} timed out after {timeout_seconds}s", timeout=True) from err
    except (http.client.HTTPException, OSError) as err:
        raise ModelGatewayError(f"Model API connection failed ({url}): {err!r}") from err
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as err:
        raise ModelGatewayError(f"Invalid JSON from {url}: {raw[:200]}") from err
    if not isinstance(data, dict):
        raise ModelGatewayError(f"Unexpected response type from {url}: {type(data).__name__}")
    return data


@dataclass(frozen=True)
class AnthropicClient(ModelGateway):
    api_key: str
    model_name: str
    base_url: str = "https://api.anthropic.com"
    max_tokens: int = 1000
    timeout_seconds: int = 60
    logger: logging.Logger | None = None

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def _url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/v1/{path}"

    def build_payload(
        self,
        messages: List[Message],
        tools: Optional[Sequence[ToolDescriptor]],
    ) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "model": self.model_name,
            "max_tokens": self.max_tokens,
            "messages": messages,
        }
        if tools:
            payload["tools"] = [tool.to_dict() for tool in tools]
        return payload

    @staticmethod
    def parse_content(data: Dict[str, object]) -> List[ContentBlock]:
        content = data.get("content")
        if not isinstance(content, list):
            raise ModelGatewayError("Model response has no content list")
        blocks: List[ContentBlock] = []
        for item in content:
            if not isinstance(item, dict):
                continue
            block_type = item.get("type")
            if block_type == "text":
                blocks.append(TextBlock(text=str(item.get("text", ""))))
            elif block_type == "tool_use":
                tool_input = item.get("input")
                blocks.append(
                    ToolUseBlock(
                        id=str(item.get("id", "")),
                        name=str(item.get("name", "")),
                        input=tool_input if isinstance(tool_input, dict) else {},
                    ),
                )
        return blocks

    async def complete(
        self,
        *,
        messages: List[Message],
        tools: Optional[Sequence[ToolDescriptor]] = None,
    ) -> List[ContentBlock]:
        payload = self.build_payload(messages, tools)
        if self.logger:
            self.logger.debug("request payload: %s", json.dumps(payload, ensure_ascii=False, indent=2))
        data = await asyncio.to_thread(
            _http_json,
            url=self._url("messages"),
            headers=self._headers(),
            payload=payload,
            timeout_seconds=self.timeout_seconds,
        )
        if self.logger:
            self.logger.debug("raw response content: %s", json.dumps(data.get("content"), ensure_ascii=False, indent=2))
        return self.parse_content(data)

    async def list_models(self) -> List[str]:
        data = await asyncio.to_thread(
            _http_json,
            url=self._url("models"),
            headers=self._headers(),
            payload=None,
            timeout_seconds=self.timeout_seconds,
        )
        models = data.get("data")
        if not isinstance(models, list):
            return []
        return [str(item.get("id")) for item in models if isinstance(item, dict) and item.get("id")]


@dataclass(frozen=True)
class OpenAICompatClient(ModelGateway):
    api_key: str
    model_name: str
    base_url: str = "https://api.openai.com/v1"
    max_tokens: int = 1000
    timeout_seconds: int = 60
    logger: logging.Logger | None = None

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    @staticmethod
    def _flatten_message(message: Message) -> Message:
        content = message.get("content")
        if isinstance(content, list):
            texts = [str(block.get("text", "")) for block in content if isinstance(block, dict)]
            return {"role": message.get("role"), "content": "\n".join(text for text in texts if text)}
        return dict(message)

    def build_payload(
        self,
        messages: List[Message],
        tools: Optional[Sequence[ToolDescriptor]],
    ) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "model": self.model_name,
            "max_tokens": self.max_tokens,
            "messages": [self._flatten_message(message) for message in messages],
        }
        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.input_schema,
                    },
                }
                for tool in tools
            ]
            payload["tool_choice"] = "auto"
        return payload

    @staticmethod
    def parse_choice(data: Dict[str, object]) -> List[ContentBlock]:
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise ModelGatewayError("Model response has no choices")
        choice = choices[0].get("message") or {}
        blocks: List[ContentBlock] = []
        text = str(choice.get("content") or "")
        if text:
            blocks.append(TextBlock(text=text))
        for raw_call in choice.get("tool_calls") or []:
            function_part = raw_call.get("function") or {}
            args_text = function_part.get("arguments") or "{}"
            try:
                parsed_args = json.loads(args_text)
            except json.JSONDecodeError as err:
                raise ModelGatewayError(f"Tool arguments are not valid JSON: {args_text[:200]}") from err
            if not isinstance(parsed_args, dict):
                raise ModelGatewayError(
                    f"Tool arguments must be JSON object, got: {type(parsed_args).__name__}",
                )
            blocks.append(
                ToolUseBlock(
                    id=str(raw_call.get("id", "")),
                    name=str(function_part.get("name", "")),
                    input=parsed_args,
                ),
            )
        return blocks

    async def complete(
        self,
        *,
        messages: List[Message],
        tools: Optional[Sequence[ToolDescriptor]] = None,
    ) -> List[ContentBlock]:
        payload = self.build_payload(messages, tools)
        if self.logger:
            self.logger.debug("request payload: %s", json.dumps(payload, ensure_ascii=False, indent=2))
        data = await asyncio.to_thread(
            _http_json,
            url=f"{self.base_url.rstrip('/')}/chat/completions",
            headers=self._headers(),
            payload=payload,
            timeout_seconds=self.timeout_seconds,
        )
        return self.parse_choice(data)

    async def list_models(self) -> List[str]:
        data = await asyncio.to_thread(
            _http_json,
            url=f"{self.base_url.rstrip('/')}/models",
            headers=self._headers(),
            payload=None,
            timeout_seconds=self.timeout_seconds,
        )
        models = data.get("data")
        if not isinstance(models, list):
            return []
        return [str(item.get("id")) for item in models if isinstance(item, dict) and item.get("id")]


def build_gateway(config: AppConfig, api_key: str, *, logger: logging.Logger | None = None) -> ModelGateway:
    if config.provider == "openai":
        return OpenAICompatClient(
            api_key=api_key,
            model_name=config.model_name,
            base_url=config.base_url,
            max_tokens=config.max_tokens,
            timeout_seconds=config.timeout_seconds,
            logger=logger,
        )
    return AnthropicClient(
        api_key=api_key,
        model_name=config.model_name,
        base_url=config.base_url,
        max_tokens=config.max_tokens,
        timeout_seconds=config.timeout_seconds,
        logger=logger,
    )
