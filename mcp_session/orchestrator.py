from __future__ import annotations

import json
import logging
from typing import Callable, Dict, List

from mcp_core.errors import AssistantError, QueryError, SessionNotReady
from mcp_core.types import (
    ContentBlock,
    ConversationTurn,
    Message,
    ModelGateway,
    PendingToolInvocation,
    TextBlock,
    ToolResult,
    ToolUseBlock,
    TurnContent,
)

from .connection import ConnectionManager, ConnectionStatus


def format_arguments(arguments: Dict[str, object]) -> str:
    return json.dumps(arguments, ensure_ascii=False, separators=(",", ":"))


def first_text(blocks: List[ContentBlock]) -> str:
    for block in blocks:
        if isinstance(block, TextBlock):
            return block.text
    return ""


def tool_result_content(result: ToolResult) -> TurnContent:
    blocks = result.text_blocks()
    if blocks:
        return blocks
    if result.content:
        return json.dumps(result.content, ensure_ascii=False)
    return "(empty tool result)"


class QueryOrchestrator:
    """
    Drives one user query: model call with the catalogue, then for every tool-use block in
    order, one tool call followed by one tool-free follow-up model call. History lives only
    for the duration of ``run``.
    """

    def __init__(
        self,
        *,
        connection: ConnectionManager,
        gateway: ModelGateway,
        logger: logging.Logger | None = None,
        trace_callback: Callable[[str], None] | None = None,
    ) -> None:
        self.connection = connection
        self.gateway = gateway
        self.logger = logger or logging.getLogger(__name__)
        self.trace_callback = trace_callback

    @staticmethod
    def _summarize_text(text: str, *, limit: int = 120) -> str:
        one_line = " ".join(text.split())
        if len(one_line) <= limit:
            return one_line
        return f"{one_line[:limit]}..."

    def _emit_trace(self, line: str) -> None:
        self.logger.info(line)
        if self.trace_callback is not None:
            self.trace_callback(line)

    @staticmethod
    def _messages(history: List[ConversationTurn]) -> List[Message]:
        return [turn.to_message() for turn in history]

    async def run(self, query: str) -> str:
        if self.connection.status is not ConnectionStatus.READY:
            raise SessionNotReady(self.connection.status.value)
        catalogue = self.connection.catalogue

        history: List[ConversationTurn] = [ConversationTurn.user(query)]
        output: List[str] = []
        try:
            blocks = await self.gateway.complete(messages=self._messages(history), tools=list(catalogue))
            for block in blocks:
                if isinstance(block, TextBlock):
                    output.append(block.text)
                    continue
                if not isinstance(block, ToolUseBlock):
                    continue
                pending = PendingToolInvocation(
                    tool_name=block.name,
                    arguments=dict(block.input),
                    turn_index=len(history) - 1,
                    call_id=block.id,
                )
                output.append(await self._resolve(pending, history))
                follow_up = await self.gateway.complete(messages=self._messages(history))
                output.append(first_text(follow_up))
        except AssistantError as err:
            self.logger.error("query failed (%s/%s): %s", err.kind, err.code, err)
            raise QueryError(str(err), cause=err) from err

        return "\n".join(output)

    async def _resolve(self, pending: PendingToolInvocation, history: List[ConversationTurn]) -> str:
        args_text = format_arguments(pending.arguments)
        self._emit_trace(f"[TOOL CALL] {pending.tool_name} args={self._summarize_text(args_text, limit=160)}")
        result = await self.connection.invoke_tool(pending.tool_name, pending.arguments)
        self._emit_trace(f"[TOOL RESULT] {pending.tool_name} {self._summarize_text(result.text)}")
        history.append(ConversationTurn.user(tool_result_content(result)))
        return f"Calling tool {pending.tool_name} with args {args_text}"
