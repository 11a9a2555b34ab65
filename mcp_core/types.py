from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence, Union


Message = Dict[str, object]
TurnContent = Union[str, List[Dict[str, object]]]


@dataclass(frozen=True)
class TextBlock:
    text: str
    type: str = field(default="text", init=False)


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    input: Dict[str, object]
    type: str = field(default="tool_use", init=False)


ContentBlock = Union[TextBlock, ToolUseBlock]


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    input_schema: Dict[str, object]

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": dict(self.input_schema),
        }


@dataclass(frozen=True)
class ConversationTurn:
    role: str
    content: TurnContent

    @classmethod
    def user(cls, content: TurnContent) -> "ConversationTurn":
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: TurnContent) -> "ConversationTurn":
        return cls(role="assistant", content=content)

    def to_message(self) -> Message:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {"role": self.role, "content": [dict(block) for block in self.content]}

    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "\n".join(
            str(block.get("text", "")) for block in self.content if block.get("type") == "text"
        )


@dataclass(frozen=True)
class ToolResult:
    content: List[Dict[str, object]] = field(default_factory=list)
    is_error: bool = False

    @property
    def text(self) -> str:
        chunks: List[str] = []
        for item in self.content:
            if item.get("type") == "text":
                chunks.append(str(item.get("text", "")))
        return "\n".join(chunk for chunk in chunks if chunk)

    def text_blocks(self) -> List[Dict[str, object]]:
        return [
            {"type": "text", "text": str(item.get("text", ""))}
            for item in self.content
            if item.get("type") == "text"
        ]


@dataclass(frozen=True)
class PendingToolInvocation:
    tool_name: str
    arguments: Dict[str, object]
    turn_index: int
    call_id: str = ""


class ModelGateway(Protocol):
    async def complete(
        self,
        *,
        messages: List[Message],
        tools: Optional[Sequence[ToolDescriptor]] = None,
    ) -> List[ContentBlock]: ...

    async def list_models(self) -> List[str]: ...
