from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Tuple

from mcp_core.types import ToolDescriptor


def _default_schema() -> Dict[str, object]:
    return {"type": "object", "properties": {}, "additionalProperties": True}


@dataclass(frozen=True)
class ToolCatalogue:
    """Ordered, immutable snapshot of the tools one connection discovered."""

    tools: Tuple[ToolDescriptor, ...] = ()

    @classmethod
    def empty(cls) -> "ToolCatalogue":
        return cls(())

    @classmethod
    def from_listing(cls, raw_tools: Iterable[Dict[str, object]], *, server_name: str = "server") -> "ToolCatalogue":
        descriptors: List[ToolDescriptor] = []
        seen: set[str] = set()
        for tool in raw_tools:
            name = str(tool.get("name", "")).strip()
            if not name:
                continue
            if name in seen:
                raise ValueError(f"Duplicate tool name: {name}")
            seen.add(name)
            description = str(tool.get("description") or f"MCP tool from {server_name}")
            schema = tool.get("inputSchema")
            if not isinstance(schema, dict):
                schema = _default_schema()
            descriptors.append(ToolDescriptor(name=name, description=description, input_schema=dict(schema)))
        return cls(tuple(descriptors))

    def __len__(self) -> int:
        return len(self.tools)

    def __iter__(self) -> Iterator[ToolDescriptor]:
        return iter(self.tools)

    def __contains__(self, name: object) -> bool:
        return any(tool.name == name for tool in self.tools)

    def __bool__(self) -> bool:
        return bool(self.tools)

    def get(self, name: str) -> ToolDescriptor | None:
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None

    def names(self) -> List[str]:
        return [tool.name for tool in self.tools]

    def to_dicts(self) -> List[Dict[str, object]]:
        return [tool.to_dict() for tool in self.tools]

    def summaries(self) -> List[Dict[str, str]]:
        return [{"name": tool.name, "description": tool.description} for tool in self.tools]
