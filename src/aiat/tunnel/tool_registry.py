"""Registry mapping tool names to local implementations."""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str = ""
    input_schema: Mapping[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )

    @property
    def required(self) -> tuple[str, ...]:
        return tuple(self.input_schema.get("required") or ())

    def to_dict(self) -> dict[str, Any]:
        """Return the advertised ``tools/list`` entry."""

        properties: dict[str, Any] = {}
        for key, prop in (self.input_schema.get("properties") or {}).items():
            prop = prop if isinstance(prop, Mapping) else {}
            entry: dict[str, Any] = {
                "type": prop.get("type", "string"),
                "description": prop.get("description", ""),
            }
            if "default" in prop:
                entry["default"] = prop["default"]
            if prop.get("enum"):
                entry["enum"] = list(prop["enum"])
            properties[str(key)] = entry
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": {
                "type": "object",
                "properties": properties,
                "required": list(self.required),
            },
        }


class Tool(Protocol):
    definition: ToolDefinition

    def execute(self, arguments: dict[str, Any]) -> Awaitable[Any] | Any: ...


ToolHandler = Callable[[dict[str, Any]], "Awaitable[Any] | Any"]


@dataclass(frozen=True)
class FunctionTool:
    """Adapter exposing a plain (sync or async) callable as a tool."""

    definition: ToolDefinition
    handler: ToolHandler

    def execute(self, arguments: dict[str, Any]) -> Awaitable[Any] | Any:
        return self.handler(arguments)


class ToolNotFoundError(KeyError):
    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Tool not found: {self.name}"


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def register(self, tool: Tool) -> None:
        name = tool.definition.name
        if name in self._tools:
            raise ValueError(f"tool '{name}' already registered")
        self._tools[name] = tool

    def register_function(
        self,
        name: str,
        handler: ToolHandler,
        *,
        description: str = "",
        input_schema: Mapping[str, Any] | None = None,
    ) -> FunctionTool:
        definition = ToolDefinition(name=name, description=description)
        if input_schema is not None:
            definition = ToolDefinition(name=name, description=description, input_schema=input_schema)
        tool = FunctionTool(definition=definition, handler=handler)
        self.register(tool)
        return tool

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def list(self) -> tuple[Tool, ...]:
        return tuple(self._tools.values())

    def names(self) -> tuple[str, ...]:
        return tuple(self._tools.keys())

    def definitions(self) -> tuple[ToolDefinition, ...]:
        return tuple(tool.definition for tool in self._tools.values())

    async def execute(self, name: str, arguments: Mapping[str, Any] | None = None) -> Any:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        result = tool.execute(dict(arguments or {}))
        if inspect.isawaitable(result):
            result = await result
        return result

    def clear(self) -> None:
        self._tools.clear()


__all__ = [
    "FunctionTool",
    "Tool",
    "ToolDefinition",
    "ToolHandler",
    "ToolNotFoundError",
    "ToolRegistry",
]
