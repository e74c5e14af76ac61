"""Tool Registry — name -> Tool capability, resolved once per tool call.

Invariants:
    - Tool names are unique within a registry (DuplicateToolError otherwise)
    - A tool without `execute` is valid to register; calling it yields an
      error tool-result, never an exception
    - Iteration order is registration order (schemas are stable across turns)

Design Decisions:
    - Explicit registration over discovery: every tool visible where the registry
      is built
"""

from collections.abc import Awaitable, Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

from turnloop.core.backend_protocols import CancellationLike, ToolSchema
from turnloop.core.errors import DuplicateToolError

UpdateFn = Callable[[Any], None]
ToolExecute = Callable[
    [str, dict[str, Any], CancellationLike | None, UpdateFn], Awaitable[Any],
]


def _empty_schema() -> dict[str, Any]:
    return {"type": "object", "properties": {}}


@dataclass
class Tool:
    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=_empty_schema)
    execute: ToolExecute | None = None

    def schema(self) -> ToolSchema:
        return ToolSchema(
            name=self.name, description=self.description,
            parameters=self.parameters,
        )


class ToolRegistry:
    """Unique-name mapping of the tools available to one context."""

    def __init__(self, tools: Iterable[Tool] = ()):
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise DuplicateToolError(tool.name)
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def schemas(self) -> list[ToolSchema]:
        return [tool.schema() for tool in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[Tool]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)
