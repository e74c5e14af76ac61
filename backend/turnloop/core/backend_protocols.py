"""Boundary Protocols — contracts between the engine and its collaborators.

Invariants:
    - Core NEVER imports from the shell; dependency arrows point inward only
    - A backend reports failures as a trailing `error` event or by raising;
      the streaming adapter treats both the same way
    - Collaborator providers are niladic coroutines returning zero or more messages

Design Decisions:
    - Protocol over ABC: structural subtyping, test doubles need no inheritance
    - ModelRequest is a plain dataclass: the backend decides how to render it
"""

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol


class CancellationLike(Protocol):
    """Structural contract for the run's cancellation token."""

    @property
    def cancelled(self) -> bool: ...

    async def wait(self) -> None: ...

    async def race(self, awaitable: Awaitable[Any]) -> Any: ...


@dataclass
class ToolSchema:
    """What the model is told about a tool."""
    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass
class ModelRequest:
    """One incremental generation call."""
    system_prompt: str
    messages: list
    tools: list[ToolSchema] = field(default_factory=list)


class ModelBackend(Protocol):
    """Language-model backend consumed as an abstract streaming call."""

    def stream(
        self, request: ModelRequest, cancel: CancellationLike | None = None,
    ) -> AsyncIterator[Any]: ...


MessagesProvider = Callable[[], Awaitable[list]]
ContextTransform = Callable[[list, "CancellationLike | None"], Awaitable[list]]
