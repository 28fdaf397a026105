"""Function-tool declarations shared by the registry and executor."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Mapping, Protocol, runtime_checkable

__all__ = [
    "ToolSpec",
    "ToolHandler",
    "AsyncToolHandler",
    "Tool",
    "SimpleTool",
]


# -----------------------------------------------------------------------------
# Tool Specification
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Declaration of a function tool offered to the model.

    Attributes:
        name: Unique identifier for the tool.
        description: Text shown to the model.
        parameters: JSON Schema for the tool's arguments.
        display_name: Label stored with recorded invocations.
        stealth: When True, invocations are not recorded in chat and the
            generation ends after the call.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    display_name: str = ""
    stealth: bool = False

    def to_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters) if self.parameters else {
                    "type": "object",
                    "properties": {},
                },
            },
        }


# -----------------------------------------------------------------------------
# Handlers
# -----------------------------------------------------------------------------

ToolHandler = Callable[[Mapping[str, Any]], Any]
AsyncToolHandler = Callable[[Mapping[str, Any]], Coroutine[Any, Any, Any]]


@runtime_checkable
class Tool(Protocol):
    """A named tool the executor can run."""

    @property
    def name(self) -> str:
        ...

    @property
    def spec(self) -> ToolSpec:
        ...

    async def execute(self, arguments: Mapping[str, Any]) -> Any:
        ...


@dataclass
class SimpleTool:
    """Tool backed by a plain sync or async callable.

    Example:
        tool = SimpleTool(
            spec=ToolSpec(name="roll_dice", description="Roll NdM dice"),
            handler=lambda args: random.randint(1, int(args.get("sides", 6))),
        )
    """

    spec: ToolSpec
    handler: ToolHandler | AsyncToolHandler
    _is_async: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        self._is_async = asyncio.iscoroutinefunction(self.handler)

    @property
    def name(self) -> str:
        return self.spec.name

    async def execute(self, arguments: Mapping[str, Any]) -> Any:
        if self._is_async:
            return await self.handler(arguments)  # type: ignore[misc]
        return self.handler(arguments)
