"""Exception hierarchy shared across the engine."""

from __future__ import annotations

from typing import Any, Sequence

__all__ = [
    "TavernKitError",
    "GenerationInProgressError",
    "GenerationCancelledError",
    "BackendError",
    "StructuredOutputError",
    "DuplicateToolError",
    "ToolNotFoundError",
    "ToolExecutionError",
]


class TavernKitError(Exception):
    """Base class for errors raised by tavernkit."""


class GenerationInProgressError(TavernKitError):
    """Raised when a generation is requested while another one is running."""

    def __init__(self, message: str = "A generation is already in progress") -> None:
        super().__init__(message)


class GenerationCancelledError(TavernKitError):
    """Raised inside a pipeline pass when its cancellation token fires."""

    def __init__(self, reason: str = "") -> None:
        self.reason = reason
        super().__init__(reason or "Generation cancelled")


class BackendError(TavernKitError):
    """Raised when a backend returns a response the engine cannot use."""

    def __init__(self, message: str, *, family: str = "", cause: Exception | None = None) -> None:
        self.family = family
        self.cause = cause
        super().__init__(message)


class StructuredOutputError(TavernKitError):
    """Raised when a structured-output reply does not satisfy its JSON schema."""

    def __init__(self, message: str, *, errors: Sequence[str] = (), payload: Any = None) -> None:
        self.errors = tuple(errors)
        self.payload = payload
        super().__init__(message)


class DuplicateToolError(TavernKitError):
    """Raised when attempting to register a tool with a name that already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class ToolNotFoundError(TavernKitError):
    """Raised when a requested tool is not found in the registry."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' not found")


class ToolExecutionError(TavernKitError):
    """Raised when tool execution fails."""

    def __init__(
        self,
        message: str,
        tool_name: str = "",
        cause: Exception | None = None,
    ) -> None:
        self.tool_name = tool_name
        self.cause = cause
        super().__init__(message)
