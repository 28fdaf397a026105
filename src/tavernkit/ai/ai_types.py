"""Shared typing contracts for AI infrastructure."""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Protocol


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        """Return the precise token count for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic fallback estimate when precise counts fail."""
        ...


class GenerationType(str, Enum):
    """Kinds of generation a pipeline run can perform."""

    NORMAL = "normal"
    CONTINUE = "continue"
    SWIPE = "swipe"
    REGENERATE = "regenerate"
    IMPERSONATE = "impersonate"
    QUIET = "quiet"

    @property
    def creates_message(self) -> bool:
        return self in (GenerationType.NORMAL, GenerationType.REGENERATE)


@dataclass(slots=True)
class ToolCall:
    """A model-requested function invocation, normalized across backends."""

    id: str
    name: str
    arguments: str = ""
    index: int = 0

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode the JSON argument string; invalid or empty input yields ``{}``."""

        if not self.arguments:
            return {}
        try:
            value = json.loads(self.arguments)
        except json.JSONDecodeError:
            return {}
        return value if isinstance(value, dict) else {"value": value}

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_openai(cls, payload: Mapping[str, Any], *, index: int = 0) -> "ToolCall":
        function = payload.get("function") or {}
        arguments = function.get("arguments", "")
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        return cls(
            id=str(payload.get("id") or ""),
            name=str(function.get("name") or ""),
            arguments=arguments,
            index=int(payload.get("index", index) or 0),
        )


__all__ = ["TokenCounterProtocol", "GenerationType", "ToolCall"]
