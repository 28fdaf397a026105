"""Core types produced by context assembly and consumed by trimming/rendering.

An :class:`AssembledContext` is an ordered list of :class:`ContextPart`
units. Each part carries both of its renderings, the flat text form used by
text completion backends and the role-tagged form used by chat backends, so
the budget manager can measure and remove units without re-running assembly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

__all__ = [
    "PartKind",
    "ContextPart",
    "PromptMessage",
    "AssembledContext",
]


class PartKind(str, Enum):
    STORY = "story"
    EXAMPLE = "example"
    SEPARATOR = "separator"
    HISTORY = "history"
    JAILBREAK = "jailbreak"
    CONTROL = "control"
    PREFIX = "prefix"


@dataclass(slots=True)
class PromptMessage:
    """One role-tagged message in a chat completion payload."""

    role: str
    content: str
    name: Optional[str] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None
    tool_call_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name:
            payload["name"] = self.name
        if self.tool_calls:
            payload["tool_calls"] = list(self.tool_calls)
        if self.tool_call_id:
            payload["tool_call_id"] = self.tool_call_id
        return payload


@dataclass(slots=True)
class ContextPart:
    """A removable (or pinned) unit of the assembled prompt.

    Attributes:
        kind: Which prompt section the part belongs to.
        text: Flat text rendering, already formatted for the active mode.
        messages: Chat rendering; usually one message, several for tool turns.
        injected: True for entries spliced in by the injection registry.
        pinned: Example blocks that the budget manager must not remove.
        message_index: Position of the source chat message, for history parts.
    """

    kind: PartKind
    text: str = ""
    messages: List[PromptMessage] = field(default_factory=list)
    injected: bool = False
    pinned: bool = False
    message_index: Optional[int] = None

    @property
    def is_history(self) -> bool:
        return self.kind is PartKind.HISTORY

    @property
    def removable(self) -> bool:
        if self.kind is PartKind.EXAMPLE:
            return not self.pinned
        return self.kind is PartKind.HISTORY


@dataclass(slots=True)
class AssembledContext:
    """Assembler output; renders to a flat prompt or a message list."""

    parts: List[ContextPart] = field(default_factory=list)
    chat_mode: bool = False
    stop_strings: List[str] = field(default_factory=list)

    def copy(self) -> "AssembledContext":
        return AssembledContext(
            parts=list(self.parts),
            chat_mode=self.chat_mode,
            stop_strings=list(self.stop_strings),
        )

    def history(self) -> List[ContextPart]:
        return [part for part in self.parts if part.is_history]

    def examples(self) -> List[ContextPart]:
        return [part for part in self.parts if part.kind is PartKind.EXAMPLE]

    def injected_indices(self) -> List[int]:
        """Positions of injected entries within :meth:`history`."""

        return [index for index, part in enumerate(self.history()) if part.injected]

    def first_message_index(self) -> Optional[int]:
        """Oldest chat message index still present in the history."""

        indices = [part.message_index for part in self.history() if part.message_index is not None]
        return min(indices) if indices else None

    def render_text(self) -> str:
        return "".join(part.text for part in self.parts)

    def render_messages(self) -> List[PromptMessage]:
        messages: List[PromptMessage] = []
        for part in self.parts:
            for message in part.messages:
                if message.content or message.tool_calls:
                    messages.append(message)
        return messages
