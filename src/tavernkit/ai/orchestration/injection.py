"""Keyed extension prompts and their placement into chat history."""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Awaitable, Callable, Dict, List, MutableSequence, Optional, Union

from .macros import MacroContext, substitute_params
from .types import ContextPart, PartKind, PromptMessage

__all__ = [
    "ExtensionPromptPosition",
    "ExtensionPromptRole",
    "ExtensionPrompt",
    "InjectionRegistry",
    "PromptFilter",
    "InjectedPartFactory",
]

LOGGER = logging.getLogger(__name__)

PromptFilter = Callable[[], Union[bool, Awaitable[bool]]]
InjectedPartFactory = Callable[["ExtensionPromptRole", str], ContextPart]


class ExtensionPromptPosition(IntEnum):
    NONE = -1
    IN_PROMPT = 0
    IN_CHAT = 1
    BEFORE_PROMPT = 2


class ExtensionPromptRole(IntEnum):
    SYSTEM = 0
    USER = 1
    ASSISTANT = 2

    @property
    def chat_role(self) -> str:
        return ("system", "user", "assistant")[int(self)]


# Within one depth, earlier roles land closer to the newest message.
_ROLE_PRIORITY = (ExtensionPromptRole.SYSTEM, ExtensionPromptRole.USER, ExtensionPromptRole.ASSISTANT)


@dataclass(slots=True)
class ExtensionPrompt:
    value: str
    position: ExtensionPromptPosition = ExtensionPromptPosition.IN_PROMPT
    depth: int = 0
    scan: bool = False
    role: ExtensionPromptRole = ExtensionPromptRole.SYSTEM
    filter: Optional[PromptFilter] = None
    transient: bool = False


def _default_part(role: ExtensionPromptRole, text: str) -> ContextPart:
    return ContextPart(
        kind=PartKind.HISTORY,
        text=f"{text}\n",
        messages=[PromptMessage(role=role.chat_role, content=text)],
        injected=True,
    )


class InjectionRegistry:
    """Extension prompts keyed by an opaque id.

    Callers set entries right before assembly and clear them right after.
    An entry whose value is empty behaves exactly like a missing entry.
    """

    def __init__(self) -> None:
        self._prompts: Dict[str, ExtensionPrompt] = {}

    def __len__(self) -> int:
        return sum(1 for prompt in self._prompts.values() if prompt.value)

    def __contains__(self, key: object) -> bool:
        prompt = self._prompts.get(key)  # type: ignore[arg-type]
        return prompt is not None and bool(prompt.value)

    def set(
        self,
        key: str,
        value: str,
        position: ExtensionPromptPosition | int = ExtensionPromptPosition.IN_PROMPT,
        depth: int = 0,
        scan: bool = False,
        role: ExtensionPromptRole | int = ExtensionPromptRole.SYSTEM,
        filter: Optional[PromptFilter] = None,
        transient: bool = False,
    ) -> None:
        self._prompts[key] = ExtensionPrompt(
            value=value or "",
            position=ExtensionPromptPosition(position),
            depth=max(0, int(depth)),
            scan=bool(scan),
            role=ExtensionPromptRole(role),
            filter=filter,
            transient=transient,
        )

    def entry(self, key: str) -> Optional[ExtensionPrompt]:
        return self._prompts.get(key)

    def clear(self, key: str) -> None:
        self._prompts.pop(key, None)

    def clear_transient(self) -> None:
        for prompt in self._prompts.values():
            if prompt.transient:
                prompt.value = ""

    def reset(self) -> None:
        self._prompts.clear()

    def max_depth(self) -> int:
        depths = [
            prompt.depth
            for prompt in self._prompts.values()
            if prompt.value and prompt.position is ExtensionPromptPosition.IN_CHAT
        ]
        return max(depths, default=0)

    def scan_text(self, separator: str = "\n") -> str:
        """Values flagged for world-info scanning, in key order."""

        return separator.join(
            self._prompts[key].value.strip()
            for key in sorted(self._prompts)
            if self._prompts[key].scan and self._prompts[key].value
        )

    async def get(
        self,
        position: ExtensionPromptPosition | int,
        depth: Optional[int] = None,
        role: ExtensionPromptRole | int | None = None,
        separator: str = "\n",
        *,
        wrap: bool = False,
        context: MacroContext | None = None,
    ) -> str:
        """Return the matching values joined by *separator*.

        Entries are visited in key order. A filter that raises counts as a
        rejection. Transient entries are emptied once they contribute.
        """

        position = ExtensionPromptPosition(position)
        values: List[str] = []
        for key in sorted(self._prompts):
            prompt = self._prompts[key]
            if prompt.position is not position or not prompt.value:
                continue
            if depth is not None and prompt.depth != depth:
                continue
            if role is not None and prompt.role != role:
                continue
            if not await self._passes(key, prompt):
                continue
            values.append(prompt.value.strip())
            if prompt.transient:
                prompt.value = ""
        joined = separator.join(value for value in values if value)
        if wrap and joined:
            if not joined.startswith(separator):
                joined = separator + joined
            if not joined.endswith(separator):
                joined += separator
        if joined and context is not None:
            joined = substitute_params(joined, context)
        return joined

    async def inject(
        self,
        parts: MutableSequence[ContextPart],
        is_continue: bool = False,
        *,
        factory: InjectedPartFactory | None = None,
        context: MacroContext | None = None,
    ) -> List[int]:
        """Splice in-chat prompts into the chronological *parts* list.

        Depth counts from the newest message. For each depth the system,
        user and assistant values are inserted together at
        ``depth + inserted_so_far``; when continuing, depth 0 moves to 1
        because the newest message is the partial reply being extended.
        Returns the chronological indices of every inserted part.
        """

        build = factory or _default_part
        newest_first: List[ContextPart] = list(reversed(parts))
        total_inserted = 0
        for depth in range(self.max_depth() + 1):
            batch: List[ContextPart] = []
            for role in _ROLE_PRIORITY:
                value = (
                    await self.get(
                        ExtensionPromptPosition.IN_CHAT, depth, role, "\n", context=context
                    )
                ).lstrip()
                if value:
                    part = build(role, value)
                    part.injected = True
                    batch.append(part)
            if not batch:
                continue
            target = 1 if is_continue and depth == 0 else depth
            at = min(target + total_inserted, len(newest_first))
            newest_first[at:at] = batch
            total_inserted += len(batch)
            LOGGER.debug("Injected %d prompt(s) at depth %d", len(batch), depth)
        parts[:] = list(reversed(newest_first))
        return self.injected_indices(parts)

    @staticmethod
    def injected_indices(parts: MutableSequence[ContextPart]) -> List[int]:
        return [index for index, part in enumerate(parts) if part.injected]

    async def _passes(self, key: str, prompt: ExtensionPrompt) -> bool:
        if prompt.filter is None:
            return True
        try:
            result: Any = prompt.filter()
            if inspect.isawaitable(result):
                result = await result
        except Exception:
            LOGGER.warning("Extension prompt filter for %r failed; skipping entry", key, exc_info=True)
            return False
        return bool(result)
