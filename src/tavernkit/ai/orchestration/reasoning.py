"""Model reasoning ("thinking") capture for streamed and batch replies."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from ...chat.message_model import ChatMessage
from ...services.settings import ReasoningSettings

__all__ = [
    "ReasoningState",
    "ReasoningType",
    "ParsedReasoning",
    "ReasoningHandler",
    "parse_reasoning_from_string",
    "format_reasoning_for_prompt",
]


class ReasoningState(str, Enum):
    NONE = "none"
    THINKING = "thinking"
    DONE = "done"


class ReasoningType(str, Enum):
    MODEL = "model"
    PARSED = "parsed"


@dataclass(slots=True)
class ParsedReasoning:
    reasoning: str
    content: str


def parse_reasoning_from_string(
    text: str,
    settings: ReasoningSettings,
    *,
    strict: bool = True,
) -> Optional[ParsedReasoning]:
    """Split a ``prefix...suffix`` block out of *text*.

    With ``strict`` the block must open the text (leading whitespace aside).
    Returns ``None`` when prefix or suffix is unset, or nothing matched.
    """

    if not settings.prefix or not settings.suffix:
        return None
    anchor = r"^\s*?" if strict else ""
    pattern = re.compile(f"{anchor}{re.escape(settings.prefix)}(.*?){re.escape(settings.suffix)}", re.DOTALL)
    match = pattern.search(text)
    if match is None:
        return None
    content = text[: match.start()] + text[match.end():]
    return ParsedReasoning(reasoning=match.group(1).strip(), content=content.strip())


def format_reasoning_for_prompt(reasoning: str, settings: ReasoningSettings) -> str:
    """Re-wrap stored reasoning for inclusion in history, when enabled."""

    if not reasoning or not settings.add_to_prompts:
        return ""
    return f"{settings.prefix}{reasoning}{settings.suffix}{settings.separator}"


class ReasoningHandler:
    """Tracks reasoning for one generation and times the thinking phase."""

    def __init__(
        self,
        settings: ReasoningSettings,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._clock = clock
        self._initial_time = clock()
        self.state = ReasoningState.NONE
        self.type: ReasoningType | None = None
        self.reasoning = ""
        self.start_time: float | None = None
        self.end_time: float | None = None

    def duration_ms(self) -> Optional[int]:
        if self.start_time is None or self.end_time is None:
            return None
        return int(round((self.end_time - self.start_time) * 1000))

    def process(self, text: str, model_reasoning: str = "") -> str:
        """Absorb the cumulative reply and return the text that stays visible.

        With auto-parse on, a reply that opens with the reasoning prefix is
        diverted into :attr:`reasoning` until the suffix arrives.
        """

        visible = text
        reasoning = model_reasoning
        finished_thinking = bool(text)
        settings = self._settings
        prefix, suffix = settings.prefix, settings.suffix
        if settings.auto_parse and prefix and suffix and text.startswith(prefix) and len(text) > len(prefix):
            body = text[len(prefix):]
            end = body.find(suffix)
            if end >= 0:
                reasoning = body[:end]
                visible = body[end + len(suffix):].strip()
                finished_thinking = True
            else:
                reasoning = body
                visible = ""
                finished_thinking = False
            self.type = ReasoningType.PARSED
        elif reasoning:
            self.type = ReasoningType.MODEL

        reasoning = reasoning.strip()
        if reasoning:
            self.reasoning = reasoning
            if self.state is ReasoningState.NONE:
                self.state = ReasoningState.THINKING
                self.start_time = self._initial_time
        if self.state is ReasoningState.THINKING and finished_thinking and visible:
            self.end_time = self._clock()
            self.state = ReasoningState.DONE
        return visible

    def finish(self) -> None:
        if self.state is ReasoningState.NONE:
            return
        if self.start_time is not None and self.end_time is None:
            self.end_time = self._clock()
        self.state = ReasoningState.DONE

    def apply(self, message: ChatMessage) -> None:
        """Persist reasoning metadata into ``message.extra``."""

        if self.state is ReasoningState.NONE or not self.reasoning:
            return
        message.extra["reasoning"] = self.reasoning
        message.extra["reasoning_duration"] = self.duration_ms()
        message.extra["reasoning_type"] = (self.type or ReasoningType.MODEL).value
