"""Incremental reconciliation of backend output into the session.

The processor owns one target slot for the duration of a generation (a new
message, a new swipe, the message being continued, the input box, or
nothing for quiet runs) and rewrites it from the cumulative text it is fed.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, List, Optional, Sequence

from ...chat.message_model import ChatMessage, SwipeInfo, format_send_date
from ...chat.session import Session
from ...chat.swipes import add_swipe, ensure_swipes, sync_active_to_swipe, sync_swipe_to_active
from ...services.settings import ReasoningSettings
from ..ai_types import GenerationType, TokenCounterProtocol, ToolCall
from ..backends.types import StreamChunk
from .cancellation import CancellationToken
from .events import (
    ChunkCommitted,
    EventBus,
    GenerationErrored,
    GenerationFinished,
    GenerationStarted,
    GenerationStopped,
)
from .reasoning import ReasoningHandler

__all__ = [
    "ProcessorState",
    "StreamingOptions",
    "Stopwatch",
    "StreamingProcessor",
    "fix_markdown",
    "trim_to_end_sentence",
]

LOGGER = logging.getLogger(__name__)

_SENTENCE_END = frozenset('.!?*")}`]$_~' + "。！？”）】’」")


class ProcessorState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    FINISHED = "finished"
    STOPPED = "stopped"
    ERRORED = "errored"

    @property
    def terminal(self) -> bool:
        return self in (ProcessorState.FINISHED, ProcessorState.STOPPED, ProcessorState.ERRORED)


@dataclass(slots=True)
class StreamingOptions:
    """Text clean-up rules applied to every commit.

    Attributes:
        stop_strings: Truncate at the first occurrence of any of these.
        instruct_markers: Raw instruct stop markers, also truncated at.
        name_prefixes: Leading ``Name:`` prefixes to strip.
        trim_sentences: Drop a trailing incomplete sentence on the final pass.
        single_line: Keep only the first line.
        fix_markdown: Close dangling ``*``/``"``/code fences while streaming.
        ticker_interval: Minimum seconds between streamed commits.
    """

    stop_strings: List[str] = field(default_factory=list)
    instruct_markers: List[str] = field(default_factory=list)
    name_prefixes: List[str] = field(default_factory=list)
    trim_sentences: bool = False
    single_line: bool = False
    fix_markdown: bool = True
    ticker_interval: float = 1 / 30
    api: str = ""
    model: str = ""


class Stopwatch:
    """Fixed-interval gate: :meth:`tick` is true at most once per interval."""

    def __init__(self, interval: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._interval = max(0.0, interval)
        self._clock = clock
        self._last: float | None = None

    def tick(self) -> bool:
        now = self._clock()
        if self._last is None or now - self._last >= self._interval:
            self._last = now
            return True
        return False


def fix_markdown(text: str) -> str:
    """Close unterminated code fences, ``*`` emphasis and double quotes."""

    if text.count("```") % 2 == 1:
        return text + ("```" if text.endswith("\n") else "\n```")
    pending: List[tuple[int, str]] = []
    for delimiter in ("*", '"'):
        if text.count(delimiter) % 2 == 1:
            pending.append((text.rfind(delimiter), delimiter))
    for _, delimiter in sorted(pending, reverse=True):
        text += delimiter
    return text


def trim_to_end_sentence(text: str) -> str:
    """Cut *text* after its last sentence-ending character."""

    for index in range(len(text) - 1, -1, -1):
        if text[index] in _SENTENCE_END:
            if index > 0 and text[index - 1].isspace():
                return text[: index - 1].rstrip()
            return text[: index + 1].rstrip()
    return text.rstrip()


def _partial_stop_length(text: str, stop: str) -> int:
    for size in range(min(len(stop) - 1, len(text)), 0, -1):
        if text.endswith(stop[:size]):
            return size
    return 0


class StreamingProcessor:
    """State machine ``idle -> streaming -> finished | stopped | errored``."""

    def __init__(
        self,
        session: Session,
        generation_type: GenerationType,
        *,
        bus: EventBus | None = None,
        counter: TokenCounterProtocol | None = None,
        options: StreamingOptions | None = None,
        reasoning: ReasoningSettings | None = None,
        signal: CancellationToken | None = None,
        name: str | None = None,
        depth: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session = session
        self._depth = depth
        self._type = generation_type
        self._bus = bus or EventBus()
        self._counter = counter
        self._options = options or StreamingOptions()
        self._reasoning = ReasoningHandler(reasoning or ReasoningSettings(), clock=clock)
        self._signal = signal
        self._name = name or session.char_name
        self._clock = clock
        self.state = ProcessorState.IDLE
        self.message_index: Optional[int] = None
        self.text = ""
        self._prefix = ""
        self._latest = ""
        self._extra_swipes: List[str] = []
        self._image: Optional[str] = None
        self._logprobs: List[Any] = []
        self._model_reasoning = ""
        self.tool_calls: List[ToolCall] = []
        self._previous_swipe_id: Optional[int] = None
        self._started_at = clock()
        self.elapsed = 0.0

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def generation_type(self) -> GenerationType:
        return self._type

    @property
    def message(self) -> Optional[ChatMessage]:
        if self.message_index is None or self.message_index >= len(self._session.messages):
            return None
        return self._session.messages[self.message_index]

    @property
    def latest_text(self) -> str:
        return self._latest

    @property
    def reasoning(self) -> str:
        return self._reasoning.reasoning

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self.state is not ProcessorState.IDLE:
            raise RuntimeError(f"Cannot start a processor in state {self.state.value}")
        now = format_send_date()
        session = self._session
        kind = self._type
        if kind in (GenerationType.NORMAL, GenerationType.REGENERATE):
            message = ChatMessage(
                name=self._name,
                mes="",
                send_date=now,
                gen_started=now,
                extra={"api": self._options.api, "model": self._options.model},
            )
            session.messages.append(message)
            ensure_swipes(message)
            self.message_index = len(session.messages) - 1
        elif kind is GenerationType.SWIPE:
            message = self._require_last_message()
            self._previous_swipe_id = message.swipe_id if ensure_swipes(message) else None
            info = SwipeInfo(send_date=now, gen_started=now)
            add_swipe(message, "", info)
            message.gen_started = now
            message.extra.update({"api": self._options.api, "model": self._options.model})
            self.message_index = len(session.messages) - 1
        elif kind is GenerationType.CONTINUE:
            message = self._require_last_message()
            self._prefix = message.mes
            self.message_index = len(session.messages) - 1
        self.state = ProcessorState.STREAMING
        LOGGER.debug("Streaming started (%s) into message %s", kind.value, self.message_index)
        self._bus.publish(
            GenerationStarted(generation_type=kind.value, message_index=self.message_index, depth=self._depth)
        )

    def progress(self, text: str, is_final: bool = False) -> str:
        """Clean cumulative *text* and write it into the target slot."""

        self._latest = text
        visible = self._reasoning.process(text, self._model_reasoning)
        cleaned = self.clean(visible, is_final=is_final)
        self.text = cleaned
        self.elapsed = self._clock() - self._started_at
        message = self.message
        kind = self._type
        if kind is GenerationType.IMPERSONATE:
            self._session.input_text = cleaned
        elif message is not None:
            message.mes = self._prefix + cleaned
            message.gen_finished = format_send_date()
            if is_final and self._counter is not None:
                message.extra["token_count"] = self._counter.count(message.mes)
            sync_active_to_swipe(message)
        self._bus.publish(ChunkCommitted(text=cleaned, message_index=self.message_index, is_final=is_final))
        return cleaned

    def finish(self) -> str:
        if self.state.terminal:
            return self.text
        text = self._finalize()
        message = self.message
        added = 0
        if message is not None:
            added = self._commit_extra_swipes(message)
        self.state = ProcessorState.FINISHED
        LOGGER.debug("Streaming finished after %.2fs (%d extra swipe(s))", self.elapsed, added)
        self._bus.publish(
            GenerationFinished(
                text=text,
                generation_type=self._type.value,
                message_index=self.message_index,
                swipe_count=len(message.swipes or ()) if message is not None else 0,
            )
        )
        return text

    def stop(self) -> str:
        """Abort the request and keep whatever text already arrived."""

        if self.state.terminal:
            return self.text
        self._abort("stopped")
        text = self._finalize()
        self.state = ProcessorState.STOPPED
        LOGGER.debug("Streaming stopped with %d character(s) kept", len(text))
        self._bus.publish(GenerationStopped(text=text, message_index=self.message_index))
        return text

    def error(self, exc: BaseException) -> str:
        if self.state.terminal:
            return self.text
        self._abort("error")
        if self.state is ProcessorState.STREAMING and not self._latest and not self.tool_calls:
            self._release_slot()
            text = self.text
        elif self.state is ProcessorState.STREAMING:
            text = self._finalize()
        else:
            text = self.text
        self.state = ProcessorState.ERRORED
        LOGGER.warning("Streaming failed: %s", exc)
        self._bus.publish(GenerationErrored(error=exc, text=text, message_index=self.message_index))
        return text

    # ------------------------------------------------------------------
    # Drivers
    # ------------------------------------------------------------------
    async def run(self, stream: AsyncIterator[StreamChunk]) -> str:
        """Consume cumulative chunks; commits are coalesced by a ticker."""

        if self.state is ProcessorState.IDLE:
            self.start()
        ticker = Stopwatch(self._options.ticker_interval, clock=self._clock)
        try:
            async for chunk in stream:
                if self._cancelled():
                    return self.stop()
                self._absorb(chunk)
                if ticker.tick():
                    self.progress(self._latest)
        except Exception as exc:
            self.error(exc)
            raise
        finally:
            closer = getattr(stream, "aclose", None)
            if closer is not None:
                await closer()
        if self._cancelled():
            return self.stop()
        return self.finish()

    def run_batch(
        self,
        text: str,
        swipes: Sequence[str] = (),
        reasoning: str = "",
        image: Optional[str] = None,
        tool_calls: Sequence[ToolCall] = (),
    ) -> str:
        """Commit a non-streamed reply through the same path as a stream."""

        if self.state is ProcessorState.IDLE:
            self.start()
        self._absorb(StreamChunk(text=text, swipes=list(swipes), tool_calls=list(tool_calls)))
        self._model_reasoning = reasoning or self._model_reasoning
        self._image = image or self._image
        return self.finish()

    # ------------------------------------------------------------------
    # Text clean-up
    # ------------------------------------------------------------------
    def clean(self, text: str, *, is_final: bool) -> str:
        options = self._options
        result = text
        for prefix in options.name_prefixes:
            marker = f"{prefix}:"
            if prefix and result.startswith(marker):
                result = result[len(marker):].lstrip()
                break
        cut = len(result)
        for stop in options.stop_strings:
            if not stop:
                continue
            index = result.find(stop)
            if index >= 0:
                cut = min(cut, index)
            elif not is_final:
                partial = _partial_stop_length(result, stop)
                if partial:
                    cut = min(cut, len(result) - partial)
        result = result[:cut]
        for marker in options.instruct_markers:
            if marker and marker.strip():
                index = result.find(marker)
                if index >= 0:
                    result = result[:index]
        if options.single_line:
            result = result.split("\n", 1)[0]
        if is_final:
            if options.trim_sentences:
                result = trim_to_end_sentence(result)
            result = result.rstrip()
        elif options.fix_markdown:
            result = fix_markdown(result)
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _require_last_message(self) -> ChatMessage:
        message = self._session.last_message()
        if message is None:
            raise ValueError(f"{self._type.value} generation needs an existing message")
        return message

    def _cancelled(self) -> bool:
        return self._signal is not None and self._signal.cancelled

    def _abort(self, reason: str) -> None:
        if self._signal is not None and not self._signal.cancelled:
            self._signal.cancel(reason)

    def _absorb(self, chunk: StreamChunk) -> None:
        self._latest = chunk.text
        self._extra_swipes = list(chunk.swipes)
        if chunk.state.reasoning:
            self._model_reasoning = chunk.state.reasoning
        if chunk.state.image:
            self._image = chunk.state.image
        if chunk.logprobs:
            self._logprobs.extend(chunk.logprobs)
        if chunk.tool_calls:
            self.tool_calls = list(chunk.tool_calls)

    def _release_slot(self) -> None:
        """Undo the slot taken by :meth:`start` when the backend produced nothing."""

        message = self.message
        if message is None:
            return
        session = self._session
        kind = self._type
        if kind in (GenerationType.NORMAL, GenerationType.REGENERATE):
            if self.message_index == len(session.messages) - 1:
                session.messages.pop()
                self.message_index = None
        elif kind is GenerationType.SWIPE and self._previous_swipe_id is not None:
            if message.swipes and message.swipe_info and len(message.swipes) > 1:
                message.swipes.pop()
                message.swipe_info.pop()
                message.swipe_id = self._previous_swipe_id
                sync_swipe_to_active(message)
        LOGGER.debug("Released empty %s slot after failure", kind.value)

    def _finalize(self) -> str:
        text = self.progress(self._latest, is_final=True)
        self._reasoning.finish()
        message = self.message
        if message is not None:
            self._reasoning.apply(message)
            if self._image:
                message.extra["image"] = self._image
            if self._logprobs:
                message.extra["logprobs"] = list(self._logprobs)
            sync_active_to_swipe(message)
        return text

    def _commit_extra_swipes(self, message: ChatMessage) -> int:
        if self._type not in (GenerationType.NORMAL, GenerationType.REGENERATE, GenerationType.SWIPE):
            return 0
        if not self._extra_swipes or not ensure_swipes(message):
            return 0
        assert message.swipes is not None and message.swipe_info is not None and message.swipe_id is not None
        template = message.swipe_info[message.swipe_id]
        for text in self._extra_swipes:
            message.swipes.append(self.clean(text, is_final=True))
            message.swipe_info.append(template.clone())
        return len(self._extra_swipes)
