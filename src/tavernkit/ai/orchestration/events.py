"""Generation lifecycle events and the bus that delivers them.

The streaming processor and the pipeline publish these instead of touching
any display surface; hosts subscribe to render or persist as they see fit.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Generic, Sequence, TypeVar
from weakref import WeakMethod, ref

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from typing import DefaultDict

LOGGER = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for lifecycle events."""


@dataclass(slots=True)
class GenerationStarted(Event):
    generation_type: str
    message_index: int | None = None
    depth: int = 0


@dataclass(slots=True)
class ChunkCommitted(Event):
    """Cleaned text written into the target slot."""

    text: str
    message_index: int | None = None
    is_final: bool = False


@dataclass(slots=True)
class GenerationFinished(Event):
    text: str
    generation_type: str
    message_index: int | None = None
    swipe_count: int = 0


@dataclass(slots=True)
class GenerationStopped(Event):
    text: str
    message_index: int | None = None


@dataclass(slots=True)
class GenerationErrored(Event):
    error: BaseException
    text: str = ""
    message_index: int | None = None


@dataclass(slots=True)
class ToolCallsInvoked(Event):
    depth: int
    invocations: Sequence[Any] = field(default_factory=tuple)
    errors: Sequence[str] = field(default_factory=tuple)
    stealth: bool = False


# Streaming commits arrive at the ticker rate; publishing them is not logged.
_QUIET_EVENT_TYPES: set[type] = {ChunkCommitted}


class EventBus(Generic[E]):
    """A typed publish-subscribe bus.

    Bound-method handlers are held weakly so a discarded subscriber drops out
    on its own; plain functions and lambdas are held strongly. A handler that
    raises is logged and the remaining handlers still run.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: DefaultDict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        self._handlers[event_type].append(_HandlerRef.create(handler))
        LOGGER.debug("Subscribed handler %s to event type %s", _handler_name(handler), event_type.__name__)

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        handlers = self._handlers.get(event_type)
        if handlers is None:
            return
        for index, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(index)
                LOGGER.debug(
                    "Unsubscribed handler %s from event type %s",
                    _handler_name(handler),
                    event_type.__name__,
                )
                return

    def publish(self, event: E) -> None:
        event_type = type(event)
        handlers = self._handlers.get(event_type)
        is_quiet = event_type in _QUIET_EVENT_TYPES
        if not handlers:
            return
        if not is_quiet:
            LOGGER.debug("Publishing %s to %d handler(s)", event_type.__name__, len(handlers))

        dead_indices: list[int] = []
        for index, handler_ref in enumerate(list(handlers)):
            handler = handler_ref.resolve()
            if handler is None:
                dead_indices.append(index)
                continue
            try:
                handler(event)
            except Exception:
                LOGGER.exception(
                    "Handler %s raised exception for event %s",
                    _handler_name(handler),
                    event_type.__name__,
                )
        for index in reversed(dead_indices):
            handlers.pop(index)

    def clear(self) -> None:
        self._handlers.clear()

    def handler_count(self, event_type: type[E] | None = None) -> int:
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(handlers) for handlers in self._handlers.values())


class _HandlerRef:
    """Weak reference for bound methods, strong reference for everything else."""

    __slots__ = ("_ref", "_is_weak")

    def __init__(self, handler_ref: WeakMethod | ref | Handler, is_weak: bool) -> None:
        self._ref = handler_ref
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> "_HandlerRef":
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                pass
        return cls(handler, is_weak=False)

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref  # type: ignore[return-value]
        return self._ref()  # type: ignore[operator]

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        return resolved is not None and resolved == handler


def _handler_name(handler: Handler) -> str:
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        return f"{type(handler.__self__).__name__}.{handler.__func__.__name__}"
    return getattr(handler, "__name__", repr(handler))


__all__ = [
    "Event",
    "EventBus",
    "Handler",
    "GenerationStarted",
    "ChunkCommitted",
    "GenerationFinished",
    "GenerationStopped",
    "GenerationErrored",
    "ToolCallsInvoked",
]
