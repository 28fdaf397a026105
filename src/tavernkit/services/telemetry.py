"""In-process telemetry helpers for prompt budget and generation usage."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Iterable, Mapping, Protocol, Sequence

LOGGER = logging.getLogger(__name__)

_EVENT_LISTENERS: dict[str, list[Callable[[dict[str, Any]], None]]] = {}

CONTEXT_BUDGET_TRIM = "context_budget_trim"
GENERATION_COMPLETED = "generation_completed"


@dataclass(slots=True)
class ContextUsageEvent:
    """Represents a single generation's prompt size and budget metadata."""

    chat_id: str | None
    model: str
    prompt_tokens: int
    budget: int
    response_reserve: int | None
    timestamp: float
    message_count: int
    removed_count: int
    generation_type: str
    run_id: str

    @property
    def over_budget(self) -> bool:
        return self.prompt_tokens > self.budget


class TelemetrySink(Protocol):
    """Sink interface used to collect telemetry events."""

    def record(self, event: ContextUsageEvent) -> None:  # pragma: no cover - protocol stub
        ...


class InMemoryTelemetrySink:
    """Simple ring-buffer telemetry sink for local inspection and tests."""

    def __init__(self, capacity: int = 200) -> None:
        self._capacity = max(10, capacity)
        self._buffer: deque[ContextUsageEvent] = deque(maxlen=self._capacity)
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def record(self, event: ContextUsageEvent) -> None:
        with self._lock:
            self._buffer.append(event)

    def tail(self, limit: int | None = None) -> list[ContextUsageEvent]:
        with self._lock:
            events = list(self._buffer)
        if limit is None or limit >= len(events):
            return events
        return events[-limit:]

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


@dataclass(slots=True)
class UsageTotals:
    """Aggregated prompt totals across multiple usage events."""

    prompt_tokens: int
    removed_count: int
    event_count: int

    def as_status_text(self) -> str:
        return f"Prompt {self.prompt_tokens:,} · Trimmed {self.removed_count} · Events {self.event_count}"


def summarize_usage_totals(events: Sequence[ContextUsageEvent] | Iterable[ContextUsageEvent] | None) -> UsageTotals | None:
    """Aggregate prompt totals from recorded context usage events."""

    if events is None:
        return None
    prompt_total = 0
    removed_total = 0
    event_count = 0
    for event in events:
        if event is None:
            continue
        event_count += 1
        prompt_total += max(0, int(event.prompt_tokens))
        removed_total += max(0, int(event.removed_count))
    if event_count == 0:
        return None
    return UsageTotals(prompt_tokens=prompt_total, removed_count=removed_total, event_count=event_count)


def usage_event_from_payload(payload: Mapping[str, Any]) -> ContextUsageEvent | None:
    """Build a :class:`ContextUsageEvent` from a ``generation_completed`` payload."""

    try:
        return ContextUsageEvent(
            chat_id=payload.get("chat_id"),
            model=str(payload.get("model") or ""),
            prompt_tokens=int(payload.get("prompt_tokens", 0)),
            budget=int(payload.get("budget", 0)),
            response_reserve=payload.get("response_reserve"),
            timestamp=float(payload.get("timestamp", time.time())),
            message_count=int(payload.get("message_count", 0)),
            removed_count=int(payload.get("removed_count", 0)),
            generation_type=str(payload.get("generation_type") or ""),
            run_id=str(payload.get("run_id") or ""),
        )
    except (TypeError, ValueError):
        return None


def attach_sink(sink: TelemetrySink) -> Callable[[dict[str, Any]], None]:
    """Record every ``generation_completed`` event into *sink*.

    Returns the registered listener so callers can unregister it later.
    """

    def _listener(payload: dict[str, Any]) -> None:
        event = usage_event_from_payload(payload)
        if event is not None:
            sink.record(event)

    register_event_listener(GENERATION_COMPLETED, _listener)
    return _listener


def register_event_listener(event_name: str, callback: Callable[[dict[str, Any]], None]) -> None:
    """Register a callback invoked whenever :func:`emit` fires *event_name*."""

    if not event_name or callback is None:
        return
    listeners = _EVENT_LISTENERS.setdefault(event_name, [])
    if callback not in listeners:
        listeners.append(callback)


def unregister_event_listener(event_name: str, callback: Callable[[dict[str, Any]], None]) -> None:
    listeners = _EVENT_LISTENERS.get(event_name)
    if not listeners:
        return
    try:
        listeners.remove(callback)
    except ValueError:
        return
    if not listeners:
        _EVENT_LISTENERS.pop(event_name, None)


def emit(event_name: str, payload: Mapping[str, Any] | None = None) -> None:
    """Broadcast a structured telemetry event to in-process listeners."""

    if not event_name:
        return
    event_payload = {"event": event_name}
    if payload:
        event_payload.update(payload)
    listeners = list(_EVENT_LISTENERS.get(event_name, ()))
    for callback in listeners:
        try:
            callback(dict(event_payload))
        except Exception:  # pragma: no cover - listeners must not break emitters
            LOGGER.debug("Telemetry listener %s failed", callback, exc_info=True)
    LOGGER.debug("Telemetry emit %s: %s", event_name, event_payload)


__all__ = [
    "CONTEXT_BUDGET_TRIM",
    "GENERATION_COMPLETED",
    "ContextUsageEvent",
    "TelemetrySink",
    "InMemoryTelemetrySink",
    "UsageTotals",
    "summarize_usage_totals",
    "usage_event_from_payload",
    "attach_sink",
    "emit",
    "register_event_listener",
    "unregister_event_listener",
]
