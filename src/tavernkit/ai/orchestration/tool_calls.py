"""Invocation of model-requested tools and the recursion decision."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Protocol, Sequence

from ...chat.message_model import ChatMessage
from ...chat.session import Session
from ...errors import ToolExecutionError, ToolNotFoundError
from ..ai_types import GenerationType, ToolCall
from .events import EventBus, ToolCallsInvoked
from .tools import ToolExecutor, ToolRegistry

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from .generation import GenerationRequest

__all__ = [
    "DEFAULT_MAX_TOOL_DEPTH",
    "TOOL_MESSAGE_NAME",
    "ToolInvocation",
    "ToolInvocationResult",
    "ToolInvoker",
    "FunctionToolInvoker",
    "ToolCallOutcome",
    "ToolCallCoordinator",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_TOOL_DEPTH = 5
TOOL_MESSAGE_NAME = "Tool"

# Generation types that never act on tool calls.
_NO_TOOL_TYPES = frozenset({GenerationType.IMPERSONATE, GenerationType.QUIET, GenerationType.CONTINUE})


@dataclass(slots=True)
class ToolInvocation:
    """One completed tool call, as stored in ``extra.tool_invocations``."""

    id: str
    name: str
    parameters: str
    result: str
    display_name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "displayName": self.display_name or self.name,
            "name": self.name,
            "parameters": self.parameters,
            "result": self.result,
        }


@dataclass(slots=True)
class ToolInvocationResult:
    invocations: List[ToolInvocation] = field(default_factory=list)
    stealth_calls: List[str] = field(default_factory=list)
    errors: List[Exception] = field(default_factory=list)

    @property
    def had_error(self) -> bool:
        return bool(self.errors)


class ToolInvoker(Protocol):
    """External tool registry seen by the coordinator."""

    def definitions(self) -> List[Dict[str, Any]]:
        ...

    async def invoke(self, tool_calls: Sequence[ToolCall]) -> ToolInvocationResult:
        ...


def _encode_result(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


class FunctionToolInvoker:
    """:class:`ToolInvoker` over a :class:`ToolRegistry` and :class:`ToolExecutor`."""

    def __init__(self, registry: ToolRegistry, executor: ToolExecutor | None = None) -> None:
        self._registry = registry
        self._executor = executor or ToolExecutor(registry)

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def definitions(self) -> List[Dict[str, Any]]:
        return self._registry.get_openai_tools()

    async def invoke(self, tool_calls: Sequence[ToolCall]) -> ToolInvocationResult:
        result = ToolInvocationResult()
        for call in tool_calls:
            if not self._registry.has(call.name):
                LOGGER.warning("Tool call %s (%s) names an unknown or disabled tool", call.name, call.id)
                result.errors.append(ToolNotFoundError(call.name))
                continue
            try:
                value = await self._executor.execute(call.name, call.parsed_arguments(), call_id=call.id)
            except (ToolExecutionError, ToolNotFoundError) as exc:
                LOGGER.warning("Tool call %s (%s) failed: %s", call.name, call.id, exc)
                result.errors.append(exc)
                continue
            except asyncio.TimeoutError as exc:
                result.errors.append(ToolExecutionError(f"Tool '{call.name}' timed out", tool_name=call.name, cause=exc))
                continue
            if self._registry.is_stealth(call.name):
                result.stealth_calls.append(call.name)
                continue
            spec = self._registry.spec(call.name)
            result.invocations.append(
                ToolInvocation(
                    id=call.id,
                    name=call.name,
                    parameters=call.arguments or "{}",
                    result=_encode_result(value),
                    display_name=spec.display_name if spec is not None else "",
                )
            )
        return result


@dataclass(slots=True)
class ToolCallOutcome:
    should_stop_generation: bool
    invocations: List[ToolInvocation] = field(default_factory=list)
    errors: List[Exception] = field(default_factory=list)
    stealth_calls: List[str] = field(default_factory=list)
    deleted_placeholder: bool = False

    @property
    def should_recurse(self) -> bool:
        return not self.should_stop_generation


class ToolCallCoordinator:
    """Decides whether a reply's tool calls run and whether the pipeline loops.

    A pass at ``depth`` may invoke tools only while ``depth < max_depth``;
    each recursive pass is started by the pipeline at ``depth + 1``.
    """

    def __init__(
        self,
        invoker: ToolInvoker | None = None,
        *,
        max_depth: int = DEFAULT_MAX_TOOL_DEPTH,
        bus: EventBus | None = None,
    ) -> None:
        self._invoker = invoker
        self._max_depth = max(0, int(max_depth))
        self._bus = bus

    @property
    def invoker(self) -> ToolInvoker | None:
        return self._invoker

    @property
    def max_depth(self) -> int:
        return self._max_depth

    def can_recurse(self, depth: int) -> bool:
        return depth < self._max_depth

    def can_perform(self, generation_type: GenerationType, depth: int) -> bool:
        return self._invoker is not None and generation_type not in _NO_TOOL_TYPES and self.can_recurse(depth)

    def definitions(self) -> List[Dict[str, Any]]:
        return self._invoker.definitions() if self._invoker is not None else []

    async def handle_response(
        self,
        session: Session,
        result: Sequence[ToolCall],
        request: "GenerationRequest",
        *,
        generated_text: str = "",
    ) -> ToolCallOutcome:
        """Run *result*'s tool calls and record them in *session*.

        The placeholder reply (empty or ``...``) is removed before tools run,
        except for swipes. Normal invocations are saved as a system message
        named ``Tool``; stealth calls end the generation silently.
        """

        kind = GenerationType(request.type)
        if not result:
            return ToolCallOutcome(should_stop_generation=True)
        if not self.can_perform(kind, request.depth):
            LOGGER.debug(
                "Ignoring %d tool call(s) at depth %d (%s, ceiling %d)",
                len(result),
                request.depth,
                kind.value,
                self._max_depth,
            )
            return ToolCallOutcome(should_stop_generation=True)
        if request.signal is not None:
            request.signal.raise_if_cancelled()

        deleted = False
        last = session.last_message()
        if (
            kind is not GenerationType.SWIPE
            and last is not None
            and not last.is_user
            and last.is_placeholder
            and generated_text.strip() in ("", "...")
        ):
            session.messages.pop()
            deleted = True
            LOGGER.debug("Removed placeholder reply before tool invocation")

        assert self._invoker is not None
        invoked = await self._invoker.invoke(result)
        for error in invoked.errors:
            LOGGER.warning("Tool invocation error: %s", error)
        should_stop = bool(invoked.stealth_calls) or not invoked.invocations
        if invoked.invocations and not invoked.stealth_calls:
            self.save_invocations(session, invoked.invocations)
        if self._bus is not None:
            self._bus.publish(
                ToolCallsInvoked(
                    depth=request.depth,
                    invocations=tuple(invocation.to_dict() for invocation in invoked.invocations),
                    errors=tuple(str(error) for error in invoked.errors),
                    stealth=bool(invoked.stealth_calls),
                )
            )
        return ToolCallOutcome(
            should_stop_generation=should_stop,
            invocations=invoked.invocations,
            errors=invoked.errors,
            stealth_calls=invoked.stealth_calls,
            deleted_placeholder=deleted,
        )

    @staticmethod
    def save_invocations(session: Session, invocations: Sequence[ToolInvocation]) -> ChatMessage:
        message = ChatMessage(
            name=TOOL_MESSAGE_NAME,
            mes="",
            is_system=True,
            extra={"tool_invocations": [invocation.to_dict() for invocation in invocations]},
        )
        session.messages.append(message)
        LOGGER.debug("Saved %d tool invocation(s)", len(invocations))
        return message
