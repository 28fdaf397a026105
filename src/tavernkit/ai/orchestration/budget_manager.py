"""Token budget computation and iterative prompt trimming."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping

from ...services import telemetry as telemetry_service
from ...services.settings import BackendSettings
from ..ai_types import TokenCounterProtocol
from ..backends.types import BackendFamily
from .types import AssembledContext, ContextPart, PartKind

__all__ = [
    "BudgetResult",
    "TokenBudgetManager",
    "NOVEL_CAPPED_CONTEXT",
    "MAX_UNLOCKED_CONTEXT",
    "CHAT_MESSAGE_OVERHEAD",
    "CHAT_REPLY_PRIMING",
]

LOGGER = logging.getLogger(__name__)

NOVEL_CAPPED_CONTEXT = 8_192
MAX_UNLOCKED_CONTEXT = 2_000_000
DEFAULT_OPENAI_CONTEXT = 4_095
CHAT_MESSAGE_OVERHEAD = 3
CHAT_REPLY_PRIMING = 3

_NOVEL_CAPPED_TIERS = ("clio", "kayra")

# Longest prefix wins.
_OPENAI_MODEL_CONTEXT: Mapping[str, int] = {
    "gpt-5": 400_000,
    "gpt-4.1": 1_047_576,
    "gpt-4o": 128_000,
    "gpt-4-turbo": 128_000,
    "gpt-4-1106": 128_000,
    "gpt-4-0125": 128_000,
    "gpt-4-32k": 32_768,
    "gpt-4": 8_191,
    "gpt-3.5-turbo-instruct": 4_095,
    "gpt-3.5-turbo": 16_385,
    "chatgpt-4o": 128_000,
    "o1": 200_000,
    "o3": 200_000,
    "o4": 200_000,
}


def openai_model_context(model: str) -> int:
    """Context window of an OpenAI model, by longest matching prefix."""

    name = (model or "").lower()
    matches = [prefix for prefix in _OPENAI_MODEL_CONTEXT if name.startswith(prefix)]
    if not matches:
        return DEFAULT_OPENAI_CONTEXT
    return _OPENAI_MODEL_CONTEXT[max(matches, key=len)]


@dataclass(slots=True)
class BudgetResult:
    """Outcome of :meth:`TokenBudgetManager.fit_to_budget`."""

    context: AssembledContext
    budget: int
    iterations: int = 0
    token_trace: List[int] = field(default_factory=list)
    removed: List[ContextPart] = field(default_factory=list)
    over_budget: bool = False
    timestamp: float = field(default_factory=time.time)

    @property
    def prompt_tokens(self) -> int:
        return self.token_trace[-1] if self.token_trace else 0

    def as_payload(self) -> dict[str, object]:
        """Return a telemetry-friendly dictionary for this result."""

        return {
            "budget": int(self.budget),
            "prompt_tokens": int(self.prompt_tokens),
            "initial_tokens": int(self.token_trace[0]) if self.token_trace else 0,
            "iterations": int(self.iterations),
            "removed_examples": sum(1 for part in self.removed if part.kind is PartKind.EXAMPLE),
            "removed_history": sum(1 for part in self.removed if part.kind is PartKind.HISTORY),
            "over_budget": bool(self.over_budget),
            "timestamp": self.timestamp,
        }


@dataclass(slots=True)
class TokenBudgetManager:
    """Fits an assembled context into the backend's context window."""

    counter: TokenCounterProtocol
    telemetry_emitter: Callable[[str, Mapping[str, Any]], Any] | None = field(
        default_factory=lambda: getattr(telemetry_service, "emit", None)
    )
    last_result: BudgetResult | None = None

    def compute_budget(self, backend: BackendSettings, response_length: int | None = None) -> int:
        """Context size available to the prompt, never negative."""

        reserve = backend.response_length if response_length is None else response_length
        context = max(0, int(backend.max_context))
        family = BackendFamily(backend.family)
        if family is BackendFamily.NOVEL:
            label = f"{backend.tier} {backend.model}".lower()
            if any(tier in label for tier in _NOVEL_CAPPED_TIERS):
                context = min(context, NOVEL_CAPPED_CONTEXT)
        elif family is BackendFamily.OPENAI:
            ceiling = MAX_UNLOCKED_CONTEXT if backend.max_context_unlocked else openai_model_context(backend.model)
            context = min(context, ceiling)
        return max(0, context - max(0, int(reserve)))

    def reserve(self, budget: int, text: str) -> int:
        """Subtract the token cost of *text* (e.g. a CFG negative prompt)."""

        if not text:
            return budget
        return max(0, budget - self.counter.count(text))

    def measure(self, context: AssembledContext, cache: Dict[int, int] | None = None) -> int:
        cache = {} if cache is None else cache
        total = sum(self._part_cost(part, context.chat_mode, cache) for part in context.parts)
        if context.chat_mode:
            total += CHAT_REPLY_PRIMING
        return total

    def fit_to_budget(self, context: AssembledContext, budget: int) -> BudgetResult:
        """Remove one unit at a time until the prompt fits *budget*.

        Unpinned example blocks go first (most recently added first), then
        history from the oldest entry. Pinned examples and non-history parts
        are never removed; if those alone exceed the budget the prompt is
        returned over budget with a warning.
        """

        working = context.copy()
        cache: Dict[int, int] = {}
        result = BudgetResult(context=working, budget=budget)
        while True:
            total = self.measure(working, cache)
            result.token_trace.append(total)
            if total <= budget:
                break
            position = self._next_removal(working)
            if position is None:
                result.over_budget = True
                LOGGER.warning(
                    "Prompt does not fit the context budget (%d > %d) after %d removal(s)",
                    total,
                    budget,
                    result.iterations,
                )
                break
            result.removed.append(working.parts.pop(position))
            result.iterations += 1
        if result.iterations:
            LOGGER.debug(
                "Trimmed %d part(s): %d -> %d tokens (budget %d)",
                result.iterations,
                result.token_trace[0],
                result.prompt_tokens,
                budget,
            )
            emitter = self.telemetry_emitter
            if callable(emitter):
                emitter(telemetry_service.CONTEXT_BUDGET_TRIM, result.as_payload())
        self.last_result = result
        return result

    def _part_cost(self, part: ContextPart, chat_mode: bool, cache: Dict[int, int]) -> int:
        key = id(part)
        cached = cache.get(key)
        if cached is not None:
            return cached
        if chat_mode:
            cost = sum(
                self.counter.count(message.content) + CHAT_MESSAGE_OVERHEAD
                for message in part.messages
                if message.content or message.tool_calls
            )
        else:
            cost = self.counter.count(part.text) if part.text else 0
        cache[key] = cost
        return cost

    @staticmethod
    def _next_removal(context: AssembledContext) -> int | None:
        examples = [
            index
            for index, part in enumerate(context.parts)
            if part.kind is PartKind.EXAMPLE and not part.pinned
        ]
        if examples:
            return examples[-1]
        for index, part in enumerate(context.parts):
            if part.kind is PartKind.HISTORY:
                return index
        return None
