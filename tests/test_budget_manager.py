"""Tests for orchestration/budget_manager.py."""

from __future__ import annotations

from tavernkit.ai.orchestration.budget_manager import (
    CHAT_MESSAGE_OVERHEAD,
    CHAT_REPLY_PRIMING,
    TokenBudgetManager,
    openai_model_context,
)
from tavernkit.ai.orchestration.types import AssembledContext, ContextPart, PartKind, PromptMessage
from tavernkit.services import telemetry
from tavernkit.services.settings import BackendSettings

from helpers import LengthCounter


def _history(count: int, size: int) -> list[ContextPart]:
    return [
        ContextPart(kind=PartKind.HISTORY, text="x" * size, message_index=index)
        for index in range(count)
    ]


def _manager(events: list | None = None) -> TokenBudgetManager:
    def _emit(name, payload):
        if events is not None:
            events.append((name, dict(payload)))

    return TokenBudgetManager(LengthCounter(), telemetry_emitter=_emit)


class TestComputeBudget:
    def test_reserves_response_length(self) -> None:
        backend = BackendSettings(family="textgen", max_context=1000, response_length=200)

        assert _manager().compute_budget(backend) == 800

    def test_openai_context_clamped_to_model(self) -> None:
        backend = BackendSettings(family="openai", model="gpt-4", max_context=100_000, response_length=191)

        assert _manager().compute_budget(backend) == 8_000

    def test_unlocked_context_skips_model_clamp(self) -> None:
        backend = BackendSettings(
            family="openai", model="gpt-4", max_context=100_000, response_length=0, max_context_unlocked=True
        )

        assert _manager().compute_budget(backend) == 100_000

    def test_novel_capped_tiers(self) -> None:
        backend = BackendSettings(family="novel", model="kayra-v1", max_context=16_000, response_length=192)

        assert _manager().compute_budget(backend) == 8_000

    def test_never_negative(self) -> None:
        backend = BackendSettings(family="textgen", max_context=100, response_length=500)

        assert _manager().compute_budget(backend) == 0


def test_model_context_uses_longest_prefix() -> None:
    assert openai_model_context("gpt-4o-mini") == 128_000
    assert openai_model_context("gpt-4-32k-0613") == 32_768
    assert openai_model_context("mystery-model") == 4_095


class TestFitToBudget:
    def test_removes_oldest_history_first(self) -> None:
        events: list = []
        manager = _manager(events)
        backend = BackendSettings(family="textgen", max_context=1000, response_length=200)
        context = AssembledContext(parts=_history(10, 150))

        result = manager.fit_to_budget(context, manager.compute_budget(backend))

        kept = result.context.history()
        assert len(kept) == 5
        assert [part.message_index for part in kept] == [5, 6, 7, 8, 9]
        assert result.prompt_tokens == 750
        assert not result.over_budget
        assert events and events[0][0] == telemetry.CONTEXT_BUDGET_TRIM
        assert events[0][1]["removed_history"] == 5

    def test_story_string_counts_against_budget(self) -> None:
        manager = _manager()
        context = AssembledContext(parts=[ContextPart(kind=PartKind.STORY, text="s" * 200), *_history(10, 150)])

        result = manager.fit_to_budget(context, 1000)

        assert [part.message_index for part in result.context.history()] == [5, 6, 7, 8, 9]
        assert [part.kind for part in result.context.parts][0] is PartKind.STORY
        assert result.prompt_tokens == 950

    def test_unpinned_examples_go_before_history(self) -> None:
        manager = _manager()
        parts = [
            ContextPart(kind=PartKind.STORY, text="s" * 10),
            ContextPart(kind=PartKind.EXAMPLE, text="a" * 20, pinned=True),
            ContextPart(kind=PartKind.EXAMPLE, text="b" * 20),
            ContextPart(kind=PartKind.EXAMPLE, text="c" * 20),
            *_history(2, 10),
        ]
        context = AssembledContext(parts=parts)

        result = manager.fit_to_budget(context, 50)

        assert [part.text[0] for part in result.removed] == ["c", "b"]
        assert [part.text[0] for part in result.context.examples()] == ["a"]
        assert len(result.context.history()) == 2

    def test_over_budget_when_only_fixed_parts_remain(self) -> None:
        manager = _manager()
        context = AssembledContext(
            parts=[ContextPart(kind=PartKind.STORY, text="s" * 100), *_history(3, 10)]
        )

        result = manager.fit_to_budget(context, 50)

        assert result.over_budget
        assert result.context.history() == []
        assert result.prompt_tokens == 100

    def test_input_context_is_not_mutated(self) -> None:
        manager = _manager()
        context = AssembledContext(parts=_history(4, 10))

        manager.fit_to_budget(context, 15)

        assert len(context.parts) == 4

    def test_token_trace_is_monotonic(self) -> None:
        manager = _manager()
        context = AssembledContext(parts=_history(8, 30))

        result = manager.fit_to_budget(context, 100)

        trace = result.token_trace
        assert all(later <= earlier for earlier, later in zip(trace, trace[1:]))
        assert trace[-1] <= 100

    def test_no_telemetry_when_nothing_removed(self) -> None:
        events: list = []
        manager = _manager(events)

        result = manager.fit_to_budget(AssembledContext(parts=_history(2, 10)), 100)

        assert result.iterations == 0
        assert events == []
        assert manager.last_result is result


def test_chat_mode_counts_message_overhead() -> None:
    manager = _manager()
    part = ContextPart(
        kind=PartKind.HISTORY,
        messages=[PromptMessage(role="user", content="hello"), PromptMessage(role="assistant", content="")],
    )
    context = AssembledContext(parts=[part], chat_mode=True)

    assert manager.measure(context) == 5 + CHAT_MESSAGE_OVERHEAD + CHAT_REPLY_PRIMING


def test_reserve_subtracts_text_cost() -> None:
    manager = _manager()

    assert manager.reserve(100, "x" * 30) == 70
    assert manager.reserve(100, "") == 100
    assert manager.reserve(10, "x" * 30) == 0
