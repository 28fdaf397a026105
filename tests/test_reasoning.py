"""Tests for orchestration/reasoning.py."""

from __future__ import annotations

from tavernkit.ai.orchestration.reasoning import (
    ReasoningHandler,
    ReasoningState,
    format_reasoning_for_prompt,
    parse_reasoning_from_string,
)
from tavernkit.chat.message_model import ChatMessage
from tavernkit.services.settings import ReasoningSettings


def test_parse_splits_leading_block() -> None:
    parsed = parse_reasoning_from_string("<think>\nweigh options\n</think>\nFinal answer", ReasoningSettings())

    assert parsed is not None
    assert parsed.reasoning == "weigh options"
    assert parsed.content == "Final answer"


def test_parse_strict_requires_block_at_start() -> None:
    text = "Intro <think>\nx\n</think> outro"

    assert parse_reasoning_from_string(text, ReasoningSettings()) is None
    parsed = parse_reasoning_from_string(text, ReasoningSettings(), strict=False)
    assert parsed is not None
    assert parsed.content == "Intro  outro"


def test_parse_needs_prefix_and_suffix() -> None:
    assert parse_reasoning_from_string("<think>\nx\n</think>", ReasoningSettings(suffix="")) is None


def test_format_for_prompt_respects_toggle() -> None:
    assert format_reasoning_for_prompt("idea", ReasoningSettings()) == ""
    settings = ReasoningSettings(add_to_prompts=True)
    assert format_reasoning_for_prompt("idea", settings) == "<think>\nidea\n</think>\n\n"


class TestHandler:
    def test_streamed_block_stays_hidden_until_closed(self) -> None:
        ticks = iter([0.0, 2.0])
        handler = ReasoningHandler(ReasoningSettings(auto_parse=True), clock=lambda: next(ticks))

        assert handler.process("<think>\nhalf a tho") == ""
        assert handler.state is ReasoningState.THINKING
        assert handler.process("<think>\nhalf a thought\n</think>\nHi") == "Hi"
        assert handler.state is ReasoningState.DONE
        assert handler.reasoning == "half a thought"
        assert handler.duration_ms() == 2000

    def test_apply_writes_message_extra(self) -> None:
        handler = ReasoningHandler(ReasoningSettings(), clock=lambda: 1.0)
        handler.process("Answer", model_reasoning="because")
        handler.finish()
        message = ChatMessage(name="Aria")

        handler.apply(message)

        assert message.extra["reasoning"] == "because"
        assert message.extra["reasoning_type"] == "model"
        assert message.extra["reasoning_duration"] == 0

    def test_apply_without_reasoning_is_noop(self) -> None:
        handler = ReasoningHandler(ReasoningSettings())
        handler.process("Plain reply")
        message = ChatMessage(name="Aria")

        handler.apply(message)

        assert "reasoning" not in message.extra
