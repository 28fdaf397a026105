"""Tests for orchestration/tool_calls.py."""

from __future__ import annotations

import json
from typing import Any, Mapping

import pytest

from tavernkit.ai.ai_types import GenerationType, ToolCall
from tavernkit.ai.orchestration.cancellation import CancellationToken
from tavernkit.ai.orchestration.events import EventBus, ToolCallsInvoked
from tavernkit.ai.orchestration.generation import GenerationRequest
from tavernkit.ai.orchestration.tool_calls import (
    TOOL_MESSAGE_NAME,
    FunctionToolInvoker,
    ToolCallCoordinator,
    ToolInvocation,
)
from tavernkit.ai.orchestration.tools import ExecutorConfig, ToolExecutor, ToolRegistry, ToolSpec
from tavernkit.errors import GenerationCancelledError, ToolExecutionError, ToolNotFoundError

from helpers import make_session, reply, user


def _registry() -> ToolRegistry:
    def weather(args: Mapping[str, Any]) -> dict:
        return {"sky": "clear"}

    def broken(args: Mapping[str, Any]) -> None:
        raise ValueError("no dice")

    registry = ToolRegistry()
    registry.register_function(
        ToolSpec(name="weather", description="Weather", display_name="Weather report"), weather
    )
    registry.register_function(ToolSpec(name="echo", description="Echo"), lambda args: args.get("text", ""))
    registry.register_function(ToolSpec(name="broken", description="Broken"), broken)
    registry.register_function(ToolSpec(name="mark", description="Mark", stealth=True), lambda args: "ok")
    return registry


def _call(name: str, arguments: str = "{}", call_id: str = "") -> ToolCall:
    return ToolCall(id=call_id or f"call_{name}", name=name, arguments=arguments)


# -----------------------------------------------------------------------------
# FunctionToolInvoker
# -----------------------------------------------------------------------------


class TestFunctionToolInvoker:
    @pytest.mark.asyncio
    async def test_results_are_encoded_as_strings(self) -> None:
        invoker = FunctionToolInvoker(_registry())

        result = await invoker.invoke([_call("weather"), _call("echo", '{"text": "hi"}')])

        assert [item.result for item in result.invocations] == [json.dumps({"sky": "clear"}), "hi"]
        assert result.invocations[0].display_name == "Weather report"
        assert result.invocations[1].parameters == '{"text": "hi"}'
        assert not result.had_error

    @pytest.mark.asyncio
    async def test_failures_are_collected(self) -> None:
        registry = _registry()
        invoker = FunctionToolInvoker(registry, ToolExecutor(registry, ExecutorConfig(strict_mode=True)))

        result = await invoker.invoke([_call("broken"), _call("missing"), _call("echo")])

        assert [item.name for item in result.invocations] == ["echo"]
        assert isinstance(result.errors[0], ToolExecutionError)
        assert isinstance(result.errors[1], ToolNotFoundError)

    @pytest.mark.asyncio
    async def test_unknown_and_disabled_tools_are_errors(self) -> None:
        registry = _registry()
        registry.disable("weather")

        result = await FunctionToolInvoker(registry).invoke([_call("missing"), _call("weather"), _call("echo")])

        assert [item.name for item in result.invocations] == ["echo"]
        assert [type(error) for error in result.errors] == [ToolNotFoundError, ToolNotFoundError]

    @pytest.mark.asyncio
    async def test_stealth_calls_are_not_recorded(self) -> None:
        result = await FunctionToolInvoker(_registry()).invoke([_call("mark")])

        assert result.invocations == []
        assert result.stealth_calls == ["mark"]

    def test_definitions_come_from_registry(self) -> None:
        names = [tool["function"]["name"] for tool in FunctionToolInvoker(_registry()).definitions()]

        assert names == ["weather", "echo", "broken", "mark"]


def test_invocation_dict_uses_chat_file_keys() -> None:
    invocation = ToolInvocation(id="c1", name="echo", parameters="{}", result="hi")

    assert invocation.to_dict() == {
        "id": "c1",
        "displayName": "echo",
        "name": "echo",
        "parameters": "{}",
        "result": "hi",
    }


# -----------------------------------------------------------------------------
# ToolCallCoordinator
# -----------------------------------------------------------------------------


class TestCoordinatorGates:
    def test_can_recurse_below_ceiling(self) -> None:
        coordinator = ToolCallCoordinator(FunctionToolInvoker(_registry()), max_depth=2)

        assert coordinator.can_recurse(0)
        assert coordinator.can_recurse(1)
        assert not coordinator.can_recurse(2)

    def test_can_perform_needs_invoker(self) -> None:
        assert not ToolCallCoordinator().can_perform(GenerationType.NORMAL, 0)

    @pytest.mark.parametrize(
        "kind", [GenerationType.IMPERSONATE, GenerationType.QUIET, GenerationType.CONTINUE]
    )
    def test_excluded_generation_types(self, kind: GenerationType) -> None:
        coordinator = ToolCallCoordinator(FunctionToolInvoker(_registry()))

        assert not coordinator.can_perform(kind, 0)

    def test_swipe_and_regenerate_may_use_tools(self) -> None:
        coordinator = ToolCallCoordinator(FunctionToolInvoker(_registry()))

        assert coordinator.can_perform(GenerationType.SWIPE, 0)
        assert coordinator.can_perform(GenerationType.REGENERATE, 0)


class TestHandleResponse:
    @pytest.mark.asyncio
    async def test_placeholder_removed_and_invocations_saved(self) -> None:
        session = make_session(messages=[user("Weather?"), reply("")])
        bus = EventBus()
        published: list = []
        bus.subscribe(ToolCallsInvoked, published.append)
        coordinator = ToolCallCoordinator(FunctionToolInvoker(_registry()), bus=bus)

        outcome = await coordinator.handle_response(
            session, [_call("weather")], GenerationRequest(), generated_text=""
        )

        assert outcome.deleted_placeholder
        assert outcome.should_recurse
        tool_message = session.messages[-1]
        assert tool_message.name == TOOL_MESSAGE_NAME
        assert tool_message.is_system
        assert tool_message.extra["tool_invocations"][0]["displayName"] == "Weather report"
        assert len(session.messages) == 2
        assert published[0].depth == 0
        assert not published[0].stealth

    @pytest.mark.asyncio
    async def test_reply_with_text_is_kept(self) -> None:
        session = make_session(messages=[user("Weather?"), reply("Let me check.")])
        coordinator = ToolCallCoordinator(FunctionToolInvoker(_registry()))

        outcome = await coordinator.handle_response(
            session, [_call("weather")], GenerationRequest(), generated_text="Let me check."
        )

        assert not outcome.deleted_placeholder
        assert session.messages[1].mes == "Let me check."
        assert session.messages[2].name == TOOL_MESSAGE_NAME

    @pytest.mark.asyncio
    async def test_swipe_keeps_placeholder(self) -> None:
        session = make_session(messages=[user("Weather?"), reply("...")])
        coordinator = ToolCallCoordinator(FunctionToolInvoker(_registry()))

        outcome = await coordinator.handle_response(
            session, [_call("weather")], GenerationRequest(type=GenerationType.SWIPE), generated_text="..."
        )

        assert not outcome.deleted_placeholder
        assert session.messages[1].mes == "..."

    @pytest.mark.asyncio
    async def test_depth_ceiling_stops_without_invoking(self) -> None:
        session = make_session(messages=[user("Weather?"), reply("")])
        coordinator = ToolCallCoordinator(FunctionToolInvoker(_registry()), max_depth=1)

        outcome = await coordinator.handle_response(session, [_call("weather")], GenerationRequest(depth=1))

        assert outcome.should_stop_generation
        assert outcome.invocations == []
        assert len(session.messages) == 2

    @pytest.mark.asyncio
    async def test_stealth_call_stops_generation(self) -> None:
        session = make_session(messages=[user("Hi"), reply("")])
        coordinator = ToolCallCoordinator(FunctionToolInvoker(_registry()))

        outcome = await coordinator.handle_response(session, [_call("mark"), _call("echo")], GenerationRequest())

        assert outcome.should_stop_generation
        assert outcome.stealth_calls == ["mark"]
        assert all(message.name != TOOL_MESSAGE_NAME for message in session.messages)

    @pytest.mark.asyncio
    async def test_only_failures_stops_generation(self) -> None:
        session = make_session(messages=[user("Hi"), reply("")])
        coordinator = ToolCallCoordinator(FunctionToolInvoker(_registry()))

        outcome = await coordinator.handle_response(session, [_call("broken")], GenerationRequest())

        assert outcome.should_stop_generation
        assert len(outcome.errors) == 1

    @pytest.mark.asyncio
    async def test_unknown_tool_is_not_saved_to_chat(self) -> None:
        session = make_session(messages=[user("Hi"), reply("")])
        coordinator = ToolCallCoordinator(FunctionToolInvoker(_registry()))

        outcome = await coordinator.handle_response(session, [_call("missing")], GenerationRequest())

        assert outcome.should_stop_generation
        assert outcome.invocations == []
        assert isinstance(outcome.errors[0], ToolNotFoundError)
        assert all(message.name != TOOL_MESSAGE_NAME for message in session.messages)

    @pytest.mark.asyncio
    async def test_empty_calls_stop(self) -> None:
        coordinator = ToolCallCoordinator(FunctionToolInvoker(_registry()))

        outcome = await coordinator.handle_response(make_session(), [], GenerationRequest())

        assert outcome.should_stop_generation

    @pytest.mark.asyncio
    async def test_cancelled_signal_raises(self) -> None:
        signal = CancellationToken()
        signal.cancel("user")
        coordinator = ToolCallCoordinator(FunctionToolInvoker(_registry()))

        with pytest.raises(GenerationCancelledError):
            await coordinator.handle_response(
                make_session(messages=[user("Hi")]), [_call("echo")], GenerationRequest(signal=signal)
            )
