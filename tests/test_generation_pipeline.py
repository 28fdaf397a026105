"""Tests for orchestration/generation.py."""

from __future__ import annotations

from typing import Any, Mapping

import pytest

from tavernkit.ai.ai_types import GenerationType, ToolCall
from tavernkit.ai.backends.types import BackendFamily, ChatCompletionRequest, TextCompletionRequest
from tavernkit.ai.orchestration.events import ChunkCommitted, EventBus, GenerationStarted
from tavernkit.ai.orchestration.generation import GenerationPipeline, GenerationRequest
from tavernkit.ai.orchestration.tool_calls import TOOL_MESSAGE_NAME, FunctionToolInvoker, ToolCallCoordinator
from tavernkit.ai.orchestration.tools import ToolRegistry, ToolSpec
from tavernkit.errors import GenerationInProgressError, StructuredOutputError
from tavernkit.services import telemetry

from helpers import FakeAdapter, FakeReply, LengthCounter, RecordingPersistence, make_session, reply, user

MOOD_SCHEMA = {
    "type": "object",
    "properties": {"mood": {"type": "string"}},
    "required": ["mood"],
}


def _pipeline(settings, adapter, **kwargs: Any) -> GenerationPipeline:
    kwargs.setdefault("counter", LengthCounter())
    kwargs.setdefault("telemetry_emitter", lambda name, payload: None)
    return GenerationPipeline(settings, adapter, **kwargs)


def _tool_coordinator(*, max_depth: int = 5, stealth: bool = False, bus: EventBus | None = None) -> ToolCallCoordinator:
    registry = ToolRegistry()
    registry.register_function(
        ToolSpec(name="roll", description="Roll a die", stealth=stealth),
        lambda args: 4,
    )
    return ToolCallCoordinator(FunctionToolInvoker(registry), max_depth=max_depth, bus=bus)


def _roll_call() -> ToolCall:
    return ToolCall(id="call_1", name="roll", arguments='{"sides": 6}')


# -----------------------------------------------------------------------------
# Basic runs
# -----------------------------------------------------------------------------


class TestNormalRun:
    @pytest.mark.asyncio
    async def test_batch_reply_is_appended(self, chat_settings, session) -> None:
        adapter = FakeAdapter([FakeReply("How are you?")])
        pipeline = _pipeline(chat_settings, adapter)

        result = await pipeline.generate(session)

        assert result.text == "How are you?"
        assert result.generation_type is GenerationType.NORMAL
        assert result.message_index == 2
        assert result.depth == 0
        assert session.messages[-1].mes == "How are you?"
        assert not session.generating
        assert session.abort is None

    @pytest.mark.asyncio
    async def test_adapter_error_leaves_chat_unchanged(self, chat_settings, session) -> None:
        adapter = FakeAdapter([FakeReply(error=RuntimeError("boom"))])

        with pytest.raises(RuntimeError):
            await _pipeline(chat_settings, adapter).generate(session)

        assert [message.mes for message in session.messages] == ["Hi", "Hello!"]

    @pytest.mark.asyncio
    async def test_failed_swipe_keeps_visible_reply(self, chat_settings, session) -> None:
        adapter = FakeAdapter([FakeReply(error=RuntimeError("boom"))])

        with pytest.raises(RuntimeError):
            await _pipeline(chat_settings, adapter).generate(session, GenerationRequest(type=GenerationType.SWIPE))

        message = session.messages[-1]
        assert message.mes == "Hello!"
        assert message.swipes in (None, ["Hello!"])
        assert message.swipe_id in (None, 0)

    @pytest.mark.asyncio
    async def test_generation_taints_chat(self, chat_settings, session) -> None:
        assert not session.metadata.tainted

        await _pipeline(chat_settings, FakeAdapter([FakeReply("Sure.")])).generate(
            session, GenerationRequest(type=GenerationType.QUIET, quiet_prompt="Summarize.")
        )

        assert session.metadata.tainted

    @pytest.mark.asyncio
    async def test_first_generation_resolves_greeting_then_taints(self, chat_settings) -> None:
        session = make_session(messages=[reply("Welcome, {{user}}.")])
        adapter = FakeAdapter([FakeReply("Hi!")])

        await _pipeline(chat_settings, adapter).generate(session)

        assert session.messages[0].mes == "Welcome, Sam."
        assert session.metadata.tainted
        request = adapter.requests[0]
        assert isinstance(request, ChatCompletionRequest)
        assert request.stream is False
        assert request.messages[-1]["role"] in ("user", "assistant", "system")

    @pytest.mark.asyncio
    async def test_streamed_reply(self, chat_settings, session) -> None:
        chat_settings.backend.stream = True
        adapter = FakeAdapter([FakeReply(chunks=["Hel", "Hello wor", "Hello world."])])

        result = await _pipeline(chat_settings, adapter).generate(session)

        assert adapter.requests[0].stream is True
        assert result.text == "Hello world."
        assert session.messages[-1].mes == "Hello world."

    @pytest.mark.asyncio
    async def test_extra_choices_become_swipes(self, chat_settings, session) -> None:
        adapter = FakeAdapter([FakeReply("A", swipes=["B"])])

        await _pipeline(chat_settings, adapter).generate(session)

        assert session.messages[-1].swipes == ["A", "B"]

    @pytest.mark.asyncio
    async def test_text_family_sends_flat_prompt(self, text_settings, session) -> None:
        adapter = FakeAdapter([FakeReply("Fine.")], family=BackendFamily.TEXT_COMPLETION)

        result = await _pipeline(text_settings, adapter).generate(session)

        request = adapter.requests[0]
        assert isinstance(request, TextCompletionRequest)
        assert request.prompt.endswith("Aria:")
        assert "Sam: Hi" in request.prompt
        assert result.text == "Fine."

    @pytest.mark.asyncio
    async def test_second_run_while_generating_is_rejected(self, chat_settings, session) -> None:
        session.generating = True
        pipeline = _pipeline(chat_settings, FakeAdapter([FakeReply("x")]))

        with pytest.raises(GenerationInProgressError):
            await pipeline.generate(session)

    @pytest.mark.asyncio
    async def test_adapter_error_propagates_and_resets_state(self, chat_settings, session) -> None:
        adapter = FakeAdapter([FakeReply(error=ConnectionError("refused"))])
        pipeline = _pipeline(chat_settings, adapter)

        with pytest.raises(ConnectionError):
            await pipeline.generate(session)

        assert not session.generating
        assert session.abort is None

    @pytest.mark.asyncio
    async def test_started_event_published(self, chat_settings, session) -> None:
        bus = EventBus()
        started: list = []
        bus.subscribe(GenerationStarted, started.append)

        await _pipeline(chat_settings, FakeAdapter([FakeReply("Hey")]), bus=bus).generate(session)

        assert [event.depth for event in started] == [0]


class TestGenerationTypes:
    @pytest.mark.asyncio
    async def test_regenerate_replaces_last_reply(self, chat_settings, session) -> None:
        adapter = FakeAdapter([FakeReply("Howdy!")])

        result = await _pipeline(chat_settings, adapter).generate(
            session, GenerationRequest(type=GenerationType.REGENERATE)
        )

        assert len(session.messages) == 2
        assert session.messages[-1].mes == "Howdy!"
        assert result.message_index == 1
        assert all(message.get("content") != "Hello!" for message in adapter.requests[0].messages)

    @pytest.mark.asyncio
    async def test_swipe_adds_candidate(self, chat_settings, session) -> None:
        adapter = FakeAdapter([FakeReply("Greetings!")])

        await _pipeline(chat_settings, adapter).generate(session, GenerationRequest(type=GenerationType.SWIPE))

        message = session.messages[-1]
        assert message.swipes == ["Hello!", "Greetings!"]
        assert message.mes == "Greetings!"

    @pytest.mark.asyncio
    async def test_quiet_structured_output(self, chat_settings, session) -> None:
        chat_settings.backend.stream = True
        adapter = FakeAdapter([FakeReply('{"mood": "cheerful"}')])

        result = await _pipeline(chat_settings, adapter).generate(
            session,
            GenerationRequest(
                type=GenerationType.QUIET,
                quiet_prompt="Describe the mood.",
                json_schema=MOOD_SCHEMA,
            ),
        )

        request = adapter.requests[0]
        assert request.stream is False
        assert request.json_schema == MOOD_SCHEMA
        assert any(message.get("content") == "Describe the mood." for message in request.messages)
        assert result.structured == {"mood": "cheerful"}
        assert len(session.messages) == 2

    @pytest.mark.asyncio
    async def test_invalid_structured_output_raises(self, chat_settings, session) -> None:
        adapter = FakeAdapter([FakeReply('{"tone": 3}')])

        with pytest.raises(StructuredOutputError) as excinfo:
            await _pipeline(chat_settings, adapter).generate(
                session, GenerationRequest(type=GenerationType.QUIET, json_schema=MOOD_SCHEMA)
            )

        assert excinfo.value.payload == {"tone": 3}
        assert not session.generating

    @pytest.mark.asyncio
    async def test_invalid_schema_fails_before_dispatch(self, chat_settings, session) -> None:
        adapter = FakeAdapter([FakeReply("{}")])

        with pytest.raises(StructuredOutputError):
            await _pipeline(chat_settings, adapter).generate(
                session, GenerationRequest(type=GenerationType.QUIET, json_schema={"type": 12})
            )

        assert adapter.requests == []


# -----------------------------------------------------------------------------
# Tool recursion
# -----------------------------------------------------------------------------


class TestToolRecursion:
    @pytest.mark.asyncio
    async def test_tool_results_trigger_another_pass(self, chat_settings) -> None:
        session = make_session(messages=[user("Roll for me")])
        adapter = FakeAdapter([FakeReply("", tool_calls=[_roll_call()]), FakeReply("You rolled a 4.")])
        pipeline = _pipeline(chat_settings, adapter, tools=_tool_coordinator())

        result = await pipeline.generate(session)

        assert len(adapter.requests) == 2
        assert adapter.requests[0].tools is not None
        assert result.depth == 1
        assert result.text == "You rolled a 4."
        assert [message.name for message in session.messages] == ["Sam", TOOL_MESSAGE_NAME, "Aria"]
        assert result.tool_outcomes[0].deleted_placeholder

    @pytest.mark.asyncio
    async def test_recursion_stops_at_ceiling(self, chat_settings) -> None:
        session = make_session(messages=[user("Roll forever")])
        adapter = FakeAdapter([FakeReply("", tool_calls=[_roll_call()])])
        pipeline = _pipeline(chat_settings, adapter, tools=_tool_coordinator(max_depth=2))

        result = await pipeline.generate(session)

        assert len(adapter.requests) == 3
        assert adapter.requests[2].tools is None
        assert result.depth == 2
        assert result.tool_outcomes[-1].should_stop_generation
        assert sum(1 for message in session.messages if message.name == TOOL_MESSAGE_NAME) == 2

    @pytest.mark.asyncio
    async def test_stealth_tool_ends_generation(self, chat_settings) -> None:
        session = make_session(messages=[user("Roll quietly")])
        adapter = FakeAdapter([FakeReply("", tool_calls=[_roll_call()]), FakeReply("never")])
        pipeline = _pipeline(chat_settings, adapter, tools=_tool_coordinator(stealth=True))

        result = await pipeline.generate(session)

        assert len(adapter.requests) == 1
        assert result.tool_outcomes[0].stealth_calls == ["roll"]
        assert result.message_index is None

    @pytest.mark.asyncio
    async def test_swipe_pass_recurses_as_normal(self, chat_settings, session) -> None:
        adapter = FakeAdapter([FakeReply("", tool_calls=[_roll_call()]), FakeReply("Rolled.")])
        pipeline = _pipeline(chat_settings, adapter, tools=_tool_coordinator())

        result = await pipeline.generate(session, GenerationRequest(type=GenerationType.SWIPE))

        assert result.generation_type is GenerationType.NORMAL
        assert session.messages[-1].mes == "Rolled."

    @pytest.mark.asyncio
    async def test_tools_disabled_in_settings(self, chat_settings, session) -> None:
        chat_settings.tools.enabled = False
        adapter = FakeAdapter([FakeReply("Plain")])

        await _pipeline(chat_settings, adapter, tools=_tool_coordinator()).generate(session)

        assert adapter.requests[0].tools is None


# -----------------------------------------------------------------------------
# Stop, persistence and telemetry
# -----------------------------------------------------------------------------


class TestStop:
    def test_stop_without_running_generation(self, chat_settings, session) -> None:
        assert not _pipeline(chat_settings, FakeAdapter([FakeReply()])).stop(session)

    @pytest.mark.asyncio
    async def test_stop_mid_stream_keeps_partial_reply(self, chat_settings, session) -> None:
        chat_settings.backend.stream = True
        bus = EventBus()
        adapter = FakeAdapter([FakeReply(chunks=["Once", "Once upon", "Once upon a time"])])
        pipeline = _pipeline(chat_settings, adapter, bus=bus)
        stops: list = []

        def _stop_after_first(event: ChunkCommitted) -> None:
            if not stops:
                stops.append(pipeline.stop(session, "user"))

        bus.subscribe(ChunkCommitted, _stop_after_first)

        result = await pipeline.generate(session)

        assert stops == [True]
        assert result.stopped
        assert session.messages[-1].mes.startswith("Once")
        assert session.messages[-1].mes != "Once upon a time"
        assert not session.generating


class TestPersistence:
    @pytest.mark.asyncio
    async def test_chat_saved_after_run(self, chat_settings, session) -> None:
        persistence = RecordingPersistence()

        await _pipeline(chat_settings, FakeAdapter([FakeReply("Saved")]), persistence=persistence).generate(session)

        messages, header = persistence.saves[0]
        assert messages[-1]["mes"] == "Saved"
        assert header["user_name"] == "Sam"
        assert header["character_name"] == "Aria"
        assert header["chat_metadata"]["integrity"] == session.metadata.integrity

    @pytest.mark.asyncio
    async def test_failed_save_does_not_raise(self, chat_settings, session) -> None:
        persistence = RecordingPersistence(result=False)

        result = await _pipeline(chat_settings, FakeAdapter([FakeReply("Ok")]), persistence=persistence).generate(
            session
        )

        assert result.text == "Ok"
        assert len(persistence.saves) == 1

    @pytest.mark.asyncio
    async def test_raising_save_is_logged(self, chat_settings, session, caplog: pytest.LogCaptureFixture) -> None:
        persistence = RecordingPersistence(error=OSError("disk full"))

        with caplog.at_level("WARNING"):
            await _pipeline(chat_settings, FakeAdapter([FakeReply("Ok")]), persistence=persistence).generate(session)

        assert "persistence raised" in caplog.text


class TestTelemetry:
    @pytest.mark.asyncio
    async def test_completed_event_per_pass(self, chat_settings, session) -> None:
        events: list[tuple[str, Mapping[str, Any]]] = []
        pipeline = _pipeline(
            chat_settings,
            FakeAdapter([FakeReply("Hi there")]),
            telemetry_emitter=lambda name, payload: events.append((name, dict(payload))),
        )

        result = await pipeline.generate(session)

        completed = [payload for name, payload in events if name == telemetry.GENERATION_COMPLETED]
        assert len(completed) == 1
        payload = completed[0]
        assert payload["chat_id"] == session.metadata.integrity
        assert payload["model"] == chat_settings.backend.model
        assert payload["generation_type"] == "normal"
        assert payload["depth"] == 0
        assert payload["run_id"] == result.run_id
        assert payload["response_reserve"] == chat_settings.backend.response_length
        assert payload["prompt_tokens"] == result.budget.prompt_tokens
        assert payload["over_budget"] is False

    @pytest.mark.asyncio
    async def test_default_emitter_reaches_listeners(self, chat_settings, session) -> None:
        seen: list = []
        telemetry.register_event_listener(telemetry.GENERATION_COMPLETED, seen.append)
        pipeline = GenerationPipeline(chat_settings, FakeAdapter([FakeReply("Hi")]), counter=LengthCounter())

        await pipeline.generate(session)

        assert seen and seen[0]["event"] == telemetry.GENERATION_COMPLETED
