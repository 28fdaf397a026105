"""Generation pipeline: assemble, trim, dispatch, reconcile, and loop on tools.

A run is a trampoline over passes. Each pass assembles the prompt, fits it
into the context window, sends it to the active backend adapter and feeds
the reply through a :class:`StreamingProcessor`. If the reply carries tool
calls the :class:`ToolCallCoordinator` decides whether another pass runs at
``depth + 1``.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Callable, List, Mapping, Optional

from ...chat.serialization import ChatPersistence, create_chat_header
from ...chat.session import Session
from ...errors import GenerationCancelledError, GenerationInProgressError
from ...services import telemetry as telemetry_service
from ...services.settings import Settings
from ..ai_types import GenerationType, TokenCounterProtocol, ToolCall
from ..backends.types import (
    BackendAdapter,
    BackendFamily,
    BackendRequest,
    ChatCompletionRequest,
    TextCompletionRequest,
    is_batch_response,
)
from ..client import ApproxByteCounter
from .budget_manager import BudgetResult, TokenBudgetManager
from .cancellation import CancellationToken
from .context_builder import ContextAssembler
from .events import EventBus
from .instruct import InstructFormatter
from .macros import MacroContext, substitute_params
from .streaming import ProcessorState, StreamingOptions, StreamingProcessor
from .structured_output import check_schema, validate_structured_output
from .tool_calls import ToolCallCoordinator, ToolCallOutcome
from .types import AssembledContext

__all__ = ["GenerationRequest", "GenerationResult", "GenerationPipeline"]

LOGGER = logging.getLogger(__name__)

# Types whose extra completions become additional swipes.
_MULTI_SWIPE_TYPES = frozenset({GenerationType.NORMAL, GenerationType.REGENERATE, GenerationType.SWIPE})


@dataclass(slots=True)
class GenerationRequest:
    """Parameters of one generation run.

    Attributes:
        type: Which slot the reply goes to.
        force_name2: Speaker name override for this run.
        force_chid: Group member forced to speak.
        signal: Cancellation token; a fresh one is created when omitted.
        depth: Tool-call recursion depth of this pass.
        json_schema: Optional schema the reply must satisfy.
        quiet_prompt: Instruction appended for quiet runs.
        quiet_to_loud: Format a quiet prompt like a normal turn.
    """

    type: GenerationType = GenerationType.NORMAL
    force_name2: str = ""
    force_chid: str = ""
    signal: Optional[CancellationToken] = None
    depth: int = 0
    json_schema: Optional[Mapping[str, Any]] = None
    quiet_prompt: str = ""
    quiet_to_loud: bool = False

    def __post_init__(self) -> None:
        self.type = GenerationType(self.type)

    def next_pass(self) -> "GenerationRequest":
        """Request for the recursive pass that follows saved tool results."""

        kind = self.type
        if kind in (GenerationType.SWIPE, GenerationType.REGENERATE):
            kind = GenerationType.NORMAL
        return replace(self, type=kind, depth=self.depth + 1)


@dataclass(slots=True)
class GenerationResult:
    text: str
    generation_type: GenerationType
    message_index: Optional[int] = None
    depth: int = 0
    stopped: bool = False
    structured: Any = None
    budget: Optional[BudgetResult] = None
    tool_outcomes: List[ToolCallOutcome] = field(default_factory=list)
    run_id: str = ""


@dataclass(slots=True)
class _PassResult:
    text: str
    processor: StreamingProcessor
    budget: BudgetResult
    tool_calls: List[ToolCall]


class GenerationPipeline:
    """Drives generation runs against a single backend adapter."""

    def __init__(
        self,
        settings: Settings,
        adapter: BackendAdapter,
        *,
        counter: TokenCounterProtocol | None = None,
        assembler: ContextAssembler | None = None,
        budget: TokenBudgetManager | None = None,
        bus: EventBus | None = None,
        tools: ToolCallCoordinator | None = None,
        persistence: ChatPersistence | None = None,
        telemetry_emitter: Callable[[str, Mapping[str, Any]], Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._adapter = adapter
        self._counter = counter or ApproxByteCounter(model_name=settings.backend.model)
        self._assembler = assembler or ContextAssembler(settings, family=adapter.family)
        self._budget = budget or TokenBudgetManager(self._counter)
        self._bus = bus or EventBus()
        self._tools = tools or ToolCallCoordinator(max_depth=settings.tools.max_recursion_depth, bus=self._bus)
        self._persistence = persistence
        self._emit = telemetry_emitter or telemetry_service.emit
        self._clock = clock

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def assembler(self) -> ContextAssembler:
        return self._assembler

    @property
    def budget_manager(self) -> TokenBudgetManager:
        return self._budget

    @property
    def tools(self) -> ToolCallCoordinator:
        return self._tools

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def generate(self, session: Session, request: GenerationRequest | None = None) -> GenerationResult:
        """Run a generation to completion, including any tool-call passes.

        Raises:
            GenerationInProgressError: If *session* is already generating.
            StructuredOutputError: If ``json_schema`` is set and the reply
                does not satisfy it.
        """

        if session.generating:
            raise GenerationInProgressError()
        request = request or GenerationRequest()
        signal = request.signal or CancellationToken()
        request = replace(request, signal=signal)
        if request.json_schema:
            check_schema(request.json_schema)
        run_id = uuid.uuid4().hex
        session.generating = True
        session.abort = signal
        LOGGER.debug("Generation %s started (%s)", run_id, request.type.value)
        try:
            if request.type is GenerationType.REGENERATE:
                self._drop_last_reply(session)
            result = await self._run(session, request, signal, run_id)
            await self._persist(session)
            return result
        finally:
            session.generating = False
            session.abort = None
            session.injections.clear_transient()

    def stop(self, session: Session, reason: str = "stopped") -> bool:
        """Cancel the session's running generation, if any."""

        if session.abort is None or session.abort.cancelled:
            return False
        session.abort.cancel(reason)
        return True

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------
    async def _run(
        self,
        session: Session,
        request: GenerationRequest,
        signal: CancellationToken,
        run_id: str,
    ) -> GenerationResult:
        result = GenerationResult(text="", generation_type=request.type, run_id=run_id)
        current = request
        while True:
            if signal.cancelled:
                LOGGER.debug("Generation %s cancelled before pass %d", run_id, current.depth)
                result.stopped = True
                return result
            outcome = await self._run_pass(session, current, signal)
            processor = outcome.processor
            result.text = outcome.text
            result.generation_type = current.type
            result.message_index = processor.message_index
            result.depth = current.depth
            result.budget = outcome.budget
            result.stopped = processor.state is ProcessorState.STOPPED
            self._emit_completed(session, current, outcome, run_id)
            if result.stopped:
                return result
            if current.json_schema and not outcome.tool_calls:
                result.structured = validate_structured_output(outcome.text, current.json_schema)
            if not outcome.tool_calls:
                return result
            try:
                tool_outcome = await self._tools.handle_response(
                    session, outcome.tool_calls, current, generated_text=outcome.text
                )
            except GenerationCancelledError:
                result.stopped = True
                return result
            result.tool_outcomes.append(tool_outcome)
            if tool_outcome.deleted_placeholder:
                result.message_index = None
            if tool_outcome.should_stop_generation:
                return result
            current = current.next_pass()
            LOGGER.debug("Generation %s recursing to depth %d", run_id, current.depth)

    async def _run_pass(
        self,
        session: Session,
        request: GenerationRequest,
        signal: CancellationToken,
    ) -> _PassResult:
        assembled = await self._assembler.assemble(session, request)
        session.metadata.tainted = True
        budget = self._fit(session, assembled)
        backend_request = self._build_request(session, budget.context, request)
        processor = StreamingProcessor(
            session,
            request.type,
            bus=self._bus,
            counter=self._counter,
            options=self._streaming_options(session, budget.context, request),
            reasoning=self._settings.reasoning,
            signal=signal,
            name=self._speaker(session, request),
            depth=request.depth,
            clock=self._clock,
        )
        adapter = self._adapter
        try:
            response = await adapter.generate(backend_request)
        except Exception as exc:
            processor.error(exc)
            raise
        processor.start()
        if is_batch_response(response):
            text = processor.run_batch(
                adapter.extract_message(response),
                adapter.extract_multi_swipes(response) if request.type in _MULTI_SWIPE_TYPES else (),
                adapter.extract_reasoning(response),
                adapter.extract_image(response),
                adapter.extract_tool_calls(response),
            )
        else:
            text = await processor.run(response)
        return _PassResult(text=text, processor=processor, budget=budget, tool_calls=list(processor.tool_calls))

    def _fit(self, session: Session, assembled: AssembledContext) -> BudgetResult:
        settings = self._settings
        available = self._budget.compute_budget(settings.backend)
        negative = settings.context.cfg_negative_prompt
        if negative:
            available = self._budget.reserve(available, substitute_params(negative, MacroContext.from_session(session)))
        fitted = self._budget.fit_to_budget(assembled, available)
        ContextAssembler.record_context_window(session, fitted.context)
        return fitted

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------
    def _build_request(
        self,
        session: Session,
        context: AssembledContext,
        request: GenerationRequest,
    ) -> BackendRequest:
        backend = self._settings.backend
        stream = backend.stream and request.type is not GenerationType.QUIET and not request.json_schema
        n = backend.n if request.type in _MULTI_SWIPE_TYPES else 1
        if context.chat_mode:
            tools = None
            if self._settings.tools.enabled and self._adapter.supports_tools and self._tools.can_perform(
                request.type, request.depth
            ):
                tools = self._tools.definitions() or None
            return ChatCompletionRequest(
                messages=[message.to_dict() for message in context.render_messages()],
                model=backend.model,
                max_tokens=backend.response_length,
                stream=stream,
                temperature=backend.temperature,
                n=n,
                stop=list(context.stop_strings),
                tools=tools,
                json_schema=request.json_schema,
                family=BackendFamily(backend.family),
            )
        return TextCompletionRequest(
            prompt=context.render_text(),
            model=backend.model,
            max_tokens=backend.response_length,
            stream=stream,
            temperature=backend.temperature,
            n=n,
            stop=list(context.stop_strings),
            json_schema=request.json_schema,
            family=BackendFamily(backend.family),
        )

    def _streaming_options(
        self,
        session: Session,
        context: AssembledContext,
        request: GenerationRequest,
    ) -> StreamingOptions:
        settings = self._settings
        macro_context = MacroContext.from_session(session, char_override=self._speaker(session, request))
        markers: List[str] = []
        if settings.instruct.enabled and not context.chat_mode:
            formatter = InstructFormatter(settings.instruct, macro_context)
            markers = [sequence.strip() for sequence in formatter.stopping_sequences() if sequence.strip()]
        if request.type is GenerationType.IMPERSONATE:
            prefixes = [session.user_name]
        else:
            prefixes = [macro_context.char]
        fps = settings.context.streaming_fps
        return StreamingOptions(
            stop_strings=list(context.stop_strings),
            instruct_markers=markers,
            name_prefixes=prefixes,
            trim_sentences=settings.context.trim_sentences,
            single_line=settings.context.single_line,
            ticker_interval=1 / fps if fps > 0 else 0.0,
            api=settings.backend.family,
            model=settings.backend.model,
        )

    @staticmethod
    def _speaker(session: Session, request: GenerationRequest) -> str:
        return request.force_name2 or request.force_chid or session.char_name

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------
    @staticmethod
    def _drop_last_reply(session: Session) -> None:
        last = session.last_message()
        if last is not None and not last.is_user and len(session.messages) > 1:
            session.messages.pop()
            LOGGER.debug("Removed last reply before regenerating")

    async def _persist(self, session: Session) -> None:
        if self._persistence is None:
            return
        header = create_chat_header(session.user_name, session.char_name)
        header.chat_metadata = session.metadata
        try:
            saved = await self._persistence.save(
                [message.to_dict() for message in session.messages],
                header.to_dict(),
            )
        except Exception:
            LOGGER.warning("Chat persistence raised; continuing", exc_info=True)
            return
        if not saved:
            LOGGER.warning("Chat persistence reported failure")

    def _emit_completed(
        self,
        session: Session,
        request: GenerationRequest,
        outcome: _PassResult,
        run_id: str,
    ) -> None:
        budget = outcome.budget
        self._emit(
            telemetry_service.GENERATION_COMPLETED,
            {
                "chat_id": session.metadata.integrity,
                "model": self._settings.backend.model,
                "prompt_tokens": budget.prompt_tokens,
                "budget": budget.budget,
                "response_reserve": self._settings.backend.response_length,
                "timestamp": time.time(),
                "message_count": len(budget.context.history()),
                "removed_count": len(budget.removed),
                "generation_type": request.type.value,
                "depth": request.depth,
                "run_id": run_id,
                "over_budget": budget.over_budget,
            },
        )

