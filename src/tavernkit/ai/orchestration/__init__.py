"""Prompt assembly, budgeting, streaming and the generation pipeline."""

from .budget_manager import BudgetResult, TokenBudgetManager
from .cancellation import CancellationToken
from .context_builder import (
    ContextAssembler,
    NullWorldInfoProvider,
    WorldInfoBundle,
    WorldInfoEntry,
    WorldInfoProvider,
)
from .events import (
    ChunkCommitted,
    Event,
    EventBus,
    GenerationErrored,
    GenerationFinished,
    GenerationStarted,
    GenerationStopped,
    ToolCallsInvoked,
)
from .generation import GenerationPipeline, GenerationRequest, GenerationResult
from .injection import ExtensionPrompt, ExtensionPromptPosition, ExtensionPromptRole, InjectionRegistry
from .instruct import InstructFormatter, load_instruct_preset
from .macros import MacroContext, render_story_string, substitute_params
from .reasoning import ReasoningHandler, parse_reasoning_from_string
from .streaming import ProcessorState, StreamingOptions, StreamingProcessor
from .structured_output import validate_structured_output
from .tool_calls import (
    FunctionToolInvoker,
    ToolCallCoordinator,
    ToolCallOutcome,
    ToolInvocation,
    ToolInvocationResult,
    ToolInvoker,
)
from .types import AssembledContext, ContextPart, PartKind, PromptMessage

__all__ = [
    # context assembly
    "ContextAssembler",
    "WorldInfoProvider",
    "WorldInfoBundle",
    "WorldInfoEntry",
    "NullWorldInfoProvider",
    "AssembledContext",
    "ContextPart",
    "PartKind",
    "PromptMessage",
    "InjectionRegistry",
    "ExtensionPrompt",
    "ExtensionPromptPosition",
    "ExtensionPromptRole",
    "MacroContext",
    "substitute_params",
    "render_story_string",
    "InstructFormatter",
    "load_instruct_preset",
    # budgeting
    "TokenBudgetManager",
    "BudgetResult",
    # streaming
    "StreamingProcessor",
    "StreamingOptions",
    "ProcessorState",
    "ReasoningHandler",
    "parse_reasoning_from_string",
    "CancellationToken",
    # events
    "Event",
    "EventBus",
    "GenerationStarted",
    "ChunkCommitted",
    "GenerationFinished",
    "GenerationStopped",
    "GenerationErrored",
    "ToolCallsInvoked",
    # tools
    "ToolCallCoordinator",
    "ToolCallOutcome",
    "ToolInvoker",
    "ToolInvocation",
    "ToolInvocationResult",
    "FunctionToolInvoker",
    # pipeline
    "GenerationPipeline",
    "GenerationRequest",
    "GenerationResult",
    "validate_structured_output",
]
