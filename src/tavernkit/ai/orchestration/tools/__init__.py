"""Function-tool registry and executor.

Example:
    from tavernkit.ai.orchestration.tools import ToolRegistry, ToolExecutor, ToolSpec

    registry = ToolRegistry()
    registry.register_function(
        spec=ToolSpec(name="roll", description="Roll a die"),
        handler=lambda args: 4,
    )
    result = await ToolExecutor(registry).execute("roll", {})
"""

from ....errors import DuplicateToolError, ToolExecutionError, ToolNotFoundError
from .executor import ExecutorConfig, ToolExecutor
from .registry import ToolRegistration, ToolRegistry
from .types import AsyncToolHandler, SimpleTool, Tool, ToolHandler, ToolSpec

__all__ = [
    "Tool",
    "ToolSpec",
    "ToolHandler",
    "AsyncToolHandler",
    "SimpleTool",
    "ToolRegistry",
    "ToolRegistration",
    "DuplicateToolError",
    "ToolNotFoundError",
    "ToolExecutor",
    "ExecutorConfig",
    "ToolExecutionError",
]
