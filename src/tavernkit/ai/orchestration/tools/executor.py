"""Runs registered tools by name with logging and error wrapping."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping

from ....errors import ToolExecutionError, ToolNotFoundError
from .registry import ToolRegistry

__all__ = ["ToolExecutor", "ExecutorConfig"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ExecutorConfig:
    """Configuration for the tool executor.

    Attributes:
        default_timeout: Per-call timeout in seconds; ``None`` (the default) leaves
            timing out to the caller.
        log_arguments: Whether to log tool arguments (may contain chat text).
        strict_mode: If True, raise on unknown tools; otherwise return an error payload.
    """

    default_timeout: float | None = None
    log_arguments: bool = False
    strict_mode: bool = False


class ToolExecutor:
    """Executes tools from a :class:`ToolRegistry`."""

    def __init__(
        self,
        registry: ToolRegistry,
        config: ExecutorConfig | None = None,
    ) -> None:
        self._registry = registry
        self._config = config or ExecutorConfig()

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    async def execute(
        self,
        name: str,
        arguments: Mapping[str, Any],
        *,
        call_id: str = "",
        timeout: float | None = None,
    ) -> Any:
        """Execute a tool by name.

        Raises:
            ToolNotFoundError: If the tool is unknown and ``strict_mode`` is set.
            ToolExecutionError: If the handler raises.
            asyncio.TimeoutError: If the call exceeds its timeout.
        """
        if self._config.log_arguments:
            LOGGER.debug("Executing tool %s (call_id=%s) with arguments: %s", name, call_id, arguments)
        else:
            LOGGER.debug("Executing tool %s (call_id=%s)", name, call_id)

        tool = self._registry.get(name)
        if tool is None:
            if self._config.strict_mode:
                raise ToolNotFoundError(name)
            LOGGER.warning("Tool '%s' not found or disabled", name)
            return {"error": "tool_not_found", "message": f"Tool '{name}' not found or disabled"}

        effective_timeout = timeout if timeout is not None else self._config.default_timeout
        start_time = time.perf_counter()
        try:
            if effective_timeout is not None and effective_timeout > 0:
                result = await asyncio.wait_for(tool.execute(arguments), timeout=effective_timeout)
            else:
                result = await tool.execute(arguments)
        except asyncio.TimeoutError:
            LOGGER.warning(
                "Tool %s timed out after %.1fms (timeout=%.1fs)",
                name,
                (time.perf_counter() - start_time) * 1000,
                effective_timeout,
            )
            raise
        except Exception as exc:
            LOGGER.warning("Tool %s failed after %.1fms: %s", name, (time.perf_counter() - start_time) * 1000, exc)
            raise ToolExecutionError(str(exc), tool_name=name, cause=exc) from exc
        LOGGER.debug("Tool %s completed in %.1fms", name, (time.perf_counter() - start_time) * 1000)
        return result

    def has_tool(self, name: str) -> bool:
        return self._registry.has(name)
