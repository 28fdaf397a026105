"""Registry of function tools available to a chat."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from ....errors import DuplicateToolError, ToolNotFoundError
from .types import AsyncToolHandler, SimpleTool, Tool, ToolHandler, ToolSpec

__all__ = ["ToolRegistry", "ToolRegistration"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolRegistration:
    """Record of a registered tool."""

    name: str
    tool: Tool
    spec: ToolSpec
    enabled: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)


class ToolRegistry:
    """Holds tool registrations keyed by name.

    Example:
        registry = ToolRegistry()
        registry.register_function(
            spec=ToolSpec(name="weather", description="Current weather"),
            handler=lambda args: {"city": args["city"], "sky": "clear"},
        )
        tool = registry.get_required("weather")
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolRegistration] = {}

    def register(
        self,
        tool: Tool,
        *,
        enabled: bool = True,
        allow_override: bool = False,
        metadata: Mapping[str, Any] | None = None,
    ) -> ToolRegistration:
        """Register a tool implementation.

        Raises:
            DuplicateToolError: If the name is taken and ``allow_override`` is False.
        """
        name = tool.name
        if name in self._tools and not allow_override:
            raise DuplicateToolError(name)
        registration = ToolRegistration(
            name=name,
            tool=tool,
            spec=tool.spec,
            enabled=enabled,
            metadata=dict(metadata) if metadata else {},
        )
        self._tools[name] = registration
        LOGGER.debug("Registered tool: %s (stealth=%s)", name, tool.spec.stealth)
        return registration

    def register_function(
        self,
        spec: ToolSpec,
        handler: ToolHandler | AsyncToolHandler,
        *,
        enabled: bool = True,
        allow_override: bool = False,
        metadata: Mapping[str, Any] | None = None,
    ) -> ToolRegistration:
        return self.register(
            SimpleTool(spec=spec, handler=handler),
            enabled=enabled,
            allow_override=allow_override,
            metadata=metadata,
        )

    def unregister(self, name: str) -> bool:
        if name in self._tools:
            del self._tools[name]
            LOGGER.debug("Unregistered tool: %s", name)
            return True
        return False

    def get(self, name: str) -> Tool | None:
        """Return the tool if it exists and is enabled."""
        registration = self._tools.get(name)
        if registration is None or not registration.enabled:
            return None
        return registration.tool

    def get_required(self, name: str) -> Tool:
        tool = self.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def spec(self, name: str) -> ToolSpec | None:
        registration = self._tools.get(name)
        return registration.spec if registration is not None else None

    def has(self, name: str) -> bool:
        registration = self._tools.get(name)
        return registration is not None and registration.enabled

    def is_stealth(self, name: str) -> bool:
        spec = self.spec(name)
        return bool(spec and spec.stealth)

    def list_names(self, *, include_disabled: bool = False) -> list[str]:
        return [
            registration.name
            for registration in self._tools.values()
            if registration.enabled or include_disabled
        ]

    def get_openai_tools(self) -> list[dict[str, Any]]:
        """Enabled tool definitions in the chat-completions ``tools`` format."""
        return [
            registration.spec.to_openai_tool()
            for registration in self._tools.values()
            if registration.enabled
        ]

    def enable(self, name: str) -> bool:
        registration = self._tools.get(name)
        if registration is None:
            return False
        registration.enabled = True
        return True

    def disable(self, name: str) -> bool:
        registration = self._tools.get(name)
        if registration is None:
            return False
        registration.enabled = False
        return True

    def clear(self) -> None:
        self._tools.clear()

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools
