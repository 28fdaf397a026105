"""Tests for orchestration/injection.py."""

from __future__ import annotations

import pytest

from tavernkit.ai.orchestration.injection import (
    ExtensionPromptPosition,
    ExtensionPromptRole,
    InjectionRegistry,
)
from tavernkit.ai.orchestration.macros import MacroContext
from tavernkit.ai.orchestration.types import ContextPart, PartKind


def _history(*texts: str) -> list[ContextPart]:
    return [ContextPart(kind=PartKind.HISTORY, text=f"{text}\n") for text in texts]


def _texts(parts: list[ContextPart]) -> list[str]:
    return [part.text.strip() for part in parts]


class TestRegistryBasics:
    def test_empty_value_behaves_like_missing(self) -> None:
        registry = InjectionRegistry()
        registry.set("a", "")

        assert "a" not in registry
        assert len(registry) == 0

    def test_scan_text_only_includes_flagged_entries(self) -> None:
        registry = InjectionRegistry()
        registry.set("b", "scanned", scan=True)
        registry.set("a", "hidden", scan=False)
        registry.set("c", "also scanned ", scan=True)

        assert registry.scan_text() == "scanned\nalso scanned"

    def test_max_depth_considers_in_chat_entries(self) -> None:
        registry = InjectionRegistry()
        registry.set("a", "x", ExtensionPromptPosition.IN_PROMPT, depth=9)
        registry.set("b", "y", ExtensionPromptPosition.IN_CHAT, depth=3)

        assert registry.max_depth() == 3


class TestGet:
    @pytest.mark.asyncio
    async def test_joins_in_key_order(self) -> None:
        registry = InjectionRegistry()
        registry.set("b", "second")
        registry.set("a", "first")

        assert await registry.get(ExtensionPromptPosition.IN_PROMPT) == "first\nsecond"

    @pytest.mark.asyncio
    async def test_filter_false_excludes_entry(self) -> None:
        registry = InjectionRegistry()
        registry.set("a", "kept")
        registry.set("b", "dropped", filter=lambda: False)

        assert await registry.get(ExtensionPromptPosition.IN_PROMPT) == "kept"

    @pytest.mark.asyncio
    async def test_async_and_raising_filters(self) -> None:
        async def allow() -> bool:
            return True

        def explode() -> bool:
            raise RuntimeError("boom")

        registry = InjectionRegistry()
        registry.set("a", "async", filter=allow)
        registry.set("b", "broken", filter=explode)

        assert await registry.get(ExtensionPromptPosition.IN_PROMPT) == "async"

    @pytest.mark.asyncio
    async def test_filters_by_depth_and_role(self) -> None:
        registry = InjectionRegistry()
        registry.set("a", "sys", ExtensionPromptPosition.IN_CHAT, 1, role=ExtensionPromptRole.SYSTEM)
        registry.set("b", "usr", ExtensionPromptPosition.IN_CHAT, 1, role=ExtensionPromptRole.USER)
        registry.set("c", "deep", ExtensionPromptPosition.IN_CHAT, 2, role=ExtensionPromptRole.USER)

        value = await registry.get(ExtensionPromptPosition.IN_CHAT, 1, ExtensionPromptRole.USER)

        assert value == "usr"

    @pytest.mark.asyncio
    async def test_wrap_and_macros(self) -> None:
        registry = InjectionRegistry()
        registry.set("a", "Hello {{user}}")

        value = await registry.get(
            ExtensionPromptPosition.IN_PROMPT, wrap=True, context=MacroContext(user="Sam", char="Aria")
        )

        assert value == "\nHello Sam\n"

    @pytest.mark.asyncio
    async def test_transient_entries_empty_after_use(self) -> None:
        registry = InjectionRegistry()
        registry.set("a", "once", transient=True)

        assert await registry.get(ExtensionPromptPosition.IN_PROMPT) == "once"
        assert await registry.get(ExtensionPromptPosition.IN_PROMPT) == ""


class TestInject:
    @pytest.mark.asyncio
    async def test_depth_counts_from_newest(self) -> None:
        registry = InjectionRegistry()
        registry.set("note", "NOTE", ExtensionPromptPosition.IN_CHAT, depth=1)
        parts = _history("m1", "m2", "m3")

        indices = await registry.inject(parts)

        assert _texts(parts) == ["m1", "m2", "NOTE", "m3"]
        assert indices == [2]

    @pytest.mark.asyncio
    async def test_depth_zero_goes_last_unless_continuing(self) -> None:
        registry = InjectionRegistry()
        registry.set("note", "NOTE", ExtensionPromptPosition.IN_CHAT, depth=0)
        parts = _history("m1", "m2")
        await registry.inject(parts)
        assert _texts(parts) == ["m1", "m2", "NOTE"]

        parts = _history("m1", "m2")
        await registry.inject(parts, is_continue=True)
        assert _texts(parts) == ["m1", "NOTE", "m2"]

    @pytest.mark.asyncio
    async def test_roles_at_same_depth_keep_priority_order(self) -> None:
        registry = InjectionRegistry()
        registry.set("a", "SYS", ExtensionPromptPosition.IN_CHAT, 1, role=ExtensionPromptRole.SYSTEM)
        registry.set("b", "USR", ExtensionPromptPosition.IN_CHAT, 1, role=ExtensionPromptRole.USER)
        parts = _history("m1", "m2")

        await registry.inject(parts)

        assert _texts(parts) == ["m1", "USR", "SYS", "m2"]
        assert [part.messages[0].role for part in parts if part.injected] == ["user", "system"]

    @pytest.mark.asyncio
    async def test_depth_beyond_history_lands_at_start(self) -> None:
        registry = InjectionRegistry()
        registry.set("note", "NOTE", ExtensionPromptPosition.IN_CHAT, depth=10)
        parts = _history("m1")

        await registry.inject(parts)

        assert _texts(parts) == ["NOTE", "m1"]

    @pytest.mark.asyncio
    async def test_multiple_depths_account_for_prior_insertions(self) -> None:
        registry = InjectionRegistry()
        registry.set("a", "D0", ExtensionPromptPosition.IN_CHAT, depth=0)
        registry.set("b", "D2", ExtensionPromptPosition.IN_CHAT, depth=2)
        parts = _history("m1", "m2", "m3")

        indices = await registry.inject(parts)

        assert _texts(parts) == ["m1", "D2", "m2", "m3", "D0"]
        assert indices == [1, 4]

    @pytest.mark.asyncio
    async def test_factory_builds_parts(self) -> None:
        registry = InjectionRegistry()
        registry.set("note", "NOTE", ExtensionPromptPosition.IN_CHAT, depth=0)
        parts = _history("m1")

        await registry.inject(
            parts, factory=lambda role, text: ContextPart(kind=PartKind.HISTORY, text=f"[{role.chat_role}] {text}\n")
        )

        assert parts[-1].text == "[system] NOTE\n"
        assert parts[-1].injected
