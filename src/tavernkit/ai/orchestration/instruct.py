"""Instruct-mode sequence formatting and preset loading."""

from __future__ import annotations

import logging
from dataclasses import fields
from enum import Enum
from pathlib import Path
from typing import Any, List, Mapping, Sequence

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from ...services.settings import InstructSettings
from .macros import MacroContext, substitute_params

__all__ = [
    "NamesBehavior",
    "OutputSequence",
    "InstructFormatter",
    "load_instruct_preset",
]

LOGGER = logging.getLogger(__name__)


class NamesBehavior(str, Enum):
    NONE = "none"
    FORCE = "force"
    ALWAYS = "always"


class OutputSequence(str, Enum):
    """Which output sequence variant to force for a formatted turn."""

    DEFAULT = "default"
    LAST = "last"


class InstructFormatter:
    """Wraps chat turns, prompts and examples in instruct sequences."""

    def __init__(self, settings: InstructSettings, context: MacroContext) -> None:
        self._settings = settings
        self._context = context

    @property
    def enabled(self) -> bool:
        return self._settings.enabled

    @property
    def separator(self) -> str:
        return "\n" if self._settings.wrap else ""

    def _names_behavior(self) -> NamesBehavior:
        try:
            return NamesBehavior(self._settings.names_behavior)
        except ValueError:
            return NamesBehavior.FORCE

    def _expand(self, sequence: str, name: str) -> str:
        if not self._settings.macro:
            return sequence
        return substitute_params(sequence, self._context, extra={"name": name or "System"})

    def format_chat(
        self,
        name: str,
        text: str,
        *,
        is_user: bool,
        is_narrator: bool = False,
        force_avatar: bool = False,
        output: OutputSequence = OutputSequence.DEFAULT,
    ) -> str:
        """Format one history turn with its input/output/system sequence."""

        settings = self._settings
        behavior = self._names_behavior()
        include_names = not is_narrator and (
            behavior is NamesBehavior.ALWAYS
            or (self._context.is_group and behavior is NamesBehavior.FORCE)
            or force_avatar
        )
        if is_narrator:
            prefix, suffix = settings.system_sequence, settings.system_suffix
        elif is_user:
            prefix, suffix = settings.input_sequence, settings.input_suffix
        else:
            prefix = settings.output_sequence
            if output is OutputSequence.LAST and settings.last_output_sequence:
                prefix = settings.last_output_sequence
            suffix = settings.output_suffix
        prefix = self._expand(prefix, name)
        suffix = self._expand(suffix, name)
        if not suffix and settings.wrap:
            suffix = "\n"
        body = f"{name}: {text}" if include_names and name else text
        return self.separator.join(part for part in (prefix, body + suffix) if part)

    def format_prompt(
        self,
        name: str,
        *,
        is_impersonate: bool = False,
        is_quiet: bool = False,
        quiet_to_loud: bool = False,
        prompt_bias: str = "",
    ) -> str:
        """Build the trailing generation prefix that opens the reply turn."""

        settings = self._settings
        behavior = self._names_behavior()
        include_names = bool(name) and (
            behavior is NamesBehavior.ALWAYS
            or (self._context.is_group and behavior is NamesBehavior.FORCE)
        ) and not (is_quiet and not quiet_to_loud)
        if is_impersonate:
            sequence = settings.input_sequence
        elif is_quiet and not quiet_to_loud:
            sequence = settings.output_sequence
        else:
            sequence = settings.last_output_sequence or settings.output_sequence
        sequence = self._expand(sequence, name)
        separator = self.separator
        text = f"{separator}{sequence}{separator}{name}:" if include_names else f"{separator}{sequence}"
        if is_quiet and separator:
            text = text[len(separator):]
        if not is_impersonate and prompt_bias:
            text += prompt_bias if include_names else separator + prompt_bias.lstrip()
        text = text.rstrip() if settings.wrap else text
        return text + ("" if include_names else separator)

    def format_story_string(self, story_string: str) -> str:
        settings = self._settings
        prefix = self._expand(settings.story_string_prefix or settings.system_sequence, "System")
        suffix = self._expand(settings.story_string_suffix or settings.system_suffix, "System")
        if not prefix and not suffix:
            return story_string
        separator = self.separator if prefix and not prefix.endswith("\n") else ""
        return f"{prefix}{separator}{story_string}{suffix}"

    def format_system(self, text: str) -> str:
        """Wrap a standalone system turn such as post-history instructions."""

        return self.format_chat("System", text, is_user=False, is_narrator=True)

    def format_examples(self, blocks: Sequence[Sequence[tuple[str, str, bool]]], block_separator: str) -> List[str]:
        """Format parsed example blocks; each turn is ``(name, text, is_user)``."""

        formatted: List[str] = []
        for block in blocks:
            lines = [self.format_chat(name, text, is_user=is_user) for name, text, is_user in block]
            body = "".join(line if line.endswith("\n") else line + "\n" for line in lines)
            formatted.append(f"{block_separator}\n{body}" if block_separator else body)
        return formatted

    def stopping_sequences(self) -> List[str]:
        """Instruct sequences that should end generation."""

        if not self._settings.enabled:
            return []
        settings = self._settings
        if settings.sequences_as_stop_strings:
            candidates = [
                settings.stop_sequence,
                self._named(settings.input_sequence, self._context.user),
                self._named(settings.output_sequence, self._context.char),
                self._named(settings.last_output_sequence, self._context.char),
                self._named(settings.system_sequence, "System"),
            ]
        else:
            candidates = [settings.stop_sequence]
        lines: List[str] = []
        for candidate in candidates:
            for line in (candidate or "").split("\n"):
                if line not in lines:
                    lines.append(line)
        result: List[str] = []
        for line in lines:
            if not line or not line.strip():
                continue
            wrapped = f"\n{line}" if settings.wrap else line
            result.append(substitute_params(wrapped, self._context) if settings.macro else wrapped)
        return result

    @staticmethod
    def _named(sequence: str, name: str) -> str:
        if not sequence:
            return ""
        return sequence.replace("{{name}}", name).replace("{{NAME}}", name)


def _create_yaml_parser() -> YAML:
    parser = YAML(typ="safe")
    parser.allow_duplicate_keys = False
    return parser


def load_instruct_preset(path: Path | str, *, base: InstructSettings | None = None) -> InstructSettings:
    """Load an instruct preset from a YAML (or JSON) file.

    Unknown keys are ignored with a warning. ``name`` becomes ``preset``.

    Raises:
        ValueError: If the file is not a mapping or cannot be parsed.
    """

    target = Path(path)
    try:
        payload = _create_yaml_parser().load(target.read_text(encoding="utf-8"))
    except YAMLError as exc:
        raise ValueError(f"Invalid instruct preset {target}: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise ValueError(f"Instruct preset {target} must contain a mapping")
    allowed = {item.name for item in fields(InstructSettings)}
    values: dict[str, Any] = {}
    unknown: List[str] = []
    for key, value in payload.items():
        key = "preset" if key == "name" else str(key)
        if key in allowed:
            values[key] = value
        else:
            unknown.append(key)
    if unknown:
        LOGGER.warning("Ignoring unknown instruct preset keys in %s: %s", target, sorted(unknown))
    settings = base if base is not None else InstructSettings()
    merged = {item.name: getattr(settings, item.name) for item in fields(InstructSettings)}
    merged.update(values)
    if "enabled" not in values:
        merged["enabled"] = True
    return InstructSettings(**merged)
