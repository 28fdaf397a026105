"""Macro substitution and the story-string template renderer."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Dict, Mapping, Optional

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ...chat.session import Session

__all__ = ["MacroContext", "substitute_params", "render_story_string"]

_COMMENT_PATTERN = re.compile(r"\{\{//[\s\S]*?\}\}")
_TRIM_PATTERN = re.compile(r"(?:\r?\n)*\{\{trim\}\}(?:\r?\n)*", re.IGNORECASE)
_MACRO_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][\w]*)\s*\}\}")
_ANGLE_PATTERN = re.compile(r"<(USER|BOT|CHAR|CHARIFNOTGROUP)>", re.IGNORECASE)
_IF_BLOCK_PATTERN = re.compile(r"\{\{#if\s+([\w.]+)\s*\}\}((?:(?!\{\{#if)[\s\S])*?)\{\{/if\}\}")


@dataclass(slots=True)
class MacroContext:
    """Values the ``{{macro}}`` placeholders resolve to."""

    user: str = "User"
    char: str = ""
    group: str = ""
    description: str = ""
    personality: str = ""
    scenario: str = ""
    persona: str = ""
    mes_examples: str = ""
    system: str = ""
    input: str = ""
    last_message: str = ""
    is_group: bool = False
    extra: Dict[str, str] = field(default_factory=dict)
    clock: Callable[[], datetime] = datetime.now

    @classmethod
    def from_session(cls, session: "Session", *, char_override: str | None = None) -> "MacroContext":
        character = session.character
        members = [member.name for member in session.group_members if member.enabled]
        last = session.last_message()
        return cls(
            user=session.user_name,
            char=char_override or character.name,
            group=", ".join(members) if members else (char_override or character.name),
            description=character.description,
            personality=character.personality,
            scenario=session.metadata.scenario or character.scenario,
            persona=session.persona.description,
            mes_examples=character.mes_example,
            system=character.system_prompt,
            input=session.input_text,
            last_message=last.mes if last is not None else "",
            is_group=session.is_group,
        )

    def lookup(self) -> Dict[str, str]:
        now = self.clock()
        values = {
            "user": self.user,
            "char": self.char,
            "charifnotgroup": self.group if self.is_group else self.char,
            "group": self.group or self.char,
            "description": self.description,
            "personality": self.personality,
            "scenario": self.scenario,
            "persona": self.persona,
            "mesexamples": self.mes_examples,
            "system": self.system,
            "charprompt": self.system,
            "input": self.input,
            "lastmessage": self.last_message,
            "newline": "\n",
            "noop": "",
            "time": now.strftime("%H:%M"),
            "date": now.strftime("%B %d, %Y").replace(" 0", " "),
            "weekday": now.strftime("%A"),
            "isodate": now.strftime("%Y-%m-%d"),
            "isotime": now.strftime("%H:%M"),
        }
        values.update({key.lower(): value for key, value in self.extra.items()})
        return values


def substitute_params(
    text: Optional[str],
    context: MacroContext,
    *,
    original: Optional[str] = None,
    extra: Mapping[str, str] | None = None,
) -> str:
    """Replace ``{{macro}}`` and ``<USER>``-style placeholders in *text*.

    Lookup is case-insensitive. Unknown macros are left untouched.
    ``{{original}}`` expands once, to *original*; later occurrences vanish.
    """

    if not text:
        return ""
    values = context.lookup()
    if extra:
        values.update({key.lower(): value for key, value in extra.items()})

    result = _COMMENT_PATTERN.sub("", text)
    original_used = False

    def _replace(match: re.Match[str]) -> str:
        nonlocal original_used
        key = match.group(1).lower()
        if key == "original":
            if original is None:
                return match.group(0)
            if original_used:
                return ""
            original_used = True
            return original
        if key == "trim":
            return match.group(0)
        value = values.get(key)
        return match.group(0) if value is None else value

    result = _MACRO_PATTERN.sub(_replace, result)
    result = _ANGLE_PATTERN.sub(lambda match: values[_angle_key(match.group(1))], result)
    return _TRIM_PATTERN.sub("", result)


def _angle_key(token: str) -> str:
    token = token.lower()
    if token == "user":
        return "user"
    if token == "charifnotgroup":
        return "charifnotgroup"
    return "char"


def render_story_string(
    template: str,
    params: Mapping[str, str],
    context: MacroContext | None = None,
) -> str:
    """Render the story-string template.

    ``{{#if key}}...{{/if}}`` blocks are kept only when ``params[key]`` is
    non-blank (innermost blocks first, so nesting works), ``{{key}}``
    placeholders come from *params*, and any remaining macros resolve
    through *context*. The output never starts with blank lines and always
    ends with one newline.
    """

    def _block(match: re.Match[str]) -> str:
        value = params.get(match.group(1), "")
        return match.group(2) if value and str(value).strip() else ""

    output = template or ""
    while True:
        rendered = _IF_BLOCK_PATTERN.sub(_block, output)
        if rendered == output:
            break
        output = rendered

    def _param(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in params:
            return str(params[key] or "")
        return match.group(0)

    output = _MACRO_PATTERN.sub(_param, output)
    if context is not None:
        output = substitute_params(output, context)
    output = output.lstrip("\n")
    if output and not output.endswith("\n"):
        output += "\n"
    return output
