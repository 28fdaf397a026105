"""Linearizes a chat session into a prompt for one backend family.

Assembly walks the session once and emits :class:`ContextPart` units in
prompt order: story string, example blocks, the chat separator, history
(with extension prompts spliced in at their depths), post-history
instructions, control prompts and the generation prefix. The result is
trimmed by :class:`~tavernkit.ai.orchestration.budget_manager.TokenBudgetManager`
and then rendered as flat text or as chat messages.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Protocol, Sequence

from ...chat.message_model import ChatMessage
from ...chat.session import PersonaPosition, Session
from ...chat.swipes import build_greeting
from ...services.settings import Settings
from ..ai_types import GenerationType
from ..backends.types import BackendFamily
from .injection import ExtensionPromptPosition, ExtensionPromptRole
from .instruct import InstructFormatter, OutputSequence
from .macros import MacroContext, render_story_string, substitute_params
from .reasoning import format_reasoning_for_prompt
from .types import AssembledContext, ContextPart, PartKind, PromptMessage

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from .generation import GenerationRequest

__all__ = [
    "WorldInfoEntry",
    "WorldInfoBundle",
    "WorldInfoProvider",
    "NullWorldInfoProvider",
    "RegexHook",
    "ContextAssembler",
    "parse_example_blocks",
    "build_stop_strings",
]

LOGGER = logging.getLogger(__name__)

RegexHook = Callable[[str, ChatMessage, int], str]

_START_PATTERN = re.compile(r"<START>", re.IGNORECASE)
_NAME_FIELD_PATTERN = re.compile(r"[^a-zA-Z0-9_-]")
_PERSONA_KEY = "__persona_at_depth"
_DEPTH_PROMPT_KEY = "__character_depth_prompt"
_WORLD_INFO_KEY = "__world_info_depth_{index}"


# ----------------------------------------------------------------------
# World info collaborator
# ----------------------------------------------------------------------
@dataclass(slots=True)
class WorldInfoEntry:
    text: str
    depth: int = 4
    role: str = "system"


@dataclass(slots=True)
class WorldInfoBundle:
    before: str = ""
    after: str = ""
    depth_entries: List[WorldInfoEntry] = field(default_factory=list)


class WorldInfoProvider(Protocol):
    async def get_world_info(
        self,
        chat_lines: Sequence[str],
        scan_text: str,
        max_context: int,
    ) -> WorldInfoBundle:
        ...


class NullWorldInfoProvider:
    """Provider used when no lorebook is attached."""

    async def get_world_info(
        self,
        chat_lines: Sequence[str],
        scan_text: str,
        max_context: int,
    ) -> WorldInfoBundle:
        return WorldInfoBundle()


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _role_from_name(role: str) -> ExtensionPromptRole:
    try:
        return ExtensionPromptRole[str(role).upper()]
    except KeyError:
        return ExtensionPromptRole.SYSTEM


def _make_sentinel(*texts: str) -> str:
    while True:
        sentinel = f"\x00{uuid.uuid4().hex}\x00"
        if not any(sentinel in text for text in texts):
            return sentinel


def parse_example_blocks(
    examples: str,
    context: MacroContext,
) -> List[List[tuple[str, str, bool]]]:
    """Split ``<START>``-delimited examples into ``(name, text, is_user)`` turns."""

    text = substitute_params(examples, context)
    if not text.strip():
        return []
    user_marker = f"{context.user}:"
    char_marker = f"{context.char}:"
    blocks: List[List[tuple[str, str, bool]]] = []
    for raw_block in _START_PATTERN.split(text):
        if not raw_block.strip():
            continue
        turns: List[tuple[str, str, bool]] = []
        for line in raw_block.strip().splitlines():
            if line.startswith(user_marker):
                turns.append((context.user, line[len(user_marker):].strip(), True))
            elif line.startswith(char_marker):
                turns.append((context.char, line[len(char_marker):].strip(), False))
            elif turns:
                name, body, is_user = turns[-1]
                turns[-1] = (name, f"{body}\n{line}", is_user)
            elif line.strip():
                turns.append((context.char, line.strip(), False))
        if turns:
            blocks.append(turns)
    return blocks


def _raw_example_blocks(examples: str, context: MacroContext) -> List[str]:
    text = substitute_params(examples, context)
    return [block.strip() for block in _START_PATTERN.split(text) if block.strip()]


def build_stop_strings(
    settings: Settings,
    context: MacroContext,
    *,
    session: Session,
    generation_type: GenerationType,
    speaker: str,
    instruct: InstructFormatter,
    include_instruct: bool = True,
) -> List[str]:
    """Stop strings for a run, de-duplicated in insertion order."""

    options = settings.context
    result: List[str] = []
    if options.single_line:
        result.append("\n")
    if options.names_as_stop_strings:
        result.append(f"\n{context.user}:")
        last = session.last_message()
        continuing_after_user = generation_type is GenerationType.CONTINUE and last is not None and last.is_user
        if generation_type is GenerationType.IMPERSONATE or continuing_after_user:
            result.append(f"\n{speaker}:")
        if session.is_group:
            for member in session.group_members:
                if member.enabled and member.name != speaker:
                    result.append(f"\n{member.name}:")
    if include_instruct:
        result.extend(instruct.stopping_sequences())
    for custom in options.custom_stop_strings:
        value = substitute_params(custom, context)
        if value:
            result.append(value)
    deduplicated: List[str] = []
    for item in result:
        if item and item not in deduplicated:
            deduplicated.append(item)
    return deduplicated


# ----------------------------------------------------------------------
# Assembler
# ----------------------------------------------------------------------
class ContextAssembler:
    """Builds :class:`AssembledContext` instances for one backend family."""

    def __init__(
        self,
        settings: Settings,
        *,
        family: BackendFamily | str | None = None,
        world_info: WorldInfoProvider | None = None,
        regex_hook: RegexHook | None = None,
    ) -> None:
        self._settings = settings
        self._family = BackendFamily(family or settings.backend.family)
        self._world_info = world_info or NullWorldInfoProvider()
        self._regex_hook = regex_hook

    @property
    def family(self) -> BackendFamily:
        return self._family

    @property
    def chat_mode(self) -> bool:
        return self._family.uses_chat_messages

    # ------------------------------------------------------------------
    # First message
    # ------------------------------------------------------------------
    def prepare_first_message(self, session: Session) -> None:
        """Create the greeting for an empty chat or resolve its macros in place."""

        context = MacroContext.from_session(session)
        character = session.character
        if not session.messages:
            if not character.first_mes:
                return
            greeting = build_greeting(
                character.name,
                character.first_mes,
                character.alternate_greetings,
                substitute=lambda text: substitute_params(text, context),
            )
            session.messages.append(greeting)
            LOGGER.debug("Created greeting with %d swipe(s)", len(greeting.swipes or ()))
            return
        if session.metadata.tainted or len(session.messages) != 1:
            return
        message = session.messages[0]
        if message.is_user:
            return
        message.mes = substitute_params(message.mes, context)
        if isinstance(message.swipes, list):
            message.swipes = [
                substitute_params(item, context) if isinstance(item, str) else item for item in message.swipes
            ]

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------
    async def assemble(self, session: Session, request: "GenerationRequest") -> AssembledContext:
        self.prepare_first_message(session)
        kind = GenerationType(request.type)
        settings = self._settings
        speaker = request.force_name2 or request.force_chid or session.char_name
        context = MacroContext.from_session(session, char_override=speaker)
        instruct = InstructFormatter(settings.instruct, context)
        use_instruct = instruct.enabled and not self.chat_mode
        is_continue = kind is GenerationType.CONTINUE
        registry = session.injections

        history_messages = self._history_messages(session, kind)
        chat_lines = [f"{message.name}: {message.mes}" for _, message in reversed(history_messages)]
        world_info = await self._world_info.get_world_info(
            chat_lines, registry.scan_text(), settings.backend.max_context
        )
        self._register_depth_prompts(session, world_info)

        assembled = AssembledContext(chat_mode=self.chat_mode)
        assembled.parts.append(
            await self._story_part(session, context, world_info, instruct, use_instruct)
        )
        assembled.parts.extend(self._example_parts(session, context, instruct, use_instruct))
        separator = self._separator_part(session, context)
        if separator is not None:
            assembled.parts.append(separator)

        prefill_message: Optional[ChatMessage] = None
        if is_continue and self.chat_mode and settings.context.continue_prefill and history_messages:
            prefill_message = history_messages.pop()[1]

        history = self._history_parts(history_messages, context, instruct, use_instruct, is_continue)
        await registry.inject(
            history,
            is_continue and prefill_message is None,
            factory=lambda role, text: self._injected_part(role, text, context, instruct, use_instruct),
            context=context,
        )
        assembled.parts.extend(history)

        jailbreak = self._jailbreak_part(session, context, instruct, use_instruct)
        if jailbreak is not None:
            assembled.parts.append(jailbreak)
        assembled.parts.extend(
            self._control_parts(session, request, kind, context, instruct, use_instruct, history_messages, prefill_message)
        )
        prefix = self._prefix_part(request, kind, session, speaker, instruct, use_instruct)
        if prefix is not None:
            assembled.parts.append(prefix)

        assembled.stop_strings = build_stop_strings(
            settings,
            context,
            session=session,
            generation_type=kind,
            speaker=speaker,
            instruct=instruct,
            include_instruct=use_instruct,
        )
        registry.clear_transient()
        LOGGER.debug(
            "Assembled %d part(s) (%d history, %d injected) for %s",
            len(assembled.parts),
            len(assembled.history()),
            len(assembled.injected_indices()),
            kind.value,
        )
        return assembled

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------
    @staticmethod
    def _history_messages(session: Session, kind: GenerationType) -> List[tuple[int, ChatMessage]]:
        messages = list(enumerate(session.messages))
        if kind is GenerationType.SWIPE and messages and not messages[-1][1].is_user:
            messages.pop()
        return [(index, message) for index, message in messages if not message.is_hidden]

    def _register_depth_prompts(self, session: Session, world_info: WorldInfoBundle) -> None:
        registry = session.injections
        persona = session.persona
        if persona.position is PersonaPosition.AT_DEPTH and persona.description:
            registry.set(
                _PERSONA_KEY,
                persona.description,
                ExtensionPromptPosition.IN_CHAT,
                persona.depth,
                role=_role_from_name(persona.role),
                transient=True,
            )
        depth_prompt = session.character.depth_prompt
        if depth_prompt.text:
            registry.set(
                _DEPTH_PROMPT_KEY,
                depth_prompt.text,
                ExtensionPromptPosition.IN_CHAT,
                depth_prompt.depth,
                role=_role_from_name(depth_prompt.role),
                transient=True,
            )
        for index, entry in enumerate(world_info.depth_entries):
            registry.set(
                _WORLD_INFO_KEY.format(index=index),
                entry.text,
                ExtensionPromptPosition.IN_CHAT,
                entry.depth,
                role=_role_from_name(entry.role),
                transient=True,
            )

    async def _story_part(
        self,
        session: Session,
        context: MacroContext,
        world_info: WorldInfoBundle,
        instruct: InstructFormatter,
        use_instruct: bool,
    ) -> ContextPart:
        settings = self._settings
        character = session.character
        persona = session.persona
        params: Dict[str, str] = {
            "system": substitute_params(character.system_prompt, context),
            "description": substitute_params(character.description, context),
            "personality": substitute_params(character.personality, context),
            "scenario": substitute_params(session.metadata.scenario or character.scenario, context),
            "persona": (
                substitute_params(persona.description, context)
                if persona.position is PersonaPosition.IN_PROMPT
                else ""
            ),
            "wiBefore": self._format_world_info(world_info.before),
            "wiAfter": self._format_world_info(world_info.after),
            "char": context.char,
            "user": context.user,
        }
        story = render_story_string(settings.context.story_string, params, context)
        registry = session.injections
        before = await registry.get(ExtensionPromptPosition.BEFORE_PROMPT, context=context)
        after = await registry.get(ExtensionPromptPosition.IN_PROMPT, context=context)
        if before:
            story = f"{before}\n{story}"
        if after:
            story = f"{story}{after}\n"

        if self.chat_mode:
            messages: List[PromptMessage] = []
            main_prompt = substitute_params(settings.context.main_prompt, context)
            if main_prompt:
                messages.append(PromptMessage(role="system", content=main_prompt))
            if story.strip():
                messages.append(PromptMessage(role="system", content=story.strip()))
            return ContextPart(kind=PartKind.STORY, text=story, messages=messages)
        if use_instruct:
            story = instruct.format_story_string(story)
        return ContextPart(kind=PartKind.STORY, text=story)

    def _format_world_info(self, text: str) -> str:
        if not text or not text.strip():
            return ""
        return self._settings.context.wi_format.format(text)

    def _example_parts(
        self,
        session: Session,
        context: MacroContext,
        instruct: InstructFormatter,
        use_instruct: bool,
    ) -> List[ContextPart]:
        options = self._settings.context
        examples = session.character.mes_example
        if not examples.strip():
            return []
        pinned = options.pin_examples
        parts: List[ContextPart] = []
        if self.chat_mode:
            new_example = substitute_params(options.new_example_chat_prompt, context)
            for block in parse_example_blocks(examples, context):
                messages: List[PromptMessage] = []
                if new_example:
                    messages.append(PromptMessage(role="system", content=new_example))
                for _, text, is_user in block:
                    messages.append(
                        PromptMessage(
                            role="system",
                            content=text,
                            name="example_user" if is_user else "example_assistant",
                        )
                    )
                parts.append(ContextPart(kind=PartKind.EXAMPLE, messages=messages, pinned=pinned))
            return parts
        separator = substitute_params(options.example_separator, context)
        if use_instruct:
            for text in instruct.format_examples(parse_example_blocks(examples, context), separator):
                parts.append(ContextPart(kind=PartKind.EXAMPLE, text=text, pinned=pinned))
            return parts
        for block in _raw_example_blocks(examples, context):
            text = f"{separator}\n{block}\n" if separator else f"{block}\n"
            parts.append(ContextPart(kind=PartKind.EXAMPLE, text=text, pinned=pinned))
        return parts

    def _separator_part(self, session: Session, context: MacroContext) -> ContextPart | None:
        options = self._settings.context
        if self.chat_mode:
            template = options.new_group_chat_prompt if session.is_group else options.new_chat_prompt
            prompt = substitute_params(template, context)
            if not prompt:
                return None
            return ContextPart(kind=PartKind.SEPARATOR, messages=[PromptMessage(role="system", content=prompt)])
        marker = substitute_params(options.chat_start, context)
        if not marker:
            return None
        return ContextPart(kind=PartKind.SEPARATOR, text=f"{marker}\n")

    def _history_parts(
        self,
        history: Sequence[tuple[int, ChatMessage]],
        context: MacroContext,
        instruct: InstructFormatter,
        use_instruct: bool,
        is_continue: bool,
    ) -> List[ContextPart]:
        parts: List[ContextPart] = []
        total = len(history)
        for position, (index, message) in enumerate(history):
            depth = total - position - 1
            text = substitute_params(message.mes, context)
            if self._regex_hook is not None:
                text = self._regex_hook(text, message, depth)
            if not message.is_user:
                reasoning = format_reasoning_for_prompt(
                    str(message.extra.get("reasoning") or ""), self._settings.reasoning
                )
                text = f"{reasoning}{text}" if reasoning else text
            is_last = position == total - 1
            if self.chat_mode:
                part = ContextPart(
                    kind=PartKind.HISTORY,
                    messages=self._chat_messages(message, text, context),
                    message_index=index,
                )
            else:
                part = ContextPart(
                    kind=PartKind.HISTORY,
                    text=self._text_line(
                        message,
                        text,
                        instruct,
                        use_instruct,
                        continuing=is_continue and is_last,
                        last=is_last,
                    ),
                    message_index=index,
                )
            parts.append(part)
        return parts

    def _text_line(
        self,
        message: ChatMessage,
        text: str,
        instruct: InstructFormatter,
        use_instruct: bool,
        *,
        continuing: bool,
        last: bool,
    ) -> str:
        if message.extra.get("tool_invocations"):
            return ""

        def _format(body: str) -> str:
            if use_instruct:
                return instruct.format_chat(
                    message.name,
                    body,
                    is_user=message.is_user,
                    is_narrator=message.is_narrator,
                    force_avatar=bool(message.force_avatar),
                    output=OutputSequence.LAST if last and not message.is_user else OutputSequence.DEFAULT,
                )
            if message.is_narrator:
                return f"{body}\n"
            return f"{message.name}: {body}\n"

        if not continuing:
            return _format(text)
        sentinel = _make_sentinel(text, message.name)
        formatted = _format(sentinel)
        cut = formatted.find(sentinel)
        if cut < 0:
            return formatted
        return formatted[:cut] + text

    def _chat_messages(self, message: ChatMessage, text: str, context: MacroContext) -> List[PromptMessage]:
        invocations = message.extra.get("tool_invocations")
        if isinstance(invocations, list) and invocations:
            return self._tool_messages(invocations)
        if message.is_narrator:
            return [PromptMessage(role="system", content=text)]
        role = "user" if message.is_user else "assistant"
        behavior = self._settings.context.names_behavior
        name: Optional[str] = None
        content = text
        if behavior == "content" or (
            behavior == "default" and (context.is_group or bool(message.force_avatar))
        ):
            if not content.startswith(f"{message.name}: "):
                content = f"{message.name}: {content}"
        elif behavior == "completion":
            name = _NAME_FIELD_PATTERN.sub("_", message.name) or None
        return [PromptMessage(role=role, content=content, name=name)]

    @staticmethod
    def _tool_messages(invocations: Sequence[Any]) -> List[PromptMessage]:
        calls: List[Dict[str, Any]] = []
        results: List[PromptMessage] = []
        for invocation in invocations:
            if not isinstance(invocation, dict):
                continue
            call_id = str(invocation.get("id") or "")
            calls.append(
                {
                    "id": call_id,
                    "type": "function",
                    "function": {
                        "name": str(invocation.get("name") or ""),
                        "arguments": str(invocation.get("parameters") or "{}"),
                    },
                }
            )
            results.append(
                PromptMessage(role="tool", content=str(invocation.get("result") or ""), tool_call_id=call_id)
            )
        if not calls:
            return []
        return [PromptMessage(role="assistant", content="", tool_calls=calls), *results]

    def _injected_part(
        self,
        role: ExtensionPromptRole,
        text: str,
        context: MacroContext,
        instruct: InstructFormatter,
        use_instruct: bool,
    ) -> ContextPart:
        if self.chat_mode:
            return ContextPart(
                kind=PartKind.HISTORY,
                messages=[PromptMessage(role=role.chat_role, content=text)],
                injected=True,
            )
        is_narrator = role is ExtensionPromptRole.SYSTEM
        is_user = role is ExtensionPromptRole.USER
        name = context.user if is_user else ("" if is_narrator else context.char)
        if use_instruct:
            line = instruct.format_chat(name, text, is_user=is_user, is_narrator=is_narrator)
        elif is_narrator:
            line = f"{text}\n"
        else:
            line = f"{name}: {text}\n"
        return ContextPart(kind=PartKind.HISTORY, text=line, injected=True)

    def _jailbreak_part(
        self,
        session: Session,
        context: MacroContext,
        instruct: InstructFormatter,
        use_instruct: bool,
    ) -> ContextPart | None:
        jailbreak = substitute_params(session.character.post_history_instructions, context)
        if not jailbreak.strip():
            return None
        if self.chat_mode:
            return ContextPart(kind=PartKind.JAILBREAK, messages=[PromptMessage(role="system", content=jailbreak)])
        text = instruct.format_system(jailbreak) if use_instruct else f"{jailbreak}\n"
        return ContextPart(kind=PartKind.JAILBREAK, text=text)

    def _control_parts(
        self,
        session: Session,
        request: "GenerationRequest",
        kind: GenerationType,
        context: MacroContext,
        instruct: InstructFormatter,
        use_instruct: bool,
        history: Sequence[tuple[int, ChatMessage]],
        prefill_message: Optional[ChatMessage],
    ) -> List[ContextPart]:
        options = self._settings.context
        parts: List[ContextPart] = []
        quiet_prompt = substitute_params(request.quiet_prompt, context) if request.quiet_prompt else ""
        if not self.chat_mode:
            if kind is GenerationType.QUIET and quiet_prompt:
                text = instruct.format_system(quiet_prompt) if use_instruct else f"{quiet_prompt}\n"
                parts.append(ContextPart(kind=PartKind.CONTROL, text=text))
            return parts

        def _system(content: str) -> None:
            if content:
                parts.append(ContextPart(kind=PartKind.CONTROL, messages=[PromptMessage(role="system", content=content)]))

        last = history[-1][1] if history else None
        if (
            kind in (GenerationType.NORMAL, GenerationType.REGENERATE, GenerationType.SWIPE)
            and options.send_if_empty
            and last is not None
            and not last.is_user
        ):
            parts.append(
                ContextPart(
                    kind=PartKind.CONTROL,
                    messages=[PromptMessage(role="user", content=substitute_params(options.send_if_empty, context))],
                )
            )
        if kind is GenerationType.CONTINUE:
            if prefill_message is not None:
                parts.append(
                    ContextPart(
                        kind=PartKind.CONTROL,
                        messages=[PromptMessage(role="assistant", content=substitute_params(prefill_message.mes, context))],
                    )
                )
            else:
                last_text = last.mes if last is not None else ""
                _system(substitute_params(options.continue_nudge_prompt, context, extra={"lastChatMessage": last_text}))
        elif kind is GenerationType.IMPERSONATE:
            _system(substitute_params(options.impersonation_prompt, context))
        elif kind is GenerationType.QUIET:
            _system(quiet_prompt)
        return parts

    def _prefix_part(
        self,
        request: "GenerationRequest",
        kind: GenerationType,
        session: Session,
        speaker: str,
        instruct: InstructFormatter,
        use_instruct: bool,
    ) -> ContextPart | None:
        if self.chat_mode or kind is GenerationType.CONTINUE:
            return None
        is_impersonate = kind is GenerationType.IMPERSONATE
        name = session.user_name if is_impersonate else speaker
        if use_instruct:
            text = instruct.format_prompt(
                name,
                is_impersonate=is_impersonate,
                is_quiet=kind is GenerationType.QUIET,
                quiet_to_loud=request.quiet_to_loud,
            )
        else:
            text = f"{name}:"
        return ContextPart(kind=PartKind.PREFIX, text=text)

    # ------------------------------------------------------------------
    # Post-trim bookkeeping
    # ------------------------------------------------------------------
    @staticmethod
    def record_context_window(session: Session, context: AssembledContext) -> None:
        """Store the oldest message that survived trimming in chat metadata."""

        session.metadata.last_in_context_message_id = context.first_message_index()
