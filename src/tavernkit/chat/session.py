"""Session state shared by every stage of a generation run."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

from .message_model import ChatMessage

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ..ai.orchestration.cancellation import CancellationToken
    from ..ai.orchestration.injection import InjectionRegistry

__all__ = [
    "DepthPrompt",
    "CharacterCard",
    "PersonaPosition",
    "Persona",
    "GroupMember",
    "ChatMetadata",
    "Session",
]


@dataclass(slots=True)
class DepthPrompt:
    """Character note injected into chat history at a fixed depth."""

    text: str = ""
    depth: int = 4
    role: str = "system"


@dataclass(slots=True)
class CharacterCard:
    """Character definition fields consumed by the context assembler."""

    name: str
    description: str = ""
    personality: str = ""
    scenario: str = ""
    first_mes: str = ""
    alternate_greetings: List[str] = field(default_factory=list)
    mes_example: str = ""
    system_prompt: str = ""
    post_history_instructions: str = ""
    depth_prompt: DepthPrompt = field(default_factory=DepthPrompt)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "CharacterCard":
        """Accept both flat cards and V2 cards that nest fields under ``data``."""

        data = payload.get("data")
        if not isinstance(data, Mapping):
            data = payload
        extensions = data.get("extensions")
        depth_payload = extensions.get("depth_prompt") if isinstance(extensions, Mapping) else None
        depth_prompt = DepthPrompt()
        if isinstance(depth_payload, Mapping):
            depth_prompt = DepthPrompt(
                text=str(depth_payload.get("prompt") or ""),
                depth=int(depth_payload.get("depth", 4) or 0),
                role=str(depth_payload.get("role") or "system"),
            )
        greetings = data.get("alternate_greetings") or []
        return cls(
            name=str(data.get("name") or payload.get("name") or ""),
            description=str(data.get("description") or ""),
            personality=str(data.get("personality") or ""),
            scenario=str(data.get("scenario") or ""),
            first_mes=str(data.get("first_mes") or ""),
            alternate_greetings=[str(item) for item in greetings if isinstance(item, str)],
            mes_example=str(data.get("mes_example") or ""),
            system_prompt=str(data.get("system_prompt") or ""),
            post_history_instructions=str(data.get("post_history_instructions") or ""),
            depth_prompt=depth_prompt,
        )


class PersonaPosition(str, Enum):
    IN_PROMPT = "in_prompt"
    AT_DEPTH = "at_depth"
    NONE = "none"


@dataclass(slots=True)
class Persona:
    name: str = "User"
    description: str = ""
    position: PersonaPosition = PersonaPosition.IN_PROMPT
    depth: int = 2
    role: str = "system"


@dataclass(slots=True)
class GroupMember:
    name: str
    enabled: bool = True


@dataclass(slots=True)
class ChatMetadata:
    """Session-scoped key/value bag persisted in the chat header."""

    tainted: bool = False
    integrity: str = field(default_factory=lambda: str(uuid.uuid4()))
    scenario: str = ""
    last_in_context_message_id: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "tainted": self.tainted,
                "integrity": self.integrity,
                "scenario": self.scenario,
                "lastInContextMessageId": self.last_in_context_message_id,
            }
        )
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "ChatMetadata":
        data = dict(payload or {})
        integrity = data.pop("integrity", None) or str(uuid.uuid4())
        last_id = data.pop("lastInContextMessageId", None)
        return cls(
            tainted=bool(data.pop("tainted", False)),
            integrity=str(integrity),
            scenario=str(data.pop("scenario", "") or ""),
            last_in_context_message_id=last_id if isinstance(last_id, int) else None,
            extra=data,
        )


def _new_injection_registry() -> "InjectionRegistry":
    from ..ai.orchestration.injection import InjectionRegistry

    return InjectionRegistry()


@dataclass(slots=True)
class Session:
    """Explicit handle over one chat's mutable state.

    The engine assumes it is the only mutator while ``generating`` is set.
    """

    character: CharacterCard
    persona: Persona = field(default_factory=Persona)
    messages: List[ChatMessage] = field(default_factory=list)
    metadata: ChatMetadata = field(default_factory=ChatMetadata)
    group_members: List[GroupMember] = field(default_factory=list)
    injections: "InjectionRegistry" = field(default_factory=_new_injection_registry)
    input_text: str = ""
    generating: bool = False
    abort: Optional["CancellationToken"] = None

    @property
    def user_name(self) -> str:
        return self.persona.name

    @property
    def char_name(self) -> str:
        return self.character.name

    @property
    def is_group(self) -> bool:
        return bool(self.group_members)

    def last_message(self) -> ChatMessage | None:
        return self.messages[-1] if self.messages else None

    def is_fresh(self) -> bool:
        """True when no user message exists and at most one other message does."""

        if any(message.is_user for message in self.messages):
            return False
        return sum(1 for message in self.messages if not message.is_system) <= 1

    def add_user_message(self, text: str) -> ChatMessage:
        message = ChatMessage(name=self.user_name, mes=text, is_user=True)
        self.messages.append(message)
        return message
