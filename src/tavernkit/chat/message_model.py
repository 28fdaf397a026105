"""Chat message and swipe data models."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Mapping, Optional

ChatRole = Literal["user", "assistant", "system", "tool"]

PLACEHOLDER_TEXT = "..."
NARRATOR_TYPE = "narrator"


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


def format_send_date(moment: datetime | None = None) -> str:
    """Render a timestamp the way chat files store ``send_date``."""

    return (moment or _utcnow()).isoformat()


@dataclass(slots=True)
class SwipeInfo:
    """Per-candidate metadata stored in parallel with ``ChatMessage.swipes``."""

    send_date: str = ""
    gen_started: str | None = None
    gen_finished: str | None = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def clone(self) -> "SwipeInfo":
        return SwipeInfo(
            send_date=self.send_date,
            gen_started=self.gen_started,
            gen_finished=self.gen_finished,
            extra=copy.deepcopy(self.extra),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "send_date": self.send_date,
            "gen_started": self.gen_started,
            "gen_finished": self.gen_finished,
            "extra": copy.deepcopy(self.extra),
        }

    @classmethod
    def from_value(cls, value: Any) -> "SwipeInfo":
        if isinstance(value, SwipeInfo):
            return value
        if not isinstance(value, Mapping):
            return cls()
        extra = value.get("extra")
        return cls(
            send_date=str(value.get("send_date") or ""),
            gen_started=value.get("gen_started"),
            gen_finished=value.get("gen_finished"),
            extra=dict(extra) if isinstance(extra, Mapping) else {},
        )


@dataclass(slots=True)
class ChatMessage:
    """Represents a single turn inside a chat session.

    ``swipes``/``swipe_id``/``swipe_info`` stay ``None`` until the message is
    initialized for alternatives (see :mod:`tavernkit.chat.swipes`).
    """

    name: str
    mes: str = ""
    is_user: bool = False
    is_system: bool = False
    send_date: str = field(default_factory=format_send_date)
    gen_started: str | None = None
    gen_finished: str | None = None
    swipes: Optional[List[str]] = None
    swipe_id: Optional[int] = None
    swipe_info: Optional[List[SwipeInfo]] = None
    force_avatar: str | None = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def role(self) -> ChatRole:
        if self.is_user:
            return "user"
        if self.is_system and self.extra.get("type") == NARRATOR_TYPE:
            return "system"
        return "assistant"

    @property
    def is_narrator(self) -> bool:
        return self.extra.get("type") == NARRATOR_TYPE

    @property
    def is_hidden(self) -> bool:
        """Hidden messages stay in the chat but never reach the prompt."""

        return bool(self.extra.get("ignore"))

    @property
    def is_placeholder(self) -> bool:
        return self.mes in ("", PLACEHOLDER_TEXT)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the message using chat-file keys."""

        payload: Dict[str, Any] = {
            "name": self.name,
            "is_user": self.is_user,
            "is_system": self.is_system,
            "send_date": self.send_date,
            "mes": self.mes,
            "extra": copy.deepcopy(self.extra),
        }
        if self.gen_started is not None:
            payload["gen_started"] = self.gen_started
        if self.gen_finished is not None:
            payload["gen_finished"] = self.gen_finished
        if self.force_avatar:
            payload["force_avatar"] = self.force_avatar
        if self.swipes is not None:
            payload["swipes"] = list(self.swipes)
            payload["swipe_id"] = self.swipe_id
            payload["swipe_info"] = [
                info.to_dict() if isinstance(info, SwipeInfo) else info
                for info in (self.swipe_info or [])
            ]
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ChatMessage":
        """Build a message from a chat-file line, tolerating missing keys.

        Malformed swipe data is kept as-is so the swipe helpers can detect it
        and refuse to operate instead of crashing the load.
        """

        extra = payload.get("extra")
        swipes = payload.get("swipes")
        swipe_info = payload.get("swipe_info")
        if isinstance(swipe_info, list):
            swipe_info = [SwipeInfo.from_value(item) for item in swipe_info]
        return cls(
            name=str(payload.get("name") or ""),
            mes=str(payload.get("mes") or ""),
            is_user=bool(payload.get("is_user", False)),
            is_system=bool(payload.get("is_system", False)),
            send_date=str(payload.get("send_date") or format_send_date()),
            gen_started=payload.get("gen_started"),
            gen_finished=payload.get("gen_finished"),
            swipes=list(swipes) if isinstance(swipes, list) else swipes,
            swipe_id=payload.get("swipe_id"),
            swipe_info=swipe_info,
            force_avatar=payload.get("force_avatar"),
            extra=dict(extra) if isinstance(extra, Mapping) else {},
        )


__all__ = [
    "ChatRole",
    "ChatMessage",
    "SwipeInfo",
    "PLACEHOLDER_TEXT",
    "NARRATOR_TYPE",
    "format_send_date",
]
