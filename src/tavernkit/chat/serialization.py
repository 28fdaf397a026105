"""JSONL chat files: a header line followed by one message per line."""

from __future__ import annotations

import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Protocol, Sequence, runtime_checkable

from .message_model import ChatMessage
from .session import ChatMetadata

__all__ = [
    "ChatHeader",
    "ChatFile",
    "ChatPersistence",
    "JsonlChatStore",
    "humanized_datetime",
    "create_chat_header",
    "serialize_to_jsonl",
    "parse_from_jsonl",
]

LOGGER = logging.getLogger(__name__)

_UNSAFE_NAME_RE = re.compile(r"[^\w\- .@]+", re.UNICODE)


def humanized_datetime(moment: datetime | None = None) -> str:
    """Return ``YYYY-MM-DD HH:MM:SS`` in local time, as chat headers store it."""

    return (moment or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")


@dataclass(slots=True)
class ChatHeader:
    user_name: str
    character_name: str
    create_date: str = field(default_factory=humanized_datetime)
    chat_metadata: ChatMetadata = field(default_factory=ChatMetadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_name": self.user_name,
            "character_name": self.character_name,
            "create_date": self.create_date,
            "chat_metadata": self.chat_metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ChatHeader":
        metadata = payload.get("chat_metadata")
        return cls(
            user_name=str(payload.get("user_name") or ""),
            character_name=str(payload.get("character_name") or ""),
            create_date=str(payload.get("create_date") or humanized_datetime()),
            chat_metadata=ChatMetadata.from_dict(metadata if isinstance(metadata, Mapping) else None),
        )


@dataclass(slots=True)
class ChatFile:
    header: ChatHeader
    messages: List[ChatMessage] = field(default_factory=list)


@runtime_checkable
class ChatPersistence(Protocol):
    """Storage collaborator; returns ``False`` instead of raising on failure."""

    async def save(self, messages: Sequence[Mapping[str, Any]], header: Mapping[str, Any]) -> bool:
        ...


def create_chat_header(user_name: str, character_name: str) -> ChatHeader:
    return ChatHeader(
        user_name=user_name,
        character_name=character_name,
        chat_metadata=ChatMetadata(integrity=str(uuid.uuid4())),
    )


def serialize_to_jsonl(chat: ChatFile) -> str:
    lines = [json.dumps(chat.header.to_dict(), ensure_ascii=False)]
    lines.extend(json.dumps(message.to_dict(), ensure_ascii=False) for message in chat.messages)
    return "\n".join(lines)


def parse_from_jsonl(text: str) -> ChatFile | None:
    """Parse a chat file; malformed message lines are skipped.

    Returns ``None`` when the text is empty or the header line is not JSON.
    """

    if not text:
        return None
    lines = [line for line in text.split("\n") if line.strip()]
    if not lines:
        return None
    try:
        header_payload = json.loads(lines[0])
    except json.JSONDecodeError as exc:
        LOGGER.warning("Chat header is not valid JSON: %s", exc)
        return None
    if not isinstance(header_payload, Mapping):
        return None
    messages: List[ChatMessage] = []
    for number, line in enumerate(lines[1:], start=2):
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            LOGGER.debug("Skipping malformed chat line %d", number)
            continue
        if isinstance(payload, Mapping):
            messages.append(ChatMessage.from_dict(payload))
    return ChatFile(header=ChatHeader.from_dict(header_payload), messages=messages)


class JsonlChatStore:
    """Stores chats as ``<directory>/<character>/<chat name>.jsonl``."""

    def __init__(self, directory: Path | str, *, chat_name: str | None = None) -> None:
        self._directory = Path(directory).expanduser()
        self._chat_name = chat_name

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, character_name: str, chat_name: str) -> Path:
        folder = _sanitize(character_name) or "unnamed"
        return self._directory / folder / f"{_sanitize(chat_name) or 'chat'}.jsonl"

    async def save(self, messages: Sequence[Mapping[str, Any]], header: Mapping[str, Any]) -> bool:
        character = str(header.get("character_name") or "")
        chat_name = self._chat_name or f"{character} - {header.get('create_date') or humanized_datetime()}"
        path = self.path_for(character, chat_name)
        lines = [json.dumps(dict(header), ensure_ascii=False)]
        lines.extend(json.dumps(dict(message), ensure_ascii=False) for message in messages)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_text("\n".join(lines), encoding="utf-8")
            tmp_path.replace(path)
        except OSError as exc:
            LOGGER.warning("Failed to save chat %s: %s", path, exc)
            return False
        LOGGER.debug("Saved %d message(s) to %s", len(messages), path)
        return True

    def load(self, character_name: str, chat_name: str) -> ChatFile | None:
        path = self.path_for(character_name, chat_name)
        if not path.exists():
            return None
        return parse_from_jsonl(path.read_text(encoding="utf-8"))


def _sanitize(name: str) -> str:
    return _UNSAFE_NAME_RE.sub("_", name).strip(" .")
