"""Backend request/response union and the adapter contract.

Requests and responses are closed tagged unions keyed by
:class:`BackendFamily`; adapters map between these types and the wire format
of their backend.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Protocol, Union, runtime_checkable

from ..ai_types import ToolCall

__all__ = [
    "BackendFamily",
    "ChatCompletionRequest",
    "TextCompletionRequest",
    "BackendRequest",
    "ChatCompletionResponse",
    "TextCompletionResponse",
    "BackendResponse",
    "StreamState",
    "StreamChunk",
    "BackendAdapter",
    "is_batch_response",
]


class BackendFamily(str, Enum):
    """Supported backend families; exactly one adapter is active at a time."""

    OPENAI = "openai"
    TEXT_COMPLETION = "textgen"
    NOVEL = "novel"

    @property
    def uses_chat_messages(self) -> bool:
        return self is BackendFamily.OPENAI


@dataclass(slots=True)
class ChatCompletionRequest:
    """Role-tagged message request for chat completion backends."""

    messages: List[Dict[str, Any]]
    model: str
    max_tokens: int
    stream: bool = True
    temperature: Optional[float] = None
    n: int = 1
    stop: List[str] = field(default_factory=list)
    tools: Optional[List[Dict[str, Any]]] = None
    json_schema: Optional[Mapping[str, Any]] = None
    extra: Dict[str, Any] = field(default_factory=dict)
    family: BackendFamily = BackendFamily.OPENAI


@dataclass(slots=True)
class TextCompletionRequest:
    """Flat prompt request for text completion backends."""

    prompt: str
    model: str
    max_tokens: int
    stream: bool = True
    temperature: Optional[float] = None
    n: int = 1
    stop: List[str] = field(default_factory=list)
    json_schema: Optional[Mapping[str, Any]] = None
    extra: Dict[str, Any] = field(default_factory=dict)
    family: BackendFamily = BackendFamily.TEXT_COMPLETION


BackendRequest = Union[ChatCompletionRequest, TextCompletionRequest]


@dataclass(slots=True)
class ChatCompletionResponse:
    payload: Dict[str, Any]
    family: BackendFamily = BackendFamily.OPENAI


@dataclass(slots=True)
class TextCompletionResponse:
    payload: Dict[str, Any]
    family: BackendFamily = BackendFamily.TEXT_COMPLETION


BackendResponse = Union[ChatCompletionResponse, TextCompletionResponse]


def is_batch_response(value: Any) -> bool:
    return isinstance(value, (ChatCompletionResponse, TextCompletionResponse))


@dataclass(slots=True)
class StreamState:
    """Side-channel data accumulated while streaming."""

    reasoning: str = ""
    image: str = ""


@dataclass(slots=True)
class StreamChunk:
    """Cumulative view of a stream after one more delta.

    ``text`` is the full main completion so far; ``swipes`` holds the
    cumulative text of extra choices (choice index ``i`` maps to
    ``swipes[i - 1]``).
    """

    text: str
    swipes: List[str] = field(default_factory=list)
    logprobs: Optional[List[Any]] = None
    tool_calls: List[ToolCall] = field(default_factory=list)
    state: StreamState = field(default_factory=StreamState)


@runtime_checkable
class BackendAdapter(Protocol):
    """Translates requests for one backend family."""

    family: BackendFamily

    @property
    def supports_tools(self) -> bool:
        ...

    async def generate(self, request: BackendRequest) -> BackendResponse | AsyncIterator[StreamChunk]:
        """Return a batch response, or an async iterator when ``request.stream``."""
        ...

    def extract_message(self, response: BackendResponse) -> str:
        ...

    def extract_multi_swipes(self, response: BackendResponse) -> List[str]:
        ...

    def extract_reasoning(self, response: BackendResponse) -> str:
        ...

    def extract_image(self, response: BackendResponse) -> Optional[str]:
        ...

    def extract_tool_calls(self, response: BackendResponse) -> List[ToolCall]:
        ...
