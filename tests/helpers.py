"""Shared test helpers and stub classes.

This module contains reusable test stubs that are used across multiple test files.
Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, AsyncIterator, Iterable, List, Optional, Sequence

from tavernkit.ai.ai_types import ToolCall
from tavernkit.ai.backends.types import (
    BackendFamily,
    BackendRequest,
    ChatCompletionResponse,
    StreamChunk,
    TextCompletionResponse,
)
from tavernkit.chat.message_model import ChatMessage
from tavernkit.chat.session import CharacterCard, Persona, Session


class LengthCounter:
    """Token counter where every character costs one token."""

    model_name = "test-model"

    def count(self, text: str) -> int:
        return len(text or "")

    def estimate(self, text: str) -> int:
        return len(text or "")


class FakeReply:
    """One scripted backend reply."""

    def __init__(
        self,
        text: str = "",
        *,
        swipes: Sequence[str] = (),
        tool_calls: Sequence[ToolCall] = (),
        reasoning: str = "",
        chunks: Optional[Sequence[str]] = None,
        error: Exception | None = None,
    ) -> None:
        self.text = text
        self.swipes = list(swipes)
        self.tool_calls = list(tool_calls)
        self.reasoning = reasoning
        self.chunks = list(chunks) if chunks is not None else None
        self.error = error


class FakeAdapter:
    """Backend adapter stub that replays :class:`FakeReply` objects in order.

    The last reply is repeated once the script runs out. Batch replies are
    wrapped in a response payload; streamed replies yield cumulative chunks.

    Example:
        adapter = FakeAdapter([FakeReply("Hello")])
        pipeline = GenerationPipeline(settings, adapter)
    """

    def __init__(
        self,
        replies: Iterable[FakeReply],
        *,
        family: BackendFamily = BackendFamily.OPENAI,
        supports_tools: bool = True,
    ) -> None:
        self.family = family
        self._supports_tools = supports_tools
        self._replies: List[FakeReply] = list(replies)
        self.requests: List[BackendRequest] = []

    @property
    def supports_tools(self) -> bool:
        return self._supports_tools

    def _next(self) -> FakeReply:
        if len(self._replies) > 1:
            return self._replies.pop(0)
        return self._replies[0]

    async def generate(self, request: BackendRequest) -> Any:
        self.requests.append(request)
        reply = self._next()
        if reply.error is not None:
            raise reply.error
        if request.stream:
            return self._stream(reply)
        payload = {
            "text": reply.text,
            "swipes": reply.swipes,
            "tool_calls": reply.tool_calls,
            "reasoning": reply.reasoning,
        }
        if self.family is BackendFamily.OPENAI:
            return ChatCompletionResponse(payload=payload)
        return TextCompletionResponse(payload=payload, family=self.family)

    async def _stream(self, reply: FakeReply) -> AsyncIterator[StreamChunk]:
        pieces = reply.chunks if reply.chunks is not None else [reply.text]
        for index, piece in enumerate(pieces):
            last = index == len(pieces) - 1
            yield StreamChunk(text=piece, tool_calls=list(reply.tool_calls) if last else [])

    def extract_message(self, response: Any) -> str:
        return response.payload["text"]

    def extract_multi_swipes(self, response: Any) -> List[str]:
        return list(response.payload["swipes"])

    def extract_reasoning(self, response: Any) -> str:
        return response.payload["reasoning"]

    def extract_image(self, response: Any) -> Optional[str]:
        return None

    def extract_tool_calls(self, response: Any) -> List[ToolCall]:
        return list(response.payload["tool_calls"])


class RecordingPersistence:
    """Chat persistence stub that records every save."""

    def __init__(self, result: bool = True, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.saves: List[tuple[list, dict]] = []

    async def save(self, messages, header) -> bool:
        self.saves.append((list(messages), dict(header)))
        if self.error is not None:
            raise self.error
        return self.result


class FakeCompletions:
    """Stand-in for ``AsyncOpenAI().chat.completions`` / ``.completions``."""

    def __init__(self, responses: Sequence[Any]) -> None:
        self._responses = list(responses)
        self.calls: List[dict] = []

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if kwargs.get("stream"):
            return AsyncChunkStream(response)
        return response


class AsyncChunkStream:
    """Async iterator over pre-built stream chunks, with a ``close`` hook."""

    def __init__(self, chunks: Sequence[Any]) -> None:
        self._chunks = list(chunks)
        self.closed = False

    def __aiter__(self) -> "AsyncChunkStream":
        return self

    async def __anext__(self) -> Any:
        if not self._chunks:
            raise StopAsyncIteration
        return self._chunks.pop(0)

    async def close(self) -> None:
        self.closed = True


def make_openai_client(
    chat: Sequence[Any] = (),
    text: Sequence[Any] = (),
    models: Sequence[str] = (),
) -> SimpleNamespace:
    """Build a fake ``AsyncOpenAI`` exposing only what :class:`AIClient` calls."""

    list_calls: List[int] = []

    async def list_models() -> SimpleNamespace:
        list_calls.append(1)
        return SimpleNamespace(data=[SimpleNamespace(id=model) for model in models])

    return SimpleNamespace(
        chat=SimpleNamespace(completions=FakeCompletions(chat)),
        completions=FakeCompletions(text),
        models=SimpleNamespace(list=list_models, calls=list_calls),
    )


def make_session(
    *,
    messages: Sequence[ChatMessage] = (),
    **card_fields: Any,
) -> Session:
    """Session between persona ``Sam`` and character ``Aria``."""

    fields = {"name": "Aria", "description": "A ranger."}
    fields.update(card_fields)
    return Session(
        character=CharacterCard(**fields),
        persona=Persona(name="Sam"),
        messages=list(messages),
    )


def user(text: str, name: str = "Sam") -> ChatMessage:
    return ChatMessage(name=name, mes=text, is_user=True)


def reply(text: str, name: str = "Aria") -> ChatMessage:
    return ChatMessage(name=name, mes=text)
