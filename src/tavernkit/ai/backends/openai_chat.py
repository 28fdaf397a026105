"""Adapters for OpenAI-compatible chat and text completion endpoints."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, List, Mapping, MutableMapping, Optional

from ..ai_types import ToolCall
from ..client import AIClient
from .types import (
    BackendFamily,
    BackendRequest,
    BackendResponse,
    ChatCompletionRequest,
    ChatCompletionResponse,
    StreamChunk,
    StreamState,
    TextCompletionRequest,
    TextCompletionResponse,
)

__all__ = ["OpenAIChatAdapter", "TextCompletionAdapter", "merge_tool_call_deltas"]

LOGGER = logging.getLogger(__name__)


def _first_choice(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    choices = payload.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], Mapping):
        return choices[0]
    return {}


def _choice_index(choice: Mapping[str, Any]) -> int:
    index = choice.get("index")
    return index if isinstance(index, int) else 0


def _streaming_reply(data: Mapping[str, Any], state: StreamState, *, collect_extras: bool = True) -> str:
    """Extract the text delta from one chunk, collecting reasoning and images."""

    choice = _first_choice(data)
    delta = choice.get("delta") or {}
    if collect_extras and isinstance(delta, Mapping):
        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
        if isinstance(reasoning, str):
            state.reasoning += reasoning
        for image in delta.get("images") or ():
            if isinstance(image, Mapping) and image.get("type") == "image_url":
                url = (image.get("image_url") or {}).get("url")
                if url:
                    state.image = str(url)
                    break
    message = choice.get("message") or {}
    for candidate in (
        delta.get("content") if isinstance(delta, Mapping) else None,
        message.get("content") if isinstance(message, Mapping) else None,
        choice.get("text"),
    ):
        if isinstance(candidate, str):
            return candidate
    return ""


def merge_tool_call_deltas(accumulator: MutableMapping[int, Dict[str, str]], data: Mapping[str, Any]) -> None:
    """Fold streamed ``tool_calls`` deltas of the main choice into *accumulator*."""

    for choice in data.get("choices") or ():
        if not isinstance(choice, Mapping) or _choice_index(choice) != 0:
            continue
        delta = choice.get("delta")
        if not isinstance(delta, Mapping):
            continue
        deltas = delta.get("tool_calls")
        if not isinstance(deltas, list):
            continue
        for position, item in enumerate(deltas):
            if not isinstance(item, Mapping):
                continue
            index = item.get("index")
            if not isinstance(index, int) or index < 0:
                index = position
            target = accumulator.setdefault(index, {"id": "", "name": "", "arguments": ""})
            if item.get("id"):
                target["id"] = str(item["id"])
            function = item.get("function") or {}
            if function.get("name"):
                target["name"] += str(function["name"])
            if function.get("arguments"):
                target["arguments"] += str(function["arguments"])


def _tool_calls_from_accumulator(accumulator: Mapping[int, Mapping[str, str]]) -> List[ToolCall]:
    return [
        ToolCall(id=value["id"], name=value["name"], arguments=value["arguments"], index=index)
        for index, value in sorted(accumulator.items())
        if value.get("name")
    ]


def _logprobs(data: Mapping[str, Any]) -> Optional[List[Any]]:
    logprobs = _first_choice(data).get("logprobs")
    if not isinstance(logprobs, Mapping):
        return None
    content = logprobs.get("content")
    if isinstance(content, list):
        return list(content)
    tokens = logprobs.get("tokens")
    top = logprobs.get("top_logprobs")
    if isinstance(tokens, list):
        tops = top if isinstance(top, list) else [None] * len(tokens)
        return [{"token": token, "top_logprobs": entry} for token, entry in zip(tokens, tops)]
    return None


class _CompletionAdapterBase:
    """Extraction shared by the chat and text completion shapes."""

    family: BackendFamily

    def __init__(self, client: AIClient) -> None:
        self._client = client

    @property
    def client(self) -> AIClient:
        return self._client

    def extract_message(self, response: BackendResponse) -> str:
        payload = response.payload
        choice = _first_choice(payload)
        message = choice.get("message") or {}
        for candidate in (message.get("content"), choice.get("text"), payload.get("text")):
            if isinstance(candidate, str):
                return candidate
        return ""

    def extract_multi_swipes(self, response: BackendResponse) -> List[str]:
        choices = response.payload.get("choices")
        if not isinstance(choices, list) or len(choices) < 2:
            return []
        swipes: List[str] = []
        for choice in choices[1:]:
            if not isinstance(choice, Mapping):
                continue
            message = choice.get("message") or {}
            text = message.get("content") if isinstance(message, Mapping) else None
            if not isinstance(text, str):
                text = choice.get("text")
            swipes.append(text if isinstance(text, str) else "")
        return swipes

    def extract_reasoning(self, response: BackendResponse) -> str:
        choice = _first_choice(response.payload)
        message = choice.get("message") or {}
        for candidate in (
            message.get("reasoning_content"),
            message.get("reasoning"),
            choice.get("reasoning"),
        ):
            if isinstance(candidate, str) and candidate:
                return candidate
        return ""

    def extract_image(self, response: BackendResponse) -> Optional[str]:
        message = _first_choice(response.payload).get("message") or {}
        for image in message.get("images") or ():
            if isinstance(image, Mapping) and image.get("type") == "image_url":
                url = (image.get("image_url") or {}).get("url")
                if url:
                    return str(url)
        return None

    def extract_tool_calls(self, response: BackendResponse) -> List[ToolCall]:
        message = _first_choice(response.payload).get("message") or {}
        calls = message.get("tool_calls") if isinstance(message, Mapping) else None
        if not isinstance(calls, list):
            return []
        return [
            ToolCall.from_openai(item, index=index)
            for index, item in enumerate(calls)
            if isinstance(item, Mapping)
        ]

    async def _accumulate(self, chunks: AsyncIterator[Dict[str, Any]]) -> AsyncIterator[StreamChunk]:
        text = ""
        swipes: List[str] = []
        state = StreamState()
        tool_calls: Dict[int, Dict[str, str]] = {}
        async for data in chunks:
            choice = _first_choice(data)
            index = _choice_index(choice)
            if index > 0:
                slot = index - 1
                while len(swipes) <= slot:
                    swipes.append("")
                swipes[slot] += _streaming_reply(data, state, collect_extras=False)
            else:
                text += _streaming_reply(data, state)
            merge_tool_call_deltas(tool_calls, data)
            yield StreamChunk(
                text=text,
                swipes=list(swipes),
                logprobs=_logprobs(data),
                tool_calls=_tool_calls_from_accumulator(tool_calls),
                state=StreamState(reasoning=state.reasoning, image=state.image),
            )


class OpenAIChatAdapter(_CompletionAdapterBase):
    """Chat completions (``/chat/completions``) adapter."""

    family = BackendFamily.OPENAI

    @property
    def supports_tools(self) -> bool:
        return True

    async def generate(
        self, request: BackendRequest
    ) -> ChatCompletionResponse | AsyncIterator[StreamChunk]:
        if not isinstance(request, ChatCompletionRequest):
            raise TypeError(f"{type(self).__name__} cannot send {type(request).__name__}")
        params = self._params(request)
        if request.stream:
            return self._accumulate(self._client.stream_chat_completion(request.messages, **params))
        payload = await self._client.create_chat_completion(request.messages, **params)
        return ChatCompletionResponse(payload=payload)

    @staticmethod
    def _params(request: ChatCompletionRequest) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }
        if request.n > 1:
            params["n"] = request.n
        if request.stop:
            params["stop"] = list(request.stop)
        if request.tools:
            params["tools"] = list(request.tools)
            params["tool_choice"] = "auto"
        if request.json_schema:
            params["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "response", "strict": True, "schema": dict(request.json_schema)},
            }
        params.update(request.extra)
        return params


class TextCompletionAdapter(_CompletionAdapterBase):
    """Text completions (``/completions``) adapter for local text backends."""

    family = BackendFamily.TEXT_COMPLETION

    @property
    def supports_tools(self) -> bool:
        return False

    async def generate(
        self, request: BackendRequest
    ) -> TextCompletionResponse | AsyncIterator[StreamChunk]:
        if not isinstance(request, TextCompletionRequest):
            raise TypeError(f"{type(self).__name__} cannot send {type(request).__name__}")
        params: Dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }
        if request.n > 1:
            params["n"] = request.n
        if request.stop:
            params["stop"] = list(request.stop)
        if request.json_schema:
            params["extra_body"] = {"json_schema": dict(request.json_schema)}
        params.update(request.extra)
        if request.stream:
            return self._accumulate(self._client.stream_text_completion(request.prompt, **params))
        payload = await self._client.create_text_completion(request.prompt, **params)
        return TextCompletionResponse(payload=payload)
