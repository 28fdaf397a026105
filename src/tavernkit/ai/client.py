"""Async transport client for OpenAI-compatible chat and text completion endpoints."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import math
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Mapping

import httpx
import tiktoken
from openai import APIConnectionError, APIStatusError, AsyncOpenAI, RateLimitError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .ai_types import TokenCounterProtocol

LOGGER = logging.getLogger(__name__)
_DEFAULT_BYTES_PER_TOKEN = 4


class ApproxByteCounter(TokenCounterProtocol):
    """Deterministic fallback counter that estimates tokens via byte length."""

    def __init__(self, *, model_name: str | None = None, charset: str = "utf-8", bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN) -> None:
        self.model_name = model_name
        self._charset = charset
        self._bytes_per_token = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        data = text.encode(self._charset, errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))


class TiktokenCounter(TokenCounterProtocol):
    """Token counter backed by OpenAI's tiktoken package."""

    def __init__(self, model_name: str, *, encoding_name: str | None = None) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        self.model_name = model_name
        self._encoding = self._load_encoding(model_name, encoding_name)
        self._fallback = ApproxByteCounter(model_name=model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._encoding.encode(text, disallowed_special=()))

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    @staticmethod
    def _load_encoding(model_name: str, encoding_name: str | None) -> tiktoken.Encoding:
        if encoding_name:
            return tiktoken.get_encoding(encoding_name)
        try:
            return tiktoken.encoding_for_model(model_name)
        except KeyError:
            LOGGER.debug("No tiktoken mapping for %s; using o200k_base", model_name)
            return tiktoken.get_encoding("o200k_base")


class TokenCounterRegistry:
    """Registry maintaining tokenizer implementations per model."""

    _shared: TokenCounterRegistry | None = None

    def __init__(self, *, fallback: TokenCounterProtocol | None = None) -> None:
        self._fallback = fallback or ApproxByteCounter()
        self._counters: Dict[str, TokenCounterProtocol] = {}

    @classmethod
    def global_instance(cls) -> "TokenCounterRegistry":
        if cls._shared is None:
            cls._shared = TokenCounterRegistry()
        return cls._shared

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        key = self._normalize_key(model_name)
        if not key:
            raise ValueError("model_name is required for token counter registration")
        self._counters[key] = counter

    def unregister(self, model_name: str) -> None:
        self._counters.pop(self._normalize_key(model_name), None)

    def has(self, model_name: str | None) -> bool:
        key = self._normalize_key(model_name)
        return bool(key and key in self._counters)

    def get(self, model_name: str | None = None) -> TokenCounterProtocol:
        key = self._normalize_key(model_name)
        if key and key in self._counters:
            return self._counters[key]
        return self._fallback

    def count(self, model_name: str | None, text: str) -> int:
        return self.get(model_name).count(text)

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    @staticmethod
    def _normalize_key(model_name: str | None) -> str:
        return (model_name or "").strip().lower()


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the transport client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


class AIClient:
    """Async client exposing raw completion payloads with retry semantics.

    Retries only cover opening a request; once a stream has started, chunks
    are never replayed.
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AsyncOpenAI | None = None,
        token_registry: TokenCounterRegistry | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._models_cache: List[str] | None = None
        self._models_lock = asyncio.Lock()
        self._token_registry = token_registry or TokenCounterRegistry.global_instance()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def create_chat_completion(
        self,
        messages: Iterable[Mapping[str, Any]],
        **params: Any,
    ) -> Dict[str, Any]:
        """Run a batch chat completion and return the response as a dict."""

        payload = self._build_payload({"messages": self._coerce_messages(messages)}, params)
        LOGGER.debug(
            "Starting chat completion via %s with %s message(s)",
            payload["model"],
            len(payload["messages"]),
        )
        response = await self._with_retry(self._client.chat.completions.create, payload)
        return _to_dict(response)

    async def stream_chat_completion(
        self,
        messages: Iterable[Mapping[str, Any]],
        **params: Any,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yield raw chat completion chunks as dicts."""

        payload = self._build_payload({"messages": self._coerce_messages(messages)}, params)
        payload["stream"] = True
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            payload["model"],
            len(payload["messages"]),
        )
        stream = await self._with_retry(self._client.chat.completions.create, payload)
        async for chunk in _iterate_stream(stream):
            yield chunk

    async def create_text_completion(self, prompt: str, **params: Any) -> Dict[str, Any]:
        """Run a batch text completion and return the response as a dict."""

        payload = self._build_payload({"prompt": prompt}, params)
        LOGGER.debug("Starting text completion via %s (%d chars)", payload["model"], len(prompt))
        response = await self._with_retry(self._client.completions.create, payload)
        return _to_dict(response)

    async def stream_text_completion(self, prompt: str, **params: Any) -> AsyncIterator[Dict[str, Any]]:
        """Yield raw text completion chunks as dicts."""

        payload = self._build_payload({"prompt": prompt}, params)
        payload["stream"] = True
        LOGGER.debug("Starting streamed text completion via %s (%d chars)", payload["model"], len(prompt))
        stream = await self._with_retry(self._client.completions.create, payload)
        async for chunk in _iterate_stream(stream):
            yield chunk

    async def list_models(self, *, force_refresh: bool = False) -> List[str]:
        """Return a list of supported model identifiers."""

        if self._models_cache is not None and not force_refresh:
            return list(self._models_cache)

        async with self._models_lock:
            if self._models_cache is not None and not force_refresh:
                return list(self._models_cache)

            response = await self._client.models.list()
            models = [item.id for item in response.data if getattr(item, "id", None)]
            self._models_cache = models
            return list(models)

    def get_token_counter(self, model: str | None = None) -> TokenCounterProtocol:
        """Return the counter for *model*, registering a tiktoken one on first use."""

        model_name = (model or self._settings.model or "").strip()
        if model_name and not self._token_registry.has(model_name):
            self._token_registry.register(model_name, self._build_token_counter(model_name))
        return self._token_registry.get(model_name)

    def count_tokens(self, text: str, *, model: str | None = None, estimate_only: bool = False) -> int:
        if not text:
            return 0
        counter = self.get_token_counter(model)
        if estimate_only:
            return counter.estimate(text)
        return counter.count(text)

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key or "not-needed",
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    def _build_token_counter(self, model_name: str) -> TokenCounterProtocol:
        try:
            return TiktokenCounter(model_name)
        except (ValueError, OSError) as exc:
            LOGGER.warning("tiktoken unavailable for %s (%s); using byte estimates", model_name, exc)
            return ApproxByteCounter(model_name=model_name)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(
                (
                    APIConnectionError,
                    APIStatusError,
                    RateLimitError,
                    httpx.TimeoutException,
                )
            ),
        )

    async def _with_retry(self, call: Callable[..., Awaitable[Any]], payload: Mapping[str, Any]) -> Any:
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)
        async for attempt in self._retrying():
            with attempt:
                return await call(**payload)
        raise RuntimeError("retry loop exited without a result")  # pragma: no cover

    def _build_payload(self, base: Mapping[str, Any], params: Mapping[str, Any]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"model": self._settings.model}
        payload.update(base)
        for key, value in params.items():
            if value is None:
                continue
            payload[key] = value
        return payload

    @staticmethod
    def _coerce_messages(messages: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        normalized = [dict(message) for message in messages]
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        return normalized

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result


async def _iterate_stream(stream: Any) -> AsyncIterator[Dict[str, Any]]:
    try:
        async for chunk in stream:
            yield _to_dict(chunk)
    finally:
        close = getattr(stream, "close", None)
        if close is not None:
            result = close()
            if inspect.isawaitable(result):
                await result


def _to_dict(payload: Any) -> Dict[str, Any]:
    if isinstance(payload, Mapping):
        return dict(payload)
    dump = getattr(payload, "model_dump", None)
    if callable(dump):
        return dump()
    raise TypeError(f"Unsupported completion payload type: {type(payload).__name__}")


__all__ = [
    "AIClient",
    "ClientSettings",
    "ApproxByteCounter",
    "TiktokenCounter",
    "TokenCounterRegistry",
]
