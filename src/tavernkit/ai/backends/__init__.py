"""Backend adapters and the request/response union they speak."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..client import AIClient, ClientSettings
from .novel import NovelAdapter
from .openai_chat import OpenAIChatAdapter, TextCompletionAdapter
from .types import (
    BackendAdapter,
    BackendFamily,
    BackendRequest,
    BackendResponse,
    ChatCompletionRequest,
    ChatCompletionResponse,
    StreamChunk,
    StreamState,
    TextCompletionRequest,
    TextCompletionResponse,
    is_batch_response,
)

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ...services.settings import BackendSettings

__all__ = [
    "BackendAdapter",
    "BackendFamily",
    "BackendRequest",
    "BackendResponse",
    "ChatCompletionRequest",
    "ChatCompletionResponse",
    "TextCompletionRequest",
    "TextCompletionResponse",
    "StreamChunk",
    "StreamState",
    "OpenAIChatAdapter",
    "TextCompletionAdapter",
    "NovelAdapter",
    "create_adapter",
    "is_batch_response",
]


def create_adapter(settings: "BackendSettings", *, client: AIClient | None = None) -> BackendAdapter:
    """Build the single active adapter for the configured backend family."""

    family = BackendFamily(settings.family)
    if family is BackendFamily.NOVEL:
        return NovelAdapter(
            api_key=settings.api_key,
            base_url=settings.base_url or None,
            request_timeout=settings.request_timeout,
            max_retries=settings.max_retries,
        )
    client = client or AIClient(
        ClientSettings(
            base_url=settings.base_url,
            api_key=settings.api_key,
            model=settings.model,
            request_timeout=settings.request_timeout,
            max_retries=settings.max_retries,
        )
    )
    if family is BackendFamily.OPENAI:
        return OpenAIChatAdapter(client)
    return TextCompletionAdapter(client)
