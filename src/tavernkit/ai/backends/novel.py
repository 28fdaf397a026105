"""NovelAI text generation adapter built directly on httpx."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..ai_types import ToolCall
from .types import (
    BackendFamily,
    BackendRequest,
    BackendResponse,
    StreamChunk,
    TextCompletionRequest,
    TextCompletionResponse,
)

__all__ = ["NovelAdapter", "DEFAULT_NOVEL_URL"]

LOGGER = logging.getLogger(__name__)

DEFAULT_NOVEL_URL = "https://api.novelai.net"


class NovelAdapter:
    """Adapter for NovelAI's ``/ai/generate`` and ``/ai/generate-stream``."""

    family = BackendFamily.NOVEL

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        request_timeout: float | None = 90.0,
        max_retries: int = 3,
    ) -> None:
        self._api_key = api_key
        self._base_url = (base_url or DEFAULT_NOVEL_URL).rstrip("/")
        self._http = http_client or httpx.AsyncClient(timeout=request_timeout)
        self._max_retries = max(1, max_retries)

    @property
    def supports_tools(self) -> bool:
        return False

    async def generate(self, request: BackendRequest) -> BackendResponse | AsyncIterator[StreamChunk]:
        if not isinstance(request, TextCompletionRequest):
            raise TypeError(f"{type(self).__name__} cannot send {type(request).__name__}")
        body = self._body(request)
        if request.stream:
            return self._stream(body)
        response = await self._post("/ai/generate", body)
        payload = response.json()
        return TextCompletionResponse(payload=dict(payload), family=BackendFamily.NOVEL)

    def extract_message(self, response: BackendResponse) -> str:
        output = response.payload.get("output")
        return output if isinstance(output, str) else ""

    def extract_multi_swipes(self, response: BackendResponse) -> List[str]:
        return []

    def extract_reasoning(self, response: BackendResponse) -> str:
        return ""

    def extract_image(self, response: BackendResponse) -> Optional[str]:
        return None

    def extract_tool_calls(self, response: BackendResponse) -> List[ToolCall]:
        return []

    async def aclose(self) -> None:
        await self._http.aclose()

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"}

    @staticmethod
    def _body(request: TextCompletionRequest) -> Dict[str, Any]:
        parameters: Dict[str, Any] = {
            "max_length": request.max_tokens,
            "use_string": True,
            "generate_until_sentence": True,
        }
        if request.temperature is not None:
            parameters["temperature"] = request.temperature
        parameters.update(request.extra)
        return {"input": request.prompt, "model": request.model, "parameters": parameters}

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential(multiplier=0.5, max=6.0),
            retry=retry_if_exception_type((httpx.TransportError, httpx.TimeoutException)),
        )

    async def _post(self, path: str, body: Mapping[str, Any]) -> httpx.Response:
        async for attempt in self._retrying():
            with attempt:
                response = await self._http.post(self._base_url + path, json=body, headers=self._headers())
                response.raise_for_status()
                return response
        raise RuntimeError("retry loop exited without a result")  # pragma: no cover

    async def _stream(self, body: Mapping[str, Any]) -> AsyncIterator[StreamChunk]:
        text = ""
        url = self._base_url + "/ai/generate-stream"
        async with self._http.stream("POST", url, json=body, headers=self._headers()) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                raw = line[len("data:"):].strip()
                if not raw or raw == "[DONE]":
                    continue
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    LOGGER.debug("Skipping malformed stream event: %s", raw)
                    continue
                token = data.get("token") if isinstance(data, Mapping) else None
                if isinstance(token, str):
                    text += token
                    yield StreamChunk(text=text)
