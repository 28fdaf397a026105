"""AI client, backend adapters and generation orchestration."""

from .ai_types import GenerationType, TokenCounterProtocol, ToolCall
from .client import AIClient, ApproxByteCounter, ClientSettings, TiktokenCounter, TokenCounterRegistry

__all__ = [
    "AIClient",
    "ClientSettings",
    "TokenCounterRegistry",
    "ApproxByteCounter",
    "TiktokenCounter",
    "TokenCounterProtocol",
    "GenerationType",
    "ToolCall",
]
