"""Chat prompt orchestration for language-model backends."""

from .errors import (
    BackendError,
    GenerationCancelledError,
    GenerationInProgressError,
    StructuredOutputError,
    TavernKitError,
)

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "TavernKitError",
    "GenerationInProgressError",
    "GenerationCancelledError",
    "BackendError",
    "StructuredOutputError",
]
