"""Per-section config schemas."""

from .llm import GenerationConfig, LLMConfig, TruncationConfig  # noqa: F401
from .observability import LoggingConfig  # noqa: F401

__all__ = [
    "GenerationConfig",
    "LLMConfig",
    "TruncationConfig",
    "LoggingConfig",
]
