"""Session layer over an inference engine."""
from .engine import ContextParams, InferenceEngine, ModelParams, TokenBatch
from .exceptions import (
    ContextTooSmall,
    DecodeError,
    InternalError,
    InvalidHandle,
    InvalidState,
    ModelLoadError,
    SessionError,
    TokenizationError,
)
from .factory import clear_engine_cache, get_engine
from .registry import SessionRegistry, registry
from .session import LlamaSession, get_version

__all__ = [
    "ContextParams",
    "ContextTooSmall",
    "DecodeError",
    "InferenceEngine",
    "InternalError",
    "InvalidHandle",
    "InvalidState",
    "LlamaSession",
    "ModelLoadError",
    "ModelParams",
    "SessionError",
    "SessionRegistry",
    "TokenBatch",
    "TokenizationError",
    "clear_engine_cache",
    "get_engine",
    "get_version",
    "registry",
]
