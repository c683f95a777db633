"""Engine selection.

`llm.engine` picks the backend: ``llama_cpp`` (default) or ``stub``.
The ``LLAMA_SESSION_FAKE=1`` environment toggle forces the stub, which
is what tests and UI development without weights use.
"""
from __future__ import annotations

import os
from functools import lru_cache

from llama_core.config import get_config

from .engine import InferenceEngine


def _engine_kind() -> str:
    if os.getenv("LLAMA_SESSION_FAKE") == "1":
        return "stub"
    return get_config().llm.engine


@lru_cache(maxsize=2)
def _build(kind: str) -> InferenceEngine:
    if kind == "stub":
        from .stub_engine import StubEngine

        return StubEngine()
    from .llama_cpp_engine import LlamaCppEngine

    return LlamaCppEngine()


def get_engine(kind: str | None = None) -> InferenceEngine:
    """Return the process-wide engine for `kind` (config default)."""
    return _build(kind or _engine_kind())


def clear_engine_cache() -> None:  # noqa: D401
    _build.cache_clear()


__all__ = ["get_engine", "clear_engine_cache"]
