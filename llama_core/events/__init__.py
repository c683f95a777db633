"""Event dataclasses + any-subscriber bridge.

Per-event subscriptions go through `llama_core.eventbus`. This module
also exposes `on(handler)` / `subscribe(handler)` where handler(name,
payload) receives every event (used by tests and the metrics collector).
"""
from __future__ import annotations

from dataclasses import dataclass, asdict
from time import time
from typing import Any, Callable, Dict, List, Protocol

from llama_core import metrics as _metrics
from llama_core.eventbus import emit as _emit_bus

EventHandler = Callable[[str, Dict[str, Any]], None]


class SupportsEvent(Protocol):  # pragma: no cover
    def to_event(self) -> Dict[str, Any]:  # noqa: D401
        ...


@dataclass(slots=True)
class BaseEvent:
    def to_event(self) -> Dict[str, Any]:  # noqa: D401
        data = asdict(self)
        data["ts"] = data.get("ts") or time()
        return data


@dataclass(slots=True)
class ModelLoaded(BaseEvent):
    session_id: str
    model_path: str
    engine: str
    load_ms: int
    context_size: int


@dataclass(slots=True)
class ModelLoadFailed(BaseEvent):
    session_id: str
    model_path: str
    engine: str
    error_type: str
    message: str | None = None


@dataclass(slots=True)
class ModelUnloaded(BaseEvent):
    session_id: str
    engine: str
    reason: str  # unload|reload|close


@dataclass(slots=True)
class PromptTruncated(BaseEvent):
    """Prompt exceeded the budget and was cut by the truncation policy."""
    request_id: str
    session_id: str
    original_tokens: int
    kept_tokens: int
    max_prompt_tokens: int


@dataclass(slots=True)
class GenerationStarted(BaseEvent):
    request_id: str
    session_id: str
    engine: str
    prompt_tokens: int
    max_output_tokens: int
    # common prefix with the previously processed prompt (not reused)
    reusable_prefix_tokens: int = 0
    sampling: dict | None = None  # stage snapshot
    override: bool = False


@dataclass(slots=True)
class GenerationChunk(BaseEvent):
    request_id: str
    session_id: str
    seq: int  # 0-based
    token: int
    text: str


@dataclass(slots=True)
class GenerationCompleted(BaseEvent):
    request_id: str
    session_id: str
    status: str  # ok|error
    output_tokens: int
    latency_ms: int
    stop_reason: str | None = None  # limit|eog|invalid-token|error
    error_type: str | None = None
    message: str | None = None


@dataclass(slots=True)
class GenerationCancelled(BaseEvent):
    """Generation ended early because the cancel flag was observed."""
    request_id: str
    session_id: str
    stage: str  # prompt|decode
    output_tokens: int
    latency_ms: int


_ANY_SUBS: List[EventHandler] = []


def _metrics_collector(
    name: str, payload: Dict[str, Any]
) -> None:  # noqa: D401
    if name == "ModelLoaded":
        _metrics.inc(
            "models_loaded_total", {"engine": payload.get("engine")}
        )
    elif name == "ModelLoadFailed":
        _metrics.inc(
            "model_load_failures_total", {"engine": payload.get("engine")}
        )
    elif name == "ModelUnloaded":
        _metrics.inc(
            "models_unloaded_total", {"engine": payload.get("engine")}
        )
    elif name == "PromptTruncated":
        _metrics.inc_prompt_truncated(
            payload.get("original_tokens", 0)
            - payload.get("kept_tokens", 0)
        )
    elif name == "GenerationCompleted":
        _metrics.inc(
            "generation_completed_total",
            {"status": payload.get("status", "unknown")},
        )
        _metrics.inc(
            "generation_tokens_total", value=payload.get("output_tokens", 0)
        )
        _metrics.observe(
            "generation_latency_ms", payload.get("latency_ms", 0)
        )
    elif name == "GenerationCancelled":
        _metrics.inc_generation_cancelled(payload.get("stage", "unknown"))
        _metrics.inc(
            "generation_tokens_total", value=payload.get("output_tokens", 0)
        )
        _metrics.observe(
            "generation_latency_ms", payload.get("latency_ms", 0)
        )


_ANY_SUBS.append(_metrics_collector)


def emit(ev: BaseEvent | SupportsEvent) -> None:
    name = ev.__class__.__name__
    payload = ev.to_event()
    _emit_bus(name, payload)
    for h in list(_ANY_SUBS):  # copy for isolation
        try:
            h(name, dict(payload))
        except Exception:  # noqa: BLE001
            _metrics.inc("handler_exceptions_total", {"event": name})


def on(handler: EventHandler) -> None:
    _ANY_SUBS.append(handler)


def subscribe(handler: EventHandler):  # returns unsubscribe callable
    on(handler)

    def _unsub() -> None:  # noqa: D401
        try:
            _ANY_SUBS.remove(handler)
        except ValueError:
            pass
    return _unsub


def reset_listeners_for_tests() -> None:  # pragma: no cover
    _ANY_SUBS.clear()
    _ANY_SUBS.append(_metrics_collector)


__all__ = [
    "emit",
    "on",
    "subscribe",
    "ModelLoaded",
    "ModelLoadFailed",
    "ModelUnloaded",
    "PromptTruncated",
    "GenerationStarted",
    "GenerationChunk",
    "GenerationCompleted",
    "GenerationCancelled",
    "reset_listeners_for_tests",
]
