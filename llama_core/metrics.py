"""Minimal in-memory metrics collector.

Purpose:
    - Counters and simple latency samples for the session core.
    - Zero external deps; can be swapped by a Prometheus exporter later.

Core API (intentionally tiny):
    inc(name, labels=None, value=1)
    observe(name, value, labels=None)
    snapshot() -> dict (copy for safe reading)

Thread-safety: coarse RLock; overhead negligible at per-token volume.

Session related metric names (documented for discoverability):
    - models_loaded_total{engine}
    - model_load_failures_total{engine}
    - models_unloaded_total{engine}
    - generation_tokens_total
    - generation_completed_total{status}
    - generation_cancelled_total{stage}
    - prompt_truncations_total
    - prompt_tokens_dropped_total
    - generation_latency_ms (histogram)
    - env_override_total{path}
    - config_validation_errors_total{path,code}
"""
from __future__ import annotations

from threading import RLock
from time import time
from typing import Dict, Tuple, Any

_COUNTERS: Dict[Tuple[str, Tuple[Tuple[str, str], ...]], float] = {}
_HIST: Dict[Tuple[str, Tuple[Tuple[str, str], ...]], list] = {}
_LOCK = RLock()


def _norm_labels(labels: dict[str, Any] | None) -> Tuple[Tuple[str, str], ...]:
    if not labels:
        return tuple()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def _label_str(labels: Tuple[Tuple[str, str], ...]) -> str:
    if not labels:
        return ""
    return "{" + ",".join(f"{k}={v}" for k, v in labels) + "}"


def inc(
    name: str,
    labels: dict[str, Any] | None = None,
    value: float = 1.0,
) -> None:
    key = (name, _norm_labels(labels))
    with _LOCK:
        _COUNTERS[key] = _COUNTERS.get(key, 0.0) + value


def observe(
    name: str,
    value: float,
    labels: dict[str, Any] | None = None,
) -> None:
    key = (name, _norm_labels(labels))
    with _LOCK:
        _HIST.setdefault(key, []).append(value)


def snapshot() -> dict[str, Any]:
    with _LOCK:
        counters: dict[str, float] = {}
        for (name, labels), v in _COUNTERS.items():
            counters[name + _label_str(labels)] = v
        hist = {}
        for (name, labels), vals in _HIST.items():
            if not vals:
                continue
            ordered = sorted(vals)
            hist[name + _label_str(labels)] = {
                "count": len(vals),
                "min": ordered[0],
                "max": ordered[-1],
                "p50": ordered[len(ordered) // 2],
                "last": vals[-1],
            }
        return {
            "ts": time(),
            "counters": counters,
            "histograms": hist,
        }


def counter_value(name: str, labels: dict[str, Any] | None = None) -> float:
    """Return a single counter value (0 when never incremented)."""
    key = (name, _norm_labels(labels))
    with _LOCK:
        return _COUNTERS.get(key, 0.0)


def reset_for_tests() -> None:  # pragma: no cover
    with _LOCK:
        _COUNTERS.clear()
        _HIST.clear()


__all__ = [
    "inc",
    "observe",
    "snapshot",
    "counter_value",
    "reset_for_tests",
]


# ------------------- Helper wrappers -------------------

def inc_generation_cancelled(stage: str) -> None:
    """Increment cancellation counter.

    stage: where the cancel flag was observed:
        - prompt   (between prompt chunks)
        - decode   (between decode loop iterations)
    """
    if stage:
        inc("generation_cancelled_total", {"stage": stage})


def inc_prompt_truncated(dropped: int) -> None:
    """Track one truncation and the number of prompt tokens it dropped."""
    inc("prompt_truncations_total")
    if dropped:
        inc("prompt_tokens_dropped_total", value=dropped)


__all__ += ["inc_generation_cancelled", "inc_prompt_truncated"]
