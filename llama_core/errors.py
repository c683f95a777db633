"""Central error taxonomy.

Every error surfaced by the session core (exceptions, events, HTTP
payloads) carries one of these codes.
"""
from __future__ import annotations

_ALLOWED_ERROR_TYPES = {
    # model.load
    "model-load-failed",
    # generation.request
    "invalid-state",
    "tokenization-failed",
    "context-too-small",
    # generation.runtime
    "decode-failed",
    "internal",
    "callback-failed",
    # config
    "config-out-of-range",
    # infra
    "event-handler-error",
}


def validate_error_type(code: str) -> str:
    assert (
        code in _ALLOWED_ERROR_TYPES
    ), f"Unknown error_type '{code}' (not in taxonomy)"
    return code


def map_exception(e: BaseException, phase: str) -> str:
    """Map an arbitrary exception to a taxonomy code.

    Session errors carry their own code; anything else is classified by
    the phase it escaped from.
    """
    code = getattr(e, "error_type", None)
    if isinstance(code, str) and code in _ALLOWED_ERROR_TYPES:
        return code
    if phase == "callback":
        return "callback-failed"
    return "internal"


__all__ = ["validate_error_type", "map_exception"]
