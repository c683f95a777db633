"""/sessions routes: handle lifecycle, load/unload, generate (blocking + SSE)."""
from __future__ import annotations

import logging
import queue
import threading

from fastapi import APIRouter
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, ValidationError

from llama_core import metrics
from llama_core.llm.exceptions import (
    ContextTooSmall,
    InvalidHandle,
    InvalidState,
    SessionError,
    TokenizationError,
)
from llama_core.llm.registry import registry
from llama_core.llm.session import LlamaSession
from llama_session.api.sse import json_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions")

# queue sentinel: generation thread finished
_DONE = object()


class GenerateOverrides(BaseModel):
    """Per-call settings; load-time fields are rejected (422)."""

    batch_size: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    repeat_penalty: float | None = None
    max_output_tokens: int | None = None
    seed: int | None = None

    model_config = ConfigDict(extra="forbid")


class LoadOverrides(GenerateOverrides):
    context_size: int | None = None
    threads: int | None = None
    threads_batch: int | None = None
    use_mmap: bool | None = None
    use_mlock: bool | None = None
    gpu_layers: int | None = None


class LoadRequest(BaseModel):
    model_path: str
    overrides: LoadOverrides | None = None


class GenerateRequest(BaseModel):
    prompt: str
    overrides: GenerateOverrides | None = None


def _status_for(exc: SessionError) -> int:
    if isinstance(exc, InvalidHandle):
        return 404
    if isinstance(exc, InvalidState):
        return 409
    if isinstance(exc, (ContextTooSmall, TokenizationError)):
        return 400
    return 500


def error_response(exc: SessionError) -> JSONResponse:
    return JSONResponse(
        status_code=_status_for(exc),
        content={"error_type": exc.error_type, "message": exc.message},
    )


def _config_for(session: LlamaSession, overrides: GenerateOverrides | None):
    """Merged per-call config, or None to use the session's current one."""
    if overrides is None:
        return None
    values = overrides.model_dump(exclude_none=True)
    if not values:
        return None
    return session.current_config.with_overrides(**values)


def _invalid_overrides(e: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error_type": "config-out-of-range", "message": str(e)},
    )


@router.post("")
def create_session():  # noqa: D401
    return {"handle": registry.create()}


@router.delete("/{handle}")
def destroy_session(handle: int):  # noqa: D401
    registry.destroy(handle)
    return {"ok": True}


@router.get("/{handle}")
def session_status(handle: int):  # noqa: D401
    session = registry.get(handle)
    return {
        "handle": handle,
        "loaded": session.is_model_loaded(),
        "generating": session.is_generating(),
        "model_path": session.model_path,
        "last_error": session.get_last_error(),
    }


@router.post("/{handle}/load")
def load_model(handle: int, req: LoadRequest):  # noqa: D401
    session = registry.get(handle)
    try:
        cfg = _config_for(session, req.overrides)
    except ValidationError as e:
        return _invalid_overrides(e)
    session.load_model(req.model_path, cfg)
    return {"ok": True, "model_path": req.model_path}


@router.post("/{handle}/unload")
def unload_model(handle: int):  # noqa: D401
    registry.get(handle).unload_model()
    return {"ok": True}


@router.post("/{handle}/cancel")
def cancel_generation(handle: int):  # noqa: D401
    session = registry.get(handle)
    was_generating = session.is_generating()
    session.cancel_generation()
    return {"ok": True, "was_generating": was_generating}


@router.post("/{handle}/generate")
def generate(handle: int, req: GenerateRequest):  # noqa: D401
    session = registry.get(handle)
    try:
        cfg = _config_for(session, req.overrides)
    except ValidationError as e:
        return _invalid_overrides(e)
    return {"text": session.generate(req.prompt, cfg)}


@router.post("/{handle}/generate/stream")
def generate_stream(handle: int, req: GenerateRequest):  # noqa: D401
    session = registry.get(handle)
    try:
        cfg = _config_for(session, req.overrides)
    except ValidationError as e:
        return _invalid_overrides(e)
    if not session.is_model_loaded():
        raise InvalidState("Model not loaded")

    events: queue.Queue = queue.Queue()

    def _worker() -> None:
        try:
            session.generate_stream(prompt=req.prompt, on_token=events.put, config=cfg)
        except SessionError as e:
            events.put(e)
        except Exception as e:  # noqa: BLE001
            logger.exception("stream worker failed")
            events.put(e)
        finally:
            events.put(_DONE)

    def _gen():
        metrics.inc("sse_stream_open_total")
        worker = threading.Thread(target=_worker, name=f"generate-{handle}", daemon=True)
        worker.start()
        seq = 0
        finished = False
        failed = False
        try:
            while True:
                item = events.get()
                if item is _DONE:
                    finished = True
                    break
                if isinstance(item, SessionError):
                    failed = True
                    yield json_event(
                        "error",
                        {"error_type": item.error_type, "message": item.message},
                    )
                    continue
                if isinstance(item, Exception):
                    failed = True
                    yield json_event(
                        "error", {"error_type": "internal", "message": str(item)}
                    )
                    continue
                yield json_event("token", {"seq": seq, "text": item})
                seq += 1
            if not failed:
                yield json_event("end", {"tokens": seq})
        finally:
            if not finished:
                # client went away mid-stream
                session.cancel_generation()
            worker.join()

    return StreamingResponse(_gen(), media_type="text/event-stream")


__all__ = ["router", "error_response"]
