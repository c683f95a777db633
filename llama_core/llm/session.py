"""Generation session: one loaded model + context and its decode loop.

Summary:
* One `threading.Lock` serializes load_model and whole generation calls.
* `is_generating()`, `cancel_generation()`, `get_last_error()` and
  `unload_model()` never take the lock so another thread can always
  observe or stop a running generation.
* Every failure is recorded as the last error *and* raised; cancellation
  is not a failure.
* Emits: ModelLoaded / ModelLoadFailed / ModelUnloaded, PromptTruncated,
  GenerationStarted / GenerationChunk / GenerationCompleted /
  GenerationCancelled.

The engine's memory is cleared before every call. The common prefix with
the previous prompt is measured and reported but not reused.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from threading import Event, Lock
from time import perf_counter
from typing import Any, Callable, List

from llama_core import __version__
from llama_core.config import get_config
from llama_core.config.schemas.llm import GenerationConfig, LLMConfig
from llama_core.errors import map_exception, validate_error_type
from llama_core.events import (
    emit,
    GenerationCancelled,
    GenerationChunk,
    GenerationCompleted,
    GenerationStarted,
    ModelLoaded,
    ModelLoadFailed,
    ModelUnloaded,
    PromptTruncated,
)

from .engine import ContextParams, InferenceEngine, ModelParams, TokenBatch
from .exceptions import (
    ContextTooSmall,
    DecodeError,
    InternalError,
    InvalidState,
    ModelLoadError,
    SessionError,
    TokenizationError,
)
from .factory import get_engine
from .sampler import build_sampler_stages, describe_stages
from .token_buffer import longest_common_prefix
from .truncation import TruncationPolicy, truncate_tokens

logger = logging.getLogger(__name__)

TokenCallback = Callable[[str], Any]


@dataclass(slots=True)
class _State:
    model: Any | None = None
    context: Any | None = None
    sampler: Any | None = None
    # sampling_key() of the config the live sampler was built from
    sampler_key: tuple | None = None
    stages: list = field(default_factory=list)
    # params the live context was built with; caps prompt chunk size
    context_params: ContextParams | None = None
    model_path: str | None = None
    last_prompt_tokens: List[int] = field(default_factory=list)


@dataclass(slots=True)
class _Call:
    request_id: str
    start: float
    generated: int = 0
    in_callback: bool = False

    def elapsed_ms(self) -> int:
        return int((perf_counter() - self.start) * 1000)


class LlamaSession:
    def __init__(
        self,
        engine: InferenceEngine | None = None,
        config: GenerationConfig | None = None,
        llm_config: LLMConfig | None = None,
        session_id: str | None = None,
    ) -> None:
        self._llm = llm_config or get_config().llm
        self._engine = engine or get_engine()
        self._config = config or self._llm.generation
        self._truncation = TruncationPolicy.from_config(self._llm.truncation)
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self._state = _State()
        self._lock = Lock()
        self._generating = Event()
        self._cancel = Event()
        self._last_error = ""

    # properties -----------------------------------------------------------
    @property
    def engine(self) -> InferenceEngine:
        return self._engine

    @property
    def current_config(self) -> GenerationConfig:
        return self._config

    @property
    def model_path(self) -> str | None:
        return self._state.model_path

    # error state ----------------------------------------------------------
    def _clear_error(self) -> None:
        self._last_error = ""

    def _record(self, err: SessionError) -> SessionError:
        self._last_error = err.message
        logger.error("[%s] %s", self.session_id, err.message)
        return err

    def get_last_error(self) -> str:
        return self._last_error

    # load / unload --------------------------------------------------------
    def load_model(
        self, path: str | Path, config: GenerationConfig | None = None
    ) -> None:
        cfg = config or self._config
        path = str(path)
        with self._lock:
            self._clear_error()
            logger.info("[%s] loading model from %s", self.session_id, path)
            if self._state.model is not None or self._state.context is not None:
                logger.info("[%s] unloading existing model first", self.session_id)
                self._release("reload")
            start = perf_counter()
            engine = self._engine
            try:
                model = engine.create_model(path, ModelParams.from_config(cfg))
            except Exception as e:  # noqa: BLE001
                self._fail_load(path, f"Failed to load model from: {path} ({e})", e)
            if model is None:
                self._fail_load(path, f"Failed to load model from: {path}")
            ctx_params = ContextParams.from_config(cfg)
            try:
                ctx = engine.create_context(model, ctx_params)
            except Exception as e:  # noqa: BLE001
                engine.free_model(model)
                self._fail_load(
                    path, f"Failed to create context for model: {path} ({e})", e
                )
            if ctx is None:
                engine.free_model(model)
                self._fail_load(path, f"Failed to create context for model: {path}")
            self._state.model = model
            self._state.context = ctx
            self._state.context_params = ctx_params
            self._state.model_path = path
            self._state.last_prompt_tokens = []
            try:
                self._build_sampler(cfg)
            except SessionError as e:
                self._release("reload")
                self._fail_load(path, f"{e.message} (model: {path})", e)
            self._config = cfg
            load_ms = int((perf_counter() - start) * 1000)
            logger.info(
                "[%s] model loaded in %d ms (n_ctx=%d)",
                self.session_id,
                load_ms,
                engine.context_size(ctx),
            )
            emit(
                ModelLoaded(
                    session_id=self.session_id,
                    model_path=path,
                    engine=engine.name,
                    load_ms=load_ms,
                    context_size=engine.context_size(ctx),
                )
            )

    def _fail_load(
        self, path: str, message: str, cause: BaseException | None = None
    ) -> None:
        err = self._record(ModelLoadError(message))
        emit(
            ModelLoadFailed(
                session_id=self.session_id,
                model_path=path,
                engine=self._engine.name,
                error_type=validate_error_type(err.error_type),
                message=message[:400],
            )
        )
        raise err from cause

    def unload_model(self) -> None:
        """Release sampler, context and model (in that order).

        Takes no lock: callable from teardown paths and from other threads.
        Idempotent.
        """
        self._release("unload")

    def _release(self, reason: str) -> None:
        st = self._state
        engine = self._engine
        released = False
        # Detach before freeing so a running decode loop sees None rather
        # than a dangling handle.
        sampler, st.sampler = st.sampler, None
        st.sampler_key = None
        if sampler is not None:
            engine.free_sampler(sampler)
            released = True
        ctx, st.context = st.context, None
        if ctx is not None:
            engine.free_context(ctx)
            released = True
        model, st.model = st.model, None
        if model is not None:
            engine.free_model(model)
            released = True
        st.context_params = None
        st.model_path = None
        if released:
            logger.info("[%s] model unloaded (%s)", self.session_id, reason)
            emit(
                ModelUnloaded(
                    session_id=self.session_id,
                    engine=engine.name,
                    reason=reason,
                )
            )

    def is_model_loaded(self) -> bool:
        return self._state.model is not None and self._state.context is not None

    def close(self) -> None:
        self._release("close")

    def __enter__(self) -> "LlamaSession":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # sampler --------------------------------------------------------------
    def _build_sampler(self, cfg: GenerationConfig) -> None:
        st = self._state
        stages = build_sampler_stages(cfg, penalty_last_n=self._llm.penalty_last_n)
        sampler = self._engine.create_sampler(st.model, stages)
        if sampler is None:
            raise InternalError("Failed to create sampler chain")
        old, st.sampler = st.sampler, sampler
        if old is not None:
            self._engine.free_sampler(old)
        st.sampler_key = cfg.sampling_key()
        st.stages = stages
        logger.info(
            "[%s] sampler configured: temp=%.2f top_p=%.2f top_k=%d "
            "repeat_penalty=%.2f stages=%s",
            self.session_id,
            cfg.temperature,
            cfg.top_p,
            cfg.top_k,
            cfg.repeat_penalty,
            [type(s).__name__ for s in stages],
        )

    def _ensure_sampler(self, cfg: GenerationConfig) -> None:
        if self._state.sampler is None or self._state.sampler_key != cfg.sampling_key():
            self._build_sampler(cfg)

    # status / cancel ------------------------------------------------------
    def is_generating(self) -> bool:
        return self._generating.is_set()

    def cancel_generation(self) -> None:
        """Request the running generation to stop (no-op when idle).

        Observed between prompt chunks and decode iterations only.
        """
        if self._generating.is_set():
            logger.info("[%s] generation cancellation requested", self.session_id)
            self._cancel.set()

    # generation -----------------------------------------------------------
    def generate(
        self, prompt: str, config: GenerationConfig | None = None
    ) -> str:
        parts: List[str] = []
        try:
            self.generate_stream(prompt, parts.append, config)
        except SessionError as e:
            e.partial_text = "".join(parts)
            raise
        return "".join(parts)

    def generate_stream(
        self,
        prompt: str,
        on_token: TokenCallback,
        config: GenerationConfig | None = None,
    ) -> None:
        with self._lock:
            self._clear_error()
            if not self.is_model_loaded():
                raise self._record(InvalidState("Model not loaded"))
            if not callable(on_token):
                raise self._record(InvalidState("Token callback must be callable"))
            cfg = config or self._config
            call = _Call(request_id=uuid.uuid4().hex, start=perf_counter())
            batch = TokenBatch()
            self._cancel.clear()
            self._generating.set()
            try:
                self._run(call, prompt, on_token, cfg, batch, config is not None)
            except SessionError as e:
                self._record(e)
                self._emit_failed(call, e.error_type, e.message)
                raise
            except Exception as e:
                phase = "callback" if call.in_callback else "generation"
                code = validate_error_type(map_exception(e, phase))
                self._last_error = f"{code}: {e}"
                logger.exception("[%s] generation failed", self.session_id)
                self._emit_failed(call, code, str(e))
                raise
            finally:
                # observers must never see generating=True after scratch
                # resources are gone
                self._generating.clear()
                batch.clear()

    def _emit_failed(self, call: _Call, code: str, message: str) -> None:
        emit(
            GenerationCompleted(
                request_id=call.request_id,
                session_id=self.session_id,
                status="error",
                output_tokens=call.generated,
                latency_ms=call.elapsed_ms(),
                stop_reason="error",
                error_type=code,
                message=message[:400],
            )
        )

    def _cancelled(self, call: _Call, stage: str) -> None:
        logger.info(
            "[%s] generation cancelled during %s after %d tokens",
            self.session_id,
            stage,
            call.generated,
        )
        emit(
            GenerationCancelled(
                request_id=call.request_id,
                session_id=self.session_id,
                stage=stage,
                output_tokens=call.generated,
                latency_ms=call.elapsed_ms(),
            )
        )

    def _prepare_prompt(self, call: _Call, prompt: str, cfg: GenerationConfig) -> List[int]:
        st = self._state
        engine = self._engine
        tokens = engine.tokenize(st.model, prompt, True)
        if not tokens:
            raise TokenizationError("Failed to tokenize prompt")
        logger.info("[%s] tokenized prompt: %d tokens", self.session_id, len(tokens))
        n_ctx = engine.context_size(st.context)
        max_prompt = n_ctx - cfg.max_output_tokens - self._llm.safety_margin_tokens
        if len(tokens) > max_prompt:
            if max_prompt < self._llm.min_prompt_tokens:
                raise ContextTooSmall(
                    "Context too small for generation: "
                    f"{max_prompt} prompt tokens available, need at least "
                    f"{self._llm.min_prompt_tokens}"
                )
            logger.warning(
                "[%s] prompt too long (%d tokens), truncating to %d",
                self.session_id,
                len(tokens),
                max_prompt,
            )
            original = len(tokens)
            tokens = truncate_tokens(tokens, max_prompt, self._truncation)
            emit(
                PromptTruncated(
                    request_id=call.request_id,
                    session_id=self.session_id,
                    original_tokens=original,
                    kept_tokens=len(tokens),
                    max_prompt_tokens=max_prompt,
                )
            )
        return tokens

    def _run(
        self,
        call: _Call,
        prompt: str,
        on_token: TokenCallback,
        cfg: GenerationConfig,
        batch: TokenBatch,
        override: bool,
    ) -> None:
        st = self._state
        engine = self._engine

        self._ensure_sampler(cfg)
        tokens = self._prepare_prompt(call, prompt, cfg)

        engine.clear_memory(st.context)
        reusable = longest_common_prefix(st.last_prompt_tokens, tokens)
        st.last_prompt_tokens = list(tokens)
        engine.reset_sampler(st.sampler)

        emit(
            GenerationStarted(
                request_id=call.request_id,
                session_id=self.session_id,
                engine=engine.name,
                prompt_tokens=len(tokens),
                max_output_tokens=cfg.max_output_tokens,
                reusable_prefix_tokens=reusable,
                sampling={"stages": describe_stages(st.stages)},
                override=override,
            )
        )

        # prompt ingestion
        n_prompt = len(tokens)
        # a per-call batch_size cannot exceed what the context was built for
        loaded = st.context_params
        max_chunk = min(cfg.batch_size, loaded.batch_size) if loaded else cfg.batch_size
        processed = 0
        while processed < n_prompt:
            if self._cancel.is_set():
                self._cancelled(call, "prompt")
                return
            chunk = min(max_chunk, n_prompt - processed)
            batch.clear()
            for i in range(processed, processed + chunk):
                batch.add(tokens[i], i, i == n_prompt - 1)
            status = engine.decode(st.context, batch)
            if status != 0:
                raise DecodeError(
                    f"Failed to process prompt batch (status {status})", status
                )
            processed += chunk
            logger.debug(
                "[%s] processed %d/%d prompt tokens",
                self.session_id,
                processed,
                n_prompt,
            )

        # decode loop
        n_cur = n_prompt
        stop_reason = "limit"
        while call.generated < cfg.max_output_tokens:
            if self._cancel.is_set():
                self._cancelled(call, "decode")
                return
            sampler, ctx, model = st.sampler, st.context, st.model
            if sampler is None or ctx is None or model is None:
                raise InternalError("Internal error: sampler or context is null")
            token = engine.sample(sampler, ctx)
            if token < 0:
                logger.warning("[%s] invalid token sampled: %d", self.session_id, token)
                stop_reason = "invalid-token"
                break
            if engine.is_end_of_generation(model, token):
                logger.info("[%s] end of generation token received", self.session_id)
                stop_reason = "eog"
                break
            piece = engine.detokenize(model, [token])
            emit(
                GenerationChunk(
                    request_id=call.request_id,
                    session_id=self.session_id,
                    seq=call.generated,
                    token=token,
                    text=piece,
                )
            )
            call.in_callback = True
            on_token(piece)
            call.in_callback = False
            # the callback may have unloaded the model
            ctx = st.context
            if ctx is None:
                raise InternalError("Internal error: context released during generation")
            batch.clear()
            batch.add(token, n_cur, True)
            status = engine.decode(ctx, batch)
            if status != 0:
                raise DecodeError(f"Failed to decode token (status {status})", status)
            n_cur += 1
            call.generated += 1

        logger.info(
            "[%s] generation complete: %d tokens (%s)",
            self.session_id,
            call.generated,
            stop_reason,
        )
        emit(
            GenerationCompleted(
                request_id=call.request_id,
                session_id=self.session_id,
                status="ok",
                output_tokens=call.generated,
                latency_ms=call.elapsed_ms(),
                stop_reason=stop_reason,
            )
        )


def get_version(engine: InferenceEngine | None = None) -> str:
    """Library version plus the backend name, e.g. ``0.1.0 (llama.cpp)``."""
    name = engine.name if engine is not None else get_engine().name
    return f"{__version__} ({name})"


__all__ = ["LlamaSession", "TokenCallback", "get_version"]
