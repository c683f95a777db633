"""llama.cpp engine over the llama-cpp-python low-level (ctypes) API.

The binding is imported when the engine is constructed, not at module
import, so the rest of the package works without it. One engine instance
owns the llama.cpp backend (init in the constructor, free in close()).

Handles:
* model   -> `_Model` (model pointer + its vocab pointer)
* context -> `_Context` (context pointer + a reusable llama_batch sized
  to the context's batch capacity)
* sampler -> raw sampler-chain pointer
"""
from __future__ import annotations

import ctypes
import logging
from dataclasses import dataclass
from typing import Any, List, Sequence

from .engine import ContextParams, InferenceEngine, ModelParams, TokenBatch
from .sampler import (
    Distribution,
    RepetitionPenalty,
    SamplerStage,
    Temperature,
    TopK,
    TopP,
)

logger = logging.getLogger(__name__)

# decode() status for a batch larger than the context batch capacity
STATUS_BATCH_TOO_LARGE = -1


@dataclass(slots=True)
class _Model:
    ptr: Any
    vocab: Any


@dataclass(slots=True)
class _Context:
    ptr: Any
    batch: Any
    capacity: int


class LlamaCppEngine(InferenceEngine):
    name = "llama.cpp"

    def __init__(self) -> None:
        import llama_cpp.llama_cpp as llama_cpp  # type: ignore

        self._lib = llama_cpp
        llama_cpp.llama_backend_init()
        self._closed = False
        logger.info("llama.cpp backend initialized")

    def close(self) -> None:
        if self._closed:
            return
        self._lib.llama_backend_free()
        self._closed = True
        logger.info("llama.cpp backend freed")

    # model / context -----------------------------------------------------
    def create_model(self, path: str, params: ModelParams) -> _Model | None:
        lib = self._lib
        mp = lib.llama_model_default_params()
        mp.n_gpu_layers = params.gpu_layers
        mp.use_mmap = params.use_mmap
        mp.use_mlock = params.use_mlock
        logger.info(
            "model params: gpu_layers=%d use_mmap=%s use_mlock=%s",
            params.gpu_layers,
            params.use_mmap,
            params.use_mlock,
        )
        ptr = lib.llama_model_load_from_file(str(path).encode("utf-8"), mp)
        if not ptr:
            return None
        vocab = lib.llama_model_get_vocab(ptr)
        if not vocab:
            lib.llama_model_free(ptr)
            return None
        return _Model(ptr=ptr, vocab=vocab)

    def create_context(
        self, model: _Model, params: ContextParams
    ) -> _Context | None:
        lib = self._lib
        cp = lib.llama_context_default_params()
        cp.n_ctx = params.context_size
        cp.n_batch = params.batch_size
        cp.n_threads = params.threads
        cp.n_threads_batch = params.threads_batch
        logger.info(
            "context params: n_ctx=%d n_batch=%d n_threads=%d",
            params.context_size,
            params.batch_size,
            params.threads,
        )
        ptr = lib.llama_init_from_model(model.ptr, cp)
        if not ptr:
            return None
        capacity = max(1, params.batch_size)
        batch = lib.llama_batch_init(capacity, 0, 1)
        return _Context(ptr=ptr, batch=batch, capacity=capacity)

    def free_model(self, model: _Model) -> None:
        self._lib.llama_model_free(model.ptr)

    def free_context(self, ctx: _Context) -> None:
        self._lib.llama_batch_free(ctx.batch)
        self._lib.llama_free(ctx.ptr)

    def context_size(self, ctx: _Context) -> int:
        return int(self._lib.llama_n_ctx(ctx.ptr))

    # vocabulary ----------------------------------------------------------
    def tokenize(self, model: _Model, text: str, add_bos: bool) -> List[int]:
        lib = self._lib
        data = text.encode("utf-8")
        n_alloc = len(data) // 4 + 16
        buf = (lib.llama_token * n_alloc)()
        n = lib.llama_tokenize(
            model.vocab, data, len(data), buf, n_alloc, add_bos, True
        )
        if n < 0:
            n_alloc = -n
            buf = (lib.llama_token * n_alloc)()
            n = lib.llama_tokenize(
                model.vocab, data, len(data), buf, n_alloc, add_bos, True
            )
        if n < 0:
            logger.error("failed to tokenize text (%d)", n)
            return []
        return list(buf[:n])

    def _piece(self, model: _Model, token: int) -> bytes:
        lib = self._lib
        size = 256
        buf = (ctypes.c_char * size)()
        n = lib.llama_token_to_piece(model.vocab, token, buf, size, 0, True)
        if n < 0:
            size = -n
            buf = (ctypes.c_char * size)()
            n = lib.llama_token_to_piece(model.vocab, token, buf, size, 0, True)
        if n < 0:
            logger.warning("failed to detokenize token %d", token)
            return b""
        return bytes(buf[:n])

    def detokenize(self, model: _Model, tokens: Sequence[int]) -> str:
        data = b"".join(self._piece(model, t) for t in tokens)
        return data.decode("utf-8", errors="replace")

    def is_end_of_generation(self, model: _Model, token: int) -> bool:
        return bool(self._lib.llama_vocab_is_eog(model.vocab, token))

    # decoding ------------------------------------------------------------
    def decode(self, ctx: _Context, batch: TokenBatch) -> int:
        if len(batch) > ctx.capacity:
            return STATUS_BATCH_TOO_LARGE
        b = ctx.batch
        b.n_tokens = len(batch)
        for i, (tok, pos, want) in enumerate(
            zip(batch.tokens, batch.positions, batch.logits)
        ):
            b.token[i] = tok
            b.pos[i] = pos
            b.n_seq_id[i] = 1
            b.seq_id[i][0] = 0
            b.logits[i] = want
        return int(self._lib.llama_decode(ctx.ptr, b))

    def clear_memory(self, ctx: _Context) -> None:
        mem = self._lib.llama_get_memory(ctx.ptr)
        if mem:
            self._lib.llama_memory_clear(mem, True)

    # sampling ------------------------------------------------------------
    def _init_stage(self, stage: SamplerStage) -> Any:
        lib = self._lib
        if isinstance(stage, RepetitionPenalty):
            return lib.llama_sampler_init_penalties(
                stage.last_n, stage.penalty, 0.0, 0.0
            )
        if isinstance(stage, TopK):
            return lib.llama_sampler_init_top_k(stage.k)
        if isinstance(stage, TopP):
            return lib.llama_sampler_init_top_p(stage.p, stage.min_keep)
        if isinstance(stage, Temperature):
            return lib.llama_sampler_init_temp(stage.t)
        if isinstance(stage, Distribution):
            return lib.llama_sampler_init_dist(stage.seed)
        raise TypeError(f"unsupported sampler stage: {stage!r}")

    def create_sampler(
        self, model: _Model, stages: Sequence[SamplerStage]
    ) -> Any | None:
        lib = self._lib
        chain = lib.llama_sampler_chain_init(
            lib.llama_sampler_chain_default_params()
        )
        if not chain:
            return None
        for stage in stages:
            lib.llama_sampler_chain_add(chain, self._init_stage(stage))
        return chain

    def reset_sampler(self, sampler: Any) -> None:
        self._lib.llama_sampler_reset(sampler)

    def free_sampler(self, sampler: Any) -> None:
        self._lib.llama_sampler_free(sampler)

    def sample(self, sampler: Any, ctx: _Context) -> int:
        return int(self._lib.llama_sampler_sample(sampler, ctx.ptr, -1))


__all__ = ["LlamaCppEngine"]
