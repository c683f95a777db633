"""Deterministic byte-level engine.

Selected by `llm.engine: stub` (or `LLAMA_SESSION_FAKE=1`) so the
session and the HTTP surface stay usable without model weights, and as
the engine behind the test-suite.

Vocabulary: 0 = pad, 1 = BOS, 2 = EOS, then one token per byte value
(``byte + 3``). Logits are a pure function of the context contents: a
seeded noise floor over printable ASCII plus a boost for the token that
followed the previous occurrence of the last token, so output loosely
echoes the prompt. Identical context + identical sampler seed gives
identical output.
"""
from __future__ import annotations

import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Sequence

from .engine import ContextParams, InferenceEngine, ModelParams, TokenBatch
from .sampler import SamplerPipeline, SamplerStage

PAD = 0
BOS = 1
EOS = 2
BYTE_OFFSET = 3
N_VOCAB = 256 + BYTE_OFFSET

# decode() status codes (mirroring llama_decode semantics)
STATUS_NO_KV_SLOT = 1
STATUS_INVALID_BATCH = -1

_NEG_INF = float("-inf")
_ECHO_BOOST = 3.0
_EOS_LOGIT = -4.0


def _printable(token: int) -> bool:
    b = token - BYTE_OFFSET
    return b == 10 or 32 <= b <= 126


@dataclass(slots=True)
class StubModel:
    path: str
    params: ModelParams
    freed: bool = False


@dataclass(slots=True)
class StubContext:
    model: StubModel
    n_ctx: int
    n_batch: int
    kv: List[int] = field(default_factory=list)
    logits: List[float] | None = None
    freed: bool = False


class StubEngine(InferenceEngine):
    name = "stub"

    def __init__(self, require_file: bool = True) -> None:
        self._require_file = require_file

    # model / context -----------------------------------------------------
    def create_model(self, path: str, params: ModelParams) -> StubModel | None:
        if self._require_file and not Path(path).is_file():
            return None
        return StubModel(path=str(path), params=params)

    def create_context(
        self, model: StubModel, params: ContextParams
    ) -> StubContext | None:
        if model is None or model.freed:
            return None
        return StubContext(
            model=model, n_ctx=params.context_size, n_batch=params.batch_size
        )

    def free_model(self, model: StubModel) -> None:
        model.freed = True

    def free_context(self, ctx: StubContext) -> None:
        ctx.freed = True
        ctx.kv.clear()
        ctx.logits = None

    def context_size(self, ctx: StubContext) -> int:
        return ctx.n_ctx

    # vocabulary ----------------------------------------------------------
    def tokenize(self, model: StubModel, text: str, add_bos: bool) -> List[int]:
        tokens = [BOS] if add_bos else []
        tokens.extend(b + BYTE_OFFSET for b in text.encode("utf-8"))
        return tokens

    def detokenize(self, model: StubModel, tokens: Sequence[int]) -> str:
        data = bytes(
            t - BYTE_OFFSET for t in tokens if BYTE_OFFSET <= t < N_VOCAB
        )
        return data.decode("utf-8", errors="replace")

    def is_end_of_generation(self, model: StubModel, token: int) -> bool:
        return token == EOS

    # decoding ------------------------------------------------------------
    def decode(self, ctx: StubContext, batch: TokenBatch) -> int:
        if ctx.freed or len(batch) == 0 or len(batch) > ctx.n_batch:
            return STATUS_INVALID_BATCH
        if len(ctx.kv) + len(batch) > ctx.n_ctx:
            return STATUS_NO_KV_SLOT
        ctx.logits = None
        for tok, pos, want in zip(batch.tokens, batch.positions, batch.logits):
            if pos != len(ctx.kv) or not (0 <= tok < N_VOCAB):
                return STATUS_INVALID_BATCH
            ctx.kv.append(tok)
            if want:
                ctx.logits = self._logits(ctx.kv)
        return 0

    def clear_memory(self, ctx: StubContext) -> None:
        ctx.kv.clear()
        ctx.logits = None

    def _logits(self, kv: Sequence[int]) -> List[float]:
        last = kv[-1]
        rng = random.Random(last * 1_000_003 + len(kv))
        out = [
            rng.random() if _printable(t) else _NEG_INF
            for t in range(N_VOCAB)
        ]
        out[EOS] = _EOS_LOGIT
        for j in range(len(kv) - 2, -1, -1):
            if kv[j] == last:
                nxt = kv[j + 1]
                if _printable(nxt):
                    out[nxt] += _ECHO_BOOST
                break
        return out

    # sampling ------------------------------------------------------------
    def create_sampler(
        self, model: StubModel, stages: Sequence[SamplerStage]
    ) -> SamplerPipeline:
        return SamplerPipeline(stages)

    def reset_sampler(self, sampler: SamplerPipeline) -> None:
        sampler.reset()

    def free_sampler(self, sampler: SamplerPipeline) -> None:
        return None

    def sample(self, sampler: SamplerPipeline, ctx: StubContext) -> int:
        if ctx.logits is None:
            return -1
        return sampler.sample(ctx.logits)


__all__ = ["StubEngine", "StubModel", "StubContext", "BOS", "EOS", "N_VOCAB"]
