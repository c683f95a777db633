"""Sampler configuration.

`build_sampler_stages` turns a GenerationConfig into the ordered stage
list every engine applies:

    repetition-penalty -> top-k -> top-p -> temperature -> distribution

A stage whose setting is neutral (penalty 1.0, top-k <= 0, top-p 1.0,
temperature 0) is left out. Native engines map stages onto their own
sampler primitives; `SamplerPipeline` runs the same stages in pure Python
over a logits vector for engines that expose raw logits.
"""
from __future__ import annotations

import math
import random
import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Callable, Deque, Dict, List, Sequence, Union

from llama_core.config.schemas.llm import GenerationConfig

# Largest seed value; llama.cpp reserves 0xFFFFFFFF for "pick randomly".
_SEED_SPACE = 0xFFFFFFFF


@dataclass(frozen=True, slots=True)
class RepetitionPenalty:
    penalty: float
    last_n: int = 64


@dataclass(frozen=True, slots=True)
class TopK:
    k: int


@dataclass(frozen=True, slots=True)
class TopP:
    p: float
    min_keep: int = 1


@dataclass(frozen=True, slots=True)
class Temperature:
    t: float


@dataclass(frozen=True, slots=True)
class Distribution:
    seed: int


SamplerStage = Union[RepetitionPenalty, TopK, TopP, Temperature, Distribution]


def resolve_seed(
    seed: int, clock: Callable[[], int] = time.time_ns
) -> int:
    """Fixed seeds pass through; negative seeds derive from the clock."""
    if seed >= 0:
        return seed % _SEED_SPACE
    return int(clock()) % _SEED_SPACE


def build_sampler_stages(
    cfg: GenerationConfig,
    penalty_last_n: int = 64,
    clock: Callable[[], int] = time.time_ns,
) -> List[SamplerStage]:
    stages: List[SamplerStage] = []
    if cfg.repeat_penalty != 1.0:
        stages.append(
            RepetitionPenalty(penalty=cfg.repeat_penalty, last_n=penalty_last_n)
        )
    if cfg.top_k > 0:
        stages.append(TopK(k=cfg.top_k))
    if cfg.top_p < 1.0:
        stages.append(TopP(p=cfg.top_p))
    if cfg.temperature > 0.0:
        stages.append(Temperature(t=cfg.temperature))
    stages.append(Distribution(seed=resolve_seed(cfg.seed, clock)))
    return stages


def describe_stages(stages: Sequence[SamplerStage]) -> List[Dict[str, Any]]:
    """JSON-friendly snapshot used in GenerationStarted events."""
    return [{"stage": type(s).__name__, **asdict(s)} for s in stages]


# pure-Python pipeline -------------------------------------------------------

@dataclass(slots=True)
class _Candidate:
    token: int
    logit: float
    p: float = 0.0


def _softmax(cands: List[_Candidate]) -> None:
    top = max(c.logit for c in cands)
    total = 0.0
    for c in cands:
        c.p = math.exp(c.logit - top)
        total += c.p
    for c in cands:
        c.p /= total


class SamplerPipeline:
    """Applies sampler stages to a logits vector.

    Holds the per-generation state: repetition history and the seeded
    rng. `reset()` restores both to their initial values so two calls with
    the same seed draw the same tokens.
    """

    def __init__(self, stages: Sequence[SamplerStage]) -> None:
        if not stages or not isinstance(stages[-1], Distribution):
            raise ValueError("sampler pipeline must end with Distribution")
        self.stages = list(stages)
        self._seed = stages[-1].seed
        self._rng = random.Random(self._seed)
        last_n = max(
            (s.last_n for s in stages if isinstance(s, RepetitionPenalty)),
            default=0,
        )
        self._history: Deque[int] = deque(maxlen=last_n or None)
        self._track_history = last_n > 0

    def reset(self) -> None:
        self._rng.seed(self._seed)
        self._history.clear()

    def accept(self, token: int) -> None:
        if self._track_history:
            self._history.append(token)

    def sample(self, logits: Sequence[float]) -> int:
        if not logits:
            return -1
        cands = [_Candidate(t, float(v)) for t, v in enumerate(logits)]
        for stage in self.stages:
            if isinstance(stage, RepetitionPenalty):
                seen = set(self._history)
                for c in cands:
                    if c.token in seen:
                        if c.logit > 0:
                            c.logit /= stage.penalty
                        else:
                            c.logit *= stage.penalty
            elif isinstance(stage, TopK):
                cands.sort(key=lambda c: c.logit, reverse=True)
                del cands[max(stage.k, 1):]
            elif isinstance(stage, TopP):
                _softmax(cands)
                cands.sort(key=lambda c: c.p, reverse=True)
                cum = 0.0
                keep = len(cands)
                for i, c in enumerate(cands):
                    cum += c.p
                    if cum >= stage.p and i + 1 >= stage.min_keep:
                        keep = i + 1
                        break
                del cands[keep:]
            elif isinstance(stage, Temperature):
                for c in cands:
                    c.logit /= stage.t
            elif isinstance(stage, Distribution):
                _softmax(cands)
                r = self._rng.random()
                cum = 0.0
                for c in cands:
                    cum += c.p
                    if r < cum:
                        token = c.token
                        break
                else:
                    token = cands[-1].token
                self.accept(token)
                return token
        return -1


__all__ = [
    "RepetitionPenalty",
    "TopK",
    "TopP",
    "Temperature",
    "Distribution",
    "SamplerStage",
    "SamplerPipeline",
    "resolve_seed",
    "build_sampler_stages",
    "describe_stages",
]
