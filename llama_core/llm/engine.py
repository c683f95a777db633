"""InferenceEngine interface.

The session never touches weights or tensors; it sequences calls on an
engine that owns them. Handles returned by the engine are opaque to the
session: it only stores them, passes them back and checks for ``None``.

Engines must not allocate heavy resources on import.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, List, Sequence

if TYPE_CHECKING:  # pragma: no cover
    from llama_core.config.schemas.llm import GenerationConfig
    from .sampler import SamplerStage


@dataclass(frozen=True, slots=True)
class ModelParams:
    gpu_layers: int = 0
    use_mmap: bool = True
    use_mlock: bool = False

    @classmethod
    def from_config(cls, cfg: "GenerationConfig") -> "ModelParams":
        return cls(
            gpu_layers=cfg.gpu_layers,
            use_mmap=cfg.use_mmap,
            use_mlock=cfg.use_mlock,
        )


@dataclass(frozen=True, slots=True)
class ContextParams:
    context_size: int = 2048
    batch_size: int = 512
    threads: int = 4
    threads_batch: int = 4

    @classmethod
    def from_config(cls, cfg: "GenerationConfig") -> "ContextParams":
        return cls(
            context_size=cfg.context_size,
            batch_size=cfg.batch_size,
            threads=cfg.threads,
            threads_batch=cfg.threads_batch,
        )


@dataclass(slots=True)
class TokenBatch:
    """Tokens with absolute positions, all on sequence 0.

    `logits[i]` requests output probabilities for `tokens[i]`.
    """

    tokens: List[int] = field(default_factory=list)
    positions: List[int] = field(default_factory=list)
    logits: List[bool] = field(default_factory=list)

    def add(self, token: int, pos: int, want_logits: bool) -> None:
        self.tokens.append(token)
        self.positions.append(pos)
        self.logits.append(want_logits)

    def clear(self) -> None:
        self.tokens.clear()
        self.positions.clear()
        self.logits.clear()

    def __len__(self) -> int:
        return len(self.tokens)


class InferenceEngine(ABC):
    name: str = "engine"

    # model / context -----------------------------------------------------
    @abstractmethod
    def create_model(self, path: str, params: ModelParams) -> Any | None:
        """Load weights; return an opaque model handle or None."""

    @abstractmethod
    def create_context(self, model: Any, params: ContextParams) -> Any | None:
        """Create a generation context; return a handle or None."""

    @abstractmethod
    def free_model(self, model: Any) -> None:
        """Release a model handle."""

    @abstractmethod
    def free_context(self, ctx: Any) -> None:
        """Release a context handle."""

    @abstractmethod
    def context_size(self, ctx: Any) -> int:
        """Actual context window of `ctx` in tokens."""

    # vocabulary ----------------------------------------------------------
    @abstractmethod
    def tokenize(self, model: Any, text: str, add_bos: bool) -> List[int]:
        """Tokenize text; an empty list signals failure."""

    @abstractmethod
    def detokenize(self, model: Any, tokens: Sequence[int]) -> str:
        """Convert tokens to text (unknown tokens are skipped)."""

    @abstractmethod
    def is_end_of_generation(self, model: Any, token: int) -> bool:
        """True for EOS/EOT style tokens."""

    # decoding ------------------------------------------------------------
    @abstractmethod
    def decode(self, ctx: Any, batch: TokenBatch) -> int:
        """Extend the context with `batch`; 0 on success, engine code otherwise."""

    @abstractmethod
    def clear_memory(self, ctx: Any) -> None:
        """Drop the retained key/value cache."""

    # sampling ------------------------------------------------------------
    @abstractmethod
    def create_sampler(
        self, model: Any, stages: Sequence["SamplerStage"]
    ) -> Any | None:
        """Build a sampler chain applying `stages` in order."""

    @abstractmethod
    def reset_sampler(self, sampler: Any) -> None:
        """Forget per-generation sampler state (penalty history, rng)."""

    @abstractmethod
    def free_sampler(self, sampler: Any) -> None:
        """Release a sampler handle."""

    @abstractmethod
    def sample(self, sampler: Any, ctx: Any) -> int:
        """Draw the next token from the last computed logits (-1 if none)."""

    def close(self) -> None:  # optional hook
        """Release backend-wide resources (default no-op)."""
        return None


__all__ = [
    "InferenceEngine",
    "ModelParams",
    "ContextParams",
    "TokenBatch",
]
