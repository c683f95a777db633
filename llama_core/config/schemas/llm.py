"""LLM config schema.

`GenerationConfig` is the per-call value type handed to the session; it
is frozen so a config captured at the start of a call cannot change under
the decode loop. `LLMConfig` is the `llm:` section of the YAML config.

No side effects / globals.
"""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator, ConfigDict

# Fields that shape the sampler pipeline (everything else is load-time or
# budget related).
SAMPLING_FIELDS = (
    "temperature",
    "top_p",
    "top_k",
    "repeat_penalty",
    "seed",
)


class GenerationConfig(BaseModel):
    # context
    context_size: int = 2048
    batch_size: int = 512
    # threading
    threads: int = 4
    threads_batch: int = 4
    # sampling
    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 40
    repeat_penalty: float = 1.1
    # limits
    max_output_tokens: int = 512
    # memory
    use_mmap: bool = True
    use_mlock: bool = False
    gpu_layers: int = 0
    # -1 = derive from wall clock
    seed: int = -1

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("context_size", "batch_size", "threads", "threads_batch")
    @classmethod
    def _positive(cls, v: int) -> int:  # noqa: D401
        if v <= 0:
            raise ValueError("must be >0")
        return v

    @field_validator("temperature")
    @classmethod
    def _temp_range(cls, v: float) -> float:  # noqa: D401
        if v < 0:
            raise ValueError("temperature must be >=0")
        return v

    @field_validator("top_p")
    @classmethod
    def _top_p_range(cls, v: float) -> float:  # noqa: D401
        if not (0 < v <= 1):
            raise ValueError("top_p must be 0<..<=1")
        return v

    @field_validator("repeat_penalty")
    @classmethod
    def _repeat_penalty_range(cls, v: float) -> float:  # noqa: D401
        if v <= 0:
            raise ValueError("repeat_penalty must be >0")
        return v

    @field_validator("max_output_tokens", "gpu_layers")
    @classmethod
    def _non_negative(cls, v: int) -> int:  # noqa: D401
        if v < 0:
            raise ValueError("must be >=0")
        return v

    def with_overrides(self, **overrides: Any) -> "GenerationConfig":
        """Return a validated copy with `overrides` applied.

        `model_copy(update=...)` skips validation, so the merged dict is
        re-validated instead.
        """
        data = self.model_dump()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return GenerationConfig.model_validate(data)

    def sampling_key(self) -> tuple:
        return tuple(getattr(self, name) for name in SAMPLING_FIELDS)


class TruncationConfig(BaseModel):
    min_keep_start: int = 32
    keep_start_percent: int = Field(15, ge=0, le=100)
    boundary_token_threshold: int = 50
    search_window: int = Field(128, ge=0)

    model_config = ConfigDict(extra="forbid")


class LLMConfig(BaseModel):
    model_path: str | None = None
    generation: GenerationConfig = GenerationConfig()
    # Reserved on top of max_output_tokens when budgeting the prompt
    safety_margin_tokens: int = Field(16, ge=0)
    # Below this prompt budget truncation is refused (ContextTooSmall)
    min_prompt_tokens: int = Field(64, ge=1)
    # Repetition penalty look-back window
    penalty_last_n: int = Field(64, ge=0)
    truncation: TruncationConfig = TruncationConfig()
    # Backend: llama_cpp | stub (deterministic, no weights needed)
    engine: str = Field("llama_cpp", pattern="^(llama_cpp|stub)$")

    model_config = ConfigDict(extra="forbid")
