"""Context truncation policy.

Keeps a head segment (system / instruction text) verbatim and fills the
rest of the budget with the most recent tokens. The cut between the two
is nudged onto a likely turn boundary so the kept tail does not start in
the middle of a sentence.

Boundary detection is a heuristic on raw token ids: in common vocabularies
newline and separator tokens have small ids, so any id below
``boundary_token_threshold`` is treated as a boundary.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Sequence

from llama_core.config.schemas.llm import TruncationConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TruncationPolicy:
    min_keep_start: int = 32
    keep_start_percent: int = 15
    boundary_token_threshold: int = 50
    search_window: int = 128

    @classmethod
    def from_config(cls, cfg: TruncationConfig) -> "TruncationPolicy":
        return cls(
            min_keep_start=cfg.min_keep_start,
            keep_start_percent=cfg.keep_start_percent,
            boundary_token_threshold=cfg.boundary_token_threshold,
            search_window=cfg.search_window,
        )

    def keep_start(self, max_tokens: int) -> int:
        """Head size for a budget of `max_tokens` (leaves >=1 tail token)."""
        keep = max(
            self.min_keep_start, max_tokens * self.keep_start_percent // 100
        )
        return max(0, min(keep, max_tokens - 1))


DEFAULT_POLICY = TruncationPolicy()


def _find_cut(
    tokens: Sequence[int], raw_cut: int, policy: TruncationPolicy
) -> int:
    # The tail starts at the returned index. Only later cut points are
    # considered so the tail never grows past its budget.
    end = min(raw_cut + policy.search_window, len(tokens) - 1)
    for i in range(raw_cut - 1, end):
        if tokens[i] < policy.boundary_token_threshold:
            return i + 1
    return raw_cut


def truncate_tokens(
    tokens: Sequence[int],
    max_tokens: int,
    policy: TruncationPolicy = DEFAULT_POLICY,
) -> List[int]:
    """Reduce `tokens` to at most `max_tokens`.

    Sequences already within budget are returned unchanged (as a new
    list). Otherwise the result is ``tokens[:keep_start]`` followed by a
    suffix of `tokens`.
    """
    if max_tokens < 1:
        raise ValueError("max_tokens must be >=1")
    if len(tokens) <= max_tokens:
        return list(tokens)
    keep_start = policy.keep_start(max_tokens)
    keep_end = max_tokens - keep_start
    raw_cut = len(tokens) - keep_end
    cut = _find_cut(tokens, raw_cut, policy)
    result = list(tokens[:keep_start])
    result.extend(tokens[cut:])
    logger.info(
        "truncated prompt %d -> %d tokens (head=%d tail=%d cut=%d raw_cut=%d)",
        len(tokens),
        len(result),
        keep_start,
        len(tokens) - cut,
        cut,
        raw_cut,
    )
    return result


__all__ = ["TruncationPolicy", "DEFAULT_POLICY", "truncate_tokens"]
