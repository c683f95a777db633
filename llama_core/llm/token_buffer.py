"""Token sequence helpers: polynomial rolling hash and common prefix search.

The hash of ``tokens[start:start+length]`` is ``Σ t_i · BASE^(i-start)``
modulo ``MOD``. Because the weight of each token depends only on its
offset, prefix hashes of two sequences are directly comparable, which is
what the prefix search relies on.
"""
from __future__ import annotations

from typing import List, Sequence

BASE = 31
MOD = 1_000_000_007
# Sampled verification checks roughly this many positions per candidate.
_VERIFY_SAMPLES = 16


def rolling_hash(
    tokens: Sequence[int], start: int = 0, length: int | None = None
) -> int:
    end = len(tokens) if length is None else min(start + length, len(tokens))
    h = 0
    power = 1
    for i in range(start, end):
        h = (h + (tokens[i] % MOD) * power) % MOD
        power = (power * BASE) % MOD
    return h


def prefix_hashes(tokens: Sequence[int]) -> List[int]:
    """Return ``out`` with ``out[n] == rolling_hash(tokens, 0, n)``."""
    out = [0] * (len(tokens) + 1)
    h = 0
    power = 1
    for i, tok in enumerate(tokens):
        h = (h + (tok % MOD) * power) % MOD
        power = (power * BASE) % MOD
        out[i + 1] = h
    return out


def _sampled_equal(a: Sequence[int], b: Sequence[int], n: int) -> bool:
    step = max(1, n // _VERIFY_SAMPLES)
    for i in range(0, n, step):
        if a[i] != b[i]:
            return False
    return a[n - 1] == b[n - 1]


def longest_common_prefix(a: Sequence[int], b: Sequence[int]) -> int:
    """Length of the longest common prefix of `a` and `b`.

    Binary search over the prefix length; a candidate is accepted when the
    prefix hashes agree and a sparse sample of positions matches.
    """
    if not a or not b:
        return 0
    if a[0] != b[0]:
        return 0
    ha = prefix_hashes(a)
    hb = prefix_hashes(b)
    lo, hi = 1, min(len(a), len(b))
    result = 0
    while lo <= hi:
        mid = (lo + hi) // 2
        if ha[mid] == hb[mid] and _sampled_equal(a, b, mid):
            result = mid
            lo = mid + 1
        else:
            hi = mid - 1
    return result


__all__ = [
    "BASE",
    "MOD",
    "rolling_hash",
    "prefix_hashes",
    "longest_common_prefix",
]
