"""Deterministic fixed-point arithmetic for the epoch path.

Scalars are ``I32F32`` values stored as plain Python ints scaled by ``2**32``.
Every operation is integer-only and saturates to the signed 64-bit range, so
two evaluators running the same sequence of operations agree bit-for-bit.
Floats are accepted only by :func:`fixed` and produced only by :func:`to_float`,
both of which are for configuration, logging and tests.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

FRAC_BITS = 32
ONE = 1 << FRAC_BITS
HALF = ONE >> 1
I64_MAX = (1 << 63) - 1
I64_MIN = -(1 << 63)
U16_MAX = 65535

# round(ln(2) * 2**32)
LN2 = 2977044472


def saturate(value: int) -> int:
    if value > I64_MAX:
        return I64_MAX
    if value < I64_MIN:
        return I64_MIN
    return value


def fixed(value: float) -> int:
    """Convert a float to the nearest I32F32 value."""
    return saturate(int(round(value * ONE)))


def to_float(value: int) -> float:
    return value / ONE


def from_int(value: int) -> int:
    return saturate(value << FRAC_BITS)


def mul(a: int, b: int) -> int:
    return saturate((a * b) // ONE)


def safe_div(a: int, b: int) -> int:
    """Divide two I32F32 values, returning zero when ``b`` is zero."""
    if b == 0:
        return 0
    return saturate((a * ONE) // b)


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def u16_proportion_to_fixed(value: int) -> int:
    """Map a 16-bit fraction ``value / 65535`` onto I32F32, rounding up.

    Rounding up makes :func:`fixed_proportion_to_u16` an exact inverse, so
    values persisted as 16-bit fractions do not drift across epochs.
    """
    return -((-value * ONE) // U16_MAX)


def fixed_proportion_to_u16(value: int) -> int:
    """Floor an I32F32 proportion into a 16-bit fraction."""
    return clamp((value * U16_MAX) // ONE, 0, U16_MAX)


def per_million_to_fixed(value: int) -> int:
    return (value * ONE) // 1_000_000


def exp(x: int) -> int:
    """Saturating ``e**x`` via range reduction by ln 2 and a Taylor series."""
    if x == 0:
        return ONE
    k, r = divmod(x, LN2)
    term = ONE
    total = ONE
    n = 1
    while term:
        term = (term * r) // (ONE * n)
        total += term
        n += 1
    if k >= 0:
        if k >= 63 - FRAC_BITS:
            return I64_MAX
        return saturate(total << k)
    if -k >= 2 * FRAC_BITS:
        return 0
    return total >> -k


def sigmoid(z: int) -> int:
    """Logistic function ``1 / (1 + e**-z)`` in I32F32."""
    return (ONE * ONE) // (ONE + exp(-z))


def vec_sum(values: Iterable[int]) -> int:
    return sum(values)


def normalize(values: Sequence[int]) -> List[int]:
    """Scale ``values`` to sum to one; an all-zero vector stays all-zero."""
    total = sum(values)
    if total == 0:
        return list(values)
    return [(v * ONE) // total for v in values]


def hadamard(a: Sequence[int], b: Sequence[int]) -> List[int]:
    return [(x * y) // ONE for x, y in zip(a, b)]


def dot(a: Sequence[int], b: Sequence[int]) -> int:
    return sum((x * y) // ONE for x, y in zip(a, b))


def is_zero(values: Iterable[int]) -> bool:
    return all(v == 0 for v in values)


def is_topk(values: Sequence[int], k: int, eligible: Optional[Sequence[bool]] = None) -> List[bool]:
    """Mark the ``k`` largest eligible entries, breaking ties by lower index."""
    if eligible is None:
        eligible = [True] * len(values)
    ranked = sorted(
        (i for i in range(len(values)) if eligible[i]),
        key=lambda i: (-values[i], i),
    )
    selected = set(ranked[: max(0, k)])
    return [i in selected for i in range(len(values))]


def weighted_median(stake: Sequence[int], score: Sequence[int], majority: int) -> int:
    """Stake-weighted quantile of ``score`` leaving at least ``majority`` stake at or above it.

    Partition search around a pivot: the stake strictly below the returned
    value is at most ``sum(stake) - majority`` while adding the pivot's own
    stake would exceed it. ``stake`` must be non-negative and aligned with
    ``score``.
    """
    idx = list(range(len(stake)))
    lo = 0
    hi = sum(stake)
    minority = hi - majority
    while idx:
        if len(idx) == 1:
            return score[idx[0]]
        pivot = score[idx[len(idx) // 2]]
        lower: List[int] = []
        upper: List[int] = []
        lo_stake = 0
        hi_stake = 0
        for i in idx:
            if score[i] < pivot:
                lower.append(i)
                lo_stake += stake[i]
            elif score[i] > pivot:
                upper.append(i)
                hi_stake += stake[i]
        if lo + lo_stake <= minority < hi - hi_stake:
            return pivot
        if minority < lo + lo_stake and lower:
            idx = lower
            hi = lo + lo_stake
        elif hi - hi_stake <= minority and upper:
            idx = upper
            lo = hi - hi_stake
        else:
            return pivot
    return 0
