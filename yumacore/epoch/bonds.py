"""Bonds delta, EMA merge (static or liquid alpha), penalty, reset and dividends.

Bonds are per validator/server pair in [0, 1]. By default each epoch a
validator buys into the servers it rates in proportion to its row-normalized
clipped weights, so its per-epoch bond-buying power is the same regardless of
stake. In Yuma3 mode each pair instead buys with the clipped weight itself,
bounded by the capacity left under one after decay. Either way stake only
reaches the validator reward through the dividend step.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Sequence

import bittensor as bt

from yumacore.epoch.constants import BONDS_MOVING_AVERAGE_SCALE, STEEPNESS_SCALE
from yumacore.math.fixed import (
    HALF,
    ONE,
    clamp,
    from_int,
    hadamard,
    mul,
    normalize,
    per_million_to_fixed,
    safe_div,
    sigmoid,
    u16_proportion_to_fixed,
)
from yumacore.math.matrix import Matrix
from yumacore.utils.config import SubnetHyperparameters

RateFn = Callable[[int, int], int]


@dataclass
class BondsOutput:
    bonds_delta: Matrix
    bonds: Matrix
    dividends: List[int]
    liquid_alpha_applied: bool
    # Yuma3 bonds are per-pair quantities; every other mode keeps rows within one.
    row_bounded: bool


def static_rate(bonds_moving_average: int) -> int:
    """EMA rate implied by a per-million moving-average retention."""
    return ONE - per_million_to_fixed(min(bonds_moving_average, BONDS_MOVING_AVERAGE_SCALE))


def alpha_sigmoid(weight: int, consensus: int, alpha_low: int, alpha_high: int, steepness: int) -> int:
    """Dynamic rate for one pair: near ``alpha_high`` when ``weight`` tracks ``consensus``."""
    deviation = clamp(abs(weight - consensus), 0, ONE)
    x = sigmoid(mul(steepness, HALF - deviation))
    return clamp(alpha_low + mul(x, alpha_high - alpha_low), alpha_low, alpha_high)


def make_rate_fn(hp: SubnetHyperparameters, consensus: Sequence[int]) -> tuple[RateFn, bool]:
    """Return ``rate(j, weight)`` and whether the dynamic mode is in effect."""
    if hp.liquid_alpha_enabled and any(c > 0 for c in consensus):
        low = u16_proportion_to_fixed(hp.alpha_low)
        high = u16_proportion_to_fixed(hp.alpha_high)
        steepness = from_int(hp.alpha_sigmoid_steepness) // STEEPNESS_SCALE

        def liquid(j: int, weight: int) -> int:
            return alpha_sigmoid(weight, consensus[j], low, high, steepness)

        return liquid, True

    rate = static_rate(hp.bonds_moving_average)

    def fixed_rate(j: int, weight: int) -> int:
        return rate

    return fixed_rate, False


def merge_pair(old: int, new: int, rate: int, capacity_bound: bool) -> int:
    decayed = mul(ONE - rate, old)
    if capacity_bound:
        purchase = min(mul(rate, new), max(ONE - decayed, 0))
        return min(decayed + purchase, ONE)
    return decayed + mul(rate, new)


def compute_bonds_delta(clipped_weights: Matrix, active_stake: Sequence[int]) -> Matrix:
    return clipped_weights.row_hadamard(active_stake).row_normalize()


def merge_bonds(
    previous: Matrix,
    purchase: Matrix,
    weights: Matrix,
    consensus: Sequence[int],
    hp: SubnetHyperparameters,
) -> tuple[Matrix, bool]:
    """Blend ``purchase`` into ``previous`` pairwise; returns the bonds and whether liquid alpha ran."""
    rate_fn, liquid = make_rate_fn(hp, consensus)
    penalty = u16_proportion_to_fixed(hp.bonds_penalty)
    buying = [total > 0 for total in purchase.row_sums()]
    capacity_bound = hp.yuma3_enabled

    def combine(i: int, j: int, old: int, new: int, weight: int) -> int:
        ema = merge_pair(old, new, rate_fn(j, weight), capacity_bound)
        if penalty and buying[i]:
            ema = mul(ONE - penalty, ema) + mul(penalty, new)
        return ema

    return previous.zip_with([purchase, weights], combine), liquid


def compute_dividends(
    bonds: Matrix,
    incentive: Sequence[int],
    active_stake: Sequence[int],
    column_normalized: bool = False,
) -> List[int]:
    if column_normalized:
        col_sums = bonds.stake_weighted_col_sum([ONE] * bonds.n)
        incentive = [safe_div(inc, total) for inc, total in zip(incentive, col_sums)]
    return normalize(hadamard(active_stake, bonds.matvec(incentive)))


def compute_bonds(
    previous: Matrix,
    weights: Matrix,
    clipped_weights: Matrix,
    active_stake: Sequence[int],
    consensus: Sequence[int],
    incentive: Sequence[int],
    last_update: Sequence[int],
    block_at_registration: Sequence[int],
    recently_registered: Sequence[bool],
    hp: SubnetHyperparameters,
) -> BondsOutput:
    # Pairs whose server slot was reused since the validator last updated start cold.
    history = previous.mask_outdated(last_update, block_at_registration)
    history = history.mask_rows(recently_registered)

    delta = compute_bonds_delta(clipped_weights, active_stake)
    purchase = clipped_weights if hp.yuma3_enabled else delta
    bonds, liquid = merge_bonds(history, purchase, weights, consensus, hp)
    if liquid and not hp.yuma3_enabled:
        # Per-pair rates can keep old bonds while buying new ones.
        bonds = bonds.cap_rows()
    dividends = compute_dividends(bonds, incentive, active_stake, column_normalized=hp.yuma3_enabled)

    bt.logging.debug(
        f"bonds | liquid_alpha={liquid} yuma3={hp.yuma3_enabled} penalty={hp.bonds_penalty} "
        f"buying_validators={sum(1 for t in purchase.row_sums() if t)}"
    )
    return BondsOutput(
        bonds_delta=delta,
        bonds=bonds,
        dividends=dividends,
        liquid_alpha_applied=liquid,
        row_bounded=not hp.yuma3_enabled,
    )


def reset_bonds_column(bonds: Matrix, node_id: int) -> Matrix:
    """Forfeit every validator's accumulated bond in server ``node_id``."""
    return bonds.zero_col(node_id)
