"""Combine incentive and dividends into pruning scores and per-slot emission."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence

import bittensor as bt

from yumacore.math.fixed import ONE, is_zero, normalize


@dataclass
class EmissionOutput:
    pruning_scores: List[int]
    emission: List[int]
    incentive_emission: List[int]
    dividend_emission: List[int]
    residual: int
    stake_fallback: bool


def split_emission(amount: int, incentive: int, dividend: int) -> tuple[int, int]:
    total = incentive + dividend
    if total == 0:
        return 0, amount
    server_part = (amount * incentive) // total
    return server_part, amount - server_part


def compute_emission(
    incentive: Sequence[int],
    dividends: Sequence[int],
    stake: Sequence[int],
    emission_budget: int,
) -> EmissionOutput:
    """Floor ``score * emission_budget`` per slot.

    The score is ``normalize(incentive + dividends)``; when that is all zero
    (nothing rated this epoch) normalized raw stake is used instead. The
    floored remainder is reported as ``residual`` and never credited.
    """
    score = normalize([i + d for i, d in zip(incentive, dividends)])
    stake_fallback = is_zero(score)
    if stake_fallback:
        score = normalize(list(stake))
        bt.logging.warning("Incentive and dividends are all zero; emitting by normalized stake")

    emission = [(s * emission_budget) // ONE for s in score]
    incentive_emission: List[int] = []
    dividend_emission: List[int] = []
    for amount, i, d in zip(emission, incentive, dividends):
        if stake_fallback:
            server_part, validator_part = 0, amount
        else:
            server_part, validator_part = split_emission(amount, i, d)
        incentive_emission.append(server_part)
        dividend_emission.append(validator_part)

    residual = emission_budget - sum(emission)
    bt.logging.debug(f"emission | budget={emission_budget} emitted={sum(emission)} residual={residual}")
    return EmissionOutput(
        pruning_scores=score,
        emission=emission,
        incentive_emission=incentive_emission,
        dividend_emission=dividend_emission,
        residual=residual,
        stake_fallback=stake_fallback,
    )
