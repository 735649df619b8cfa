"""Stake-weighted rank, consensus clipping, trust and incentive."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence

import bittensor as bt

from yumacore.math.fixed import normalize, safe_div, u16_proportion_to_fixed, vec_sum, weighted_median
from yumacore.math.matrix import Matrix


@dataclass
class ConsensusOutput:
    preranks: List[int]
    consensus: List[int]
    clipped_weights: Matrix
    ranks: List[int]
    trust: List[int]
    validator_trust: List[int]
    incentive: List[int]


def consensus_clip(weights: Matrix, active_stake: Sequence[int], kappa: int) -> List[int]:
    """Per-column stake-weighted median with majority ``kappa`` (a u16 fraction).

    Only raters holding active stake take part; a participating rater with no
    entry in a column rates it zero.
    """
    raters = [i for i, s in enumerate(active_stake) if s > 0]
    if not raters:
        return [0] * weights.n
    use_stake = normalize([active_stake[i] for i in raters])
    majority = u16_proportion_to_fixed(kappa)
    return [weighted_median(use_stake, column, majority) for column in weights.column_scores(raters)]


def compute_consensus(weights: Matrix, active_stake: Sequence[int], kappa: int) -> ConsensusOutput:
    preranks = weights.stake_weighted_col_sum(active_stake)
    consensus = consensus_clip(weights, active_stake, kappa)
    clipped = weights.clip_cols(consensus)
    ranks = clipped.stake_weighted_col_sum(active_stake)

    total_stake = vec_sum(active_stake)
    trust = [safe_div(endorsed, total_stake) for endorsed in clipped.stake_weighted_nonzero_count(active_stake)]
    incentive = normalize(ranks)

    bt.logging.debug(
        f"consensus | ranked={sum(1 for r in ranks if r)} clipped_columns="
        f"{sum(1 for p, r in zip(preranks, ranks) if r < p)}"
    )
    return ConsensusOutput(
        preranks=preranks,
        consensus=consensus,
        clipped_weights=clipped,
        ranks=ranks,
        trust=trust,
        validator_trust=clipped.row_sums(),
        incentive=incentive,
    )
