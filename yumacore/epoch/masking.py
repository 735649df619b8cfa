"""Active stake, validator permits and weight masking/normalization."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence

import bittensor as bt

from yumacore.math.fixed import is_topk, normalize
from yumacore.math.matrix import Matrix


@dataclass
class MaskedInputs:
    validator_permit: List[bool]
    inactive: List[bool]
    recently_registered: List[bool]
    active_stake: List[int]
    weights: Matrix


def compute_validator_permits(stake: Sequence[int], max_allowed_validators: int, min_stake: int) -> List[bool]:
    """Top ``max_allowed_validators`` slots by stake among those with stake > 0 and >= ``min_stake``."""
    eligible = [s > 0 and s >= min_stake for s in stake]
    return is_topk(stake, max_allowed_validators, eligible)


def compute_inactive(
    last_update: Sequence[int],
    block_at_registration: Sequence[int],
    current_block: int,
    activity_cutoff: int,
) -> List[bool]:
    # A slot registered after its own last update counts as newly active.
    return [
        current_block - updated > activity_cutoff and not registered > updated
        for updated, registered in zip(last_update, block_at_registration)
    ]


def compute_recently_registered(last_update: Sequence[int], block_at_registration: Sequence[int]) -> List[bool]:
    return [registered > updated for updated, registered in zip(last_update, block_at_registration)]


def compute_active_stake(stake: Sequence[int], inactive: Sequence[bool], validator_permit: Sequence[bool]) -> List[int]:
    """Stake of active, permitted slots normalized to one; all-zero when none remain."""
    masked = [
        0 if off or not permit else s
        for s, off, permit in zip(stake, inactive, validator_permit)
    ]
    return normalize(masked)


def mask_weights(
    weights: Matrix,
    validator_permit: Sequence[bool],
    last_update: Sequence[int],
    block_at_registration: Sequence[int],
    current_block: int,
    activity_cutoff: int,
) -> Matrix:
    """Drop self, unpermitted, stale and outdated weights, then row-normalize."""
    stale = [current_block - updated > activity_cutoff for updated in last_update]
    recently_registered = compute_recently_registered(last_update, block_at_registration)
    forbidden = [not permit for permit in validator_permit]

    masked = weights.mask_diag(validator_permit)
    masked = masked.mask_rows(forbidden)
    masked = masked.mask_rows(stale)
    masked = masked.mask_rows(recently_registered)
    masked = masked.mask_outdated(last_update, block_at_registration)
    return masked.row_normalize()


def apply_masks(
    stake: Sequence[int],
    weights: Matrix,
    last_update: Sequence[int],
    block_at_registration: Sequence[int],
    current_block: int,
    activity_cutoff: int,
    max_allowed_validators: int,
    validator_min_stake: int,
) -> MaskedInputs:
    validator_permit = compute_validator_permits(stake, max_allowed_validators, validator_min_stake)
    inactive = compute_inactive(last_update, block_at_registration, current_block, activity_cutoff)
    active_stake = compute_active_stake(stake, inactive, validator_permit)
    masked = mask_weights(
        weights,
        validator_permit,
        last_update,
        block_at_registration,
        current_block,
        activity_cutoff,
    )
    bt.logging.debug(
        f"masking | permits={sum(validator_permit)} inactive={sum(inactive)} "
        f"active_stake_slots={sum(1 for s in active_stake if s)}"
    )
    return MaskedInputs(
        validator_permit=validator_permit,
        inactive=inactive,
        recently_registered=compute_recently_registered(last_update, block_at_registration),
        active_stake=active_stake,
        weights=masked,
    )
