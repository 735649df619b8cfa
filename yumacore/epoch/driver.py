"""Epoch driver: one pass of masking, consensus, bonds and emission per subnet.

:func:`evaluate_epoch` is the pure computation, parameterized by the matrix
backing. :class:`EpochEngine` wraps it with the storage collaborator, a
per-subnet lock, validation, invariant checks and the atomic commit.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, List, Tuple, Type

import bittensor as bt

from yumacore.epoch.bonds import compute_bonds, reset_bonds_column
from yumacore.epoch.consensus import compute_consensus
from yumacore.epoch.constants import BONDS_ROW_TOLERANCE_PER_COL
from yumacore.epoch.emission import compute_emission
from yumacore.epoch.masking import apply_masks
from yumacore.errors import BondsResetDisabled, ConfigurationError, InvariantViolation
from yumacore.math.fixed import ONE, U16_MAX, fixed_proportion_to_u16, u16_proportion_to_fixed
from yumacore.math.matrix import BACKENDS, DenseMatrix, Matrix, SparseMatrix
from yumacore.storage.state import SubnetState, U16Rows
from yumacore.storage.store import SubnetStore
from yumacore.utils.config import SubnetHyperparameters


@dataclass
class EpochInputs:
    """Snapshot of one subnet's state taken at epoch start."""

    stake: List[int]
    weights: U16Rows
    bonds: U16Rows
    last_update: List[int]
    block_at_registration: List[int]
    current_block: int
    hyperparameters: SubnetHyperparameters = field(default_factory=SubnetHyperparameters)

    @property
    def n(self) -> int:
        return len(self.stake)

    @classmethod
    def from_store(cls, store: SubnetStore, subnet_id: int) -> "EpochInputs":
        state = store.snapshot(subnet_id)
        return cls(
            stake=state.stake,
            weights=state.weights,
            bonds=state.bonds,
            last_update=state.last_update,
            block_at_registration=state.block_at_registration,
            current_block=state.current_block,
            hyperparameters=state.hyperparameters,
        )

    def validate(self) -> "EpochInputs":
        SubnetState(
            stake=self.stake,
            weights=self.weights,
            bonds=self.bonds,
            last_update=self.last_update,
            block_at_registration=self.block_at_registration,
            hyperparameters=self.hyperparameters,
            current_block=self.current_block,
        ).validate()
        return self


@dataclass
class EpochResult:
    nodes: List[Tuple[int, int, int]]
    bonds: U16Rows
    validator_permit: List[bool]
    rank: List[int]
    trust: List[int]
    consensus: List[int]
    validator_trust: List[int]
    incentive: List[int]
    dividends: List[int]
    pruning_scores: List[int]
    emission: List[int]
    incentive_emission: List[int]
    dividend_emission: List[int]
    residual: int
    stake_fallback: bool

    def outputs(self) -> Dict[str, List[int]]:
        """Per-node vectors persisted alongside the bonds."""
        return {
            "rank": self.rank,
            "trust": self.trust,
            "consensus": self.consensus,
            "validator_trust": self.validator_trust,
            "incentive": self.incentive,
            "dividends": self.dividends,
            "pruning_scores": self.pruning_scores,
            "emission": self.emission,
        }


def rows_to_matrix(n: int, rows: U16Rows, matrix_cls: Type[Matrix]) -> Matrix:
    return matrix_cls.from_rows(n, [[(j, u16_proportion_to_fixed(v)) for j, v in row] for row in rows])


def matrix_to_rows(matrix: Matrix) -> U16Rows:
    rows: U16Rows = []
    for row in matrix.to_rows():
        converted = [(j, fixed_proportion_to_u16(v)) for j, v in row]
        rows.append([(j, v) for j, v in converted if v])
    return rows


def _to_u16(values: List[int]) -> List[int]:
    return [fixed_proportion_to_u16(v) for v in values]


def cap_bond_rows(rows: U16Rows) -> U16Rows:
    """Scale stored bond rows whose 16-bit total exceeds one back under it.

    Yuma3 leaves per-pair bonds whose rows may sum above one; a subnet that
    later leaves Yuma3 starts from these rescaled rows.
    """
    capped: U16Rows = []
    for i, row in enumerate(rows):
        total = sum(v for _, v in row)
        if total > U16_MAX:
            bt.logging.warning(f"Stored bonds row {i} sums to {total}/{U16_MAX}; rescaling to one")
            row = [(j, v * U16_MAX // total) for j, v in row if v * U16_MAX >= total]
        capped.append(list(row))
    return capped


def check_bonds(bonds: Matrix, row_bounded: bool) -> None:
    """Raise :class:`InvariantViolation` if merged bonds left their domain."""
    tolerance = bonds.n * BONDS_ROW_TOLERANCE_PER_COL
    for i, row in enumerate(bonds.to_rows()):
        for j, value in row:
            if not 0 <= value <= ONE:
                bt.logging.error(f"Bond ({i}, {j}) = {value} outside [0, 1]")
                raise InvariantViolation(f"bond ({i}, {j}) outside [0, 1]: {value}")
        total = sum(v for _, v in row)
        if row_bounded and total > ONE + tolerance:
            bt.logging.error(f"Bonds row {i} sums to {total}, above one by more than {tolerance}")
            raise InvariantViolation(f"bonds row {i} sums above one: {total}")


def evaluate_epoch(
    inputs: EpochInputs,
    emission_budget: int,
    matrix_cls: Type[Matrix] = DenseMatrix,
) -> EpochResult:
    """Run all stages over ``inputs`` with the given matrix backing. Pure."""
    hp = inputs.hyperparameters
    n = inputs.n

    masked = apply_masks(
        stake=inputs.stake,
        weights=rows_to_matrix(n, inputs.weights, matrix_cls),
        last_update=inputs.last_update,
        block_at_registration=inputs.block_at_registration,
        current_block=inputs.current_block,
        activity_cutoff=hp.activity_cutoff,
        max_allowed_validators=hp.max_allowed_validators,
        validator_min_stake=hp.validator_min_stake,
    )
    consensus = compute_consensus(masked.weights, masked.active_stake, hp.kappa)
    stored_bonds = inputs.bonds if hp.yuma3_enabled else cap_bond_rows(inputs.bonds)
    bonds = compute_bonds(
        previous=rows_to_matrix(n, stored_bonds, matrix_cls),
        weights=masked.weights,
        clipped_weights=consensus.clipped_weights,
        active_stake=masked.active_stake,
        consensus=consensus.consensus,
        incentive=consensus.incentive,
        last_update=inputs.last_update,
        block_at_registration=inputs.block_at_registration,
        recently_registered=masked.recently_registered,
        hp=hp,
    )
    check_bonds(bonds.bonds, row_bounded=bonds.row_bounded)

    # Only permitted validators keep bonds.
    kept_bonds = bonds.bonds.mask_rows([not permit for permit in masked.validator_permit])
    emission = compute_emission(consensus.incentive, bonds.dividends, inputs.stake, emission_budget)
    if emission.residual < 0:
        bt.logging.error(f"Emitted {sum(emission.emission)} exceeds budget {emission_budget}")
        raise InvariantViolation("emission exceeds budget")

    incentive = _to_u16(consensus.incentive)
    dividends = _to_u16(bonds.dividends)
    return EpochResult(
        nodes=[(uid, incentive[uid], dividends[uid]) for uid in range(n)],
        bonds=matrix_to_rows(kept_bonds),
        validator_permit=masked.validator_permit,
        rank=_to_u16(consensus.ranks),
        trust=_to_u16(consensus.trust),
        consensus=_to_u16(consensus.consensus),
        validator_trust=_to_u16(consensus.validator_trust),
        incentive=incentive,
        dividends=dividends,
        pruning_scores=_to_u16(emission.pruning_scores),
        emission=emission.emission,
        incentive_emission=emission.incentive_emission,
        dividend_emission=emission.dividend_emission,
        residual=emission.residual,
        stake_fallback=emission.stake_fallback,
    )


class EpochEngine:
    """Runs epochs against a :class:`SubnetStore`, one at a time per subnet.

    With ``cross_check=True`` every epoch is evaluated by both backings and
    any disagreement aborts the epoch before anything is committed.
    """

    def __init__(self, store: SubnetStore, cross_check: bool = False):
        self.store = store
        self.cross_check = cross_check
        self._locks: Dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock(self, subnet_id: int) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(subnet_id, threading.Lock())

    def run_epoch_dense(self, subnet_id: int, emission_budget: int) -> EpochResult:
        return self._run(subnet_id, emission_budget, DenseMatrix)

    def run_epoch_sparse(self, subnet_id: int, emission_budget: int) -> EpochResult:
        return self._run(subnet_id, emission_budget, SparseMatrix)

    def run_epoch(self, subnet_id: int, emission_budget: int, backend: str = "dense") -> EpochResult:
        try:
            matrix_cls = BACKENDS[backend]
        except KeyError:
            raise ConfigurationError(f"Unknown backend {backend!r}; expected one of {sorted(BACKENDS)}") from None
        return self._run(subnet_id, emission_budget, matrix_cls)

    def _run(self, subnet_id: int, emission_budget: int, matrix_cls: Type[Matrix]) -> EpochResult:
        if emission_budget < 0:
            raise ConfigurationError(f"emission_budget must be >= 0, got {emission_budget}")

        with self._lock(subnet_id):
            inputs = EpochInputs.from_store(self.store, subnet_id).validate()
            bt.logging.info(
                f"Epoch start | subnet={subnet_id} n={inputs.n} block={inputs.current_block} "
                f"backend={matrix_cls.__name__} budget={emission_budget}"
            )
            result = evaluate_epoch(inputs, emission_budget, matrix_cls)

            if self.cross_check:
                other_cls = SparseMatrix if matrix_cls is DenseMatrix else DenseMatrix
                other = evaluate_epoch(inputs, emission_budget, other_cls)
                if other != result:
                    bt.logging.error(f"Dense and sparse evaluators disagree on subnet {subnet_id}; not committing")
                    raise InvariantViolation(f"dense/sparse divergence on subnet {subnet_id}")

            self.store.put_bonds(subnet_id, result.bonds)
            self.store.set_validator_permit(subnet_id, result.validator_permit)
            self.store.put_epoch_outputs(subnet_id, result.outputs())
            bt.logging.info(
                f"Epoch committed | subnet={subnet_id} emitted={sum(result.emission)} "
                f"residual={result.residual} permits={sum(result.validator_permit)}"
            )
            return result

    def reset_bonds_column(self, subnet_id: int, node_id: int) -> None:
        """Zero every bond held in server ``node_id``; gated by ``bonds_reset_enabled``."""
        with self._lock(subnet_id):
            hp = self.store.get_hyperparameters(subnet_id)
            if not hp.bonds_reset_enabled:
                raise BondsResetDisabled(f"bonds reset is disabled on subnet {subnet_id}")
            bonds = self.store.get_bonds(subnet_id)
            n = len(bonds)
            if not 0 <= node_id < n:
                raise ConfigurationError(f"node_id {node_id} outside [0, {n})")
            cleared = reset_bonds_column(SparseMatrix.from_rows(n, bonds), node_id)
            self.store.put_bonds(subnet_id, cleared.to_rows())
            bt.logging.info(f"Bonds column reset | subnet={subnet_id} node={node_id}")

