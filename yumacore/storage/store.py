"""Storage collaborator the epoch engine reads inputs from and commits outputs to."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import bittensor as bt

from yumacore.errors import ConfigurationError, UnknownSubnetError
from yumacore.storage.state import OUTPUT_VECTORS, SubnetState, U16Rows
from yumacore.utils.config import SubnetHyperparameters


class SubnetStore(ABC):
    """Per-subnet state access. Getters return copies the caller may keep."""

    @abstractmethod
    def subnet_ids(self) -> List[int]:
        ...

    @abstractmethod
    def snapshot(self, subnet_id: int) -> SubnetState:
        """Every epoch input of ``subnet_id`` read at one instant."""

    @abstractmethod
    def get_stake(self, subnet_id: int) -> List[int]:
        ...

    @abstractmethod
    def get_weights(self, subnet_id: int) -> U16Rows:
        ...

    @abstractmethod
    def get_bonds(self, subnet_id: int) -> U16Rows:
        ...

    @abstractmethod
    def put_bonds(self, subnet_id: int, bonds: U16Rows) -> None:
        ...

    @abstractmethod
    def get_last_update(self, subnet_id: int) -> List[int]:
        ...

    @abstractmethod
    def get_block_at_registration(self, subnet_id: int) -> List[int]:
        ...

    @abstractmethod
    def get_hyperparameters(self, subnet_id: int) -> SubnetHyperparameters:
        ...

    @abstractmethod
    def get_current_block(self, subnet_id: int) -> int:
        ...

    @abstractmethod
    def set_validator_permit(self, subnet_id: int, permit: Sequence[bool]) -> None:
        ...

    @abstractmethod
    def put_epoch_outputs(self, subnet_id: int, outputs: Mapping[str, Sequence[int]]) -> None:
        ...


class InMemorySubnetStore(SubnetStore):
    """Dictionary-backed store; also the mutation surface tests and snapshots use."""

    def __init__(self, states: Optional[Mapping[int, SubnetState]] = None):
        self._states: Dict[int, SubnetState] = {}
        # Guards snapshots against the mutation methods below.
        self._mutex = threading.RLock()
        for subnet_id, state in (states or {}).items():
            self.add_subnet(subnet_id, state)

    def _state(self, subnet_id: int) -> SubnetState:
        try:
            return self._states[subnet_id]
        except KeyError:
            raise UnknownSubnetError(subnet_id) from None

    def state(self, subnet_id: int) -> SubnetState:
        with self._mutex:
            return self._state(subnet_id).copy()

    def snapshot(self, subnet_id: int) -> SubnetState:
        return self.state(subnet_id)

    def add_subnet(self, subnet_id: int, state: SubnetState) -> None:
        with self._mutex:
            self._states[subnet_id] = state.validate().copy()
        bt.logging.info(f"Registered subnet {subnet_id} | n={state.n}")

    def subnet_ids(self) -> List[int]:
        return sorted(self._states)

    def get_stake(self, subnet_id: int) -> List[int]:
        return list(self._state(subnet_id).stake)

    def get_weights(self, subnet_id: int) -> U16Rows:
        return [list(row) for row in self._state(subnet_id).weights]

    def get_bonds(self, subnet_id: int) -> U16Rows:
        return [list(row) for row in self._state(subnet_id).bonds]
    def put_bonds(self, subnet_id: int, bonds: U16Rows) -> None:
        with self._mutex:
            state = self._state(subnet_id)
            if len(bonds) != state.n:
                raise ConfigurationError(f"bonds has {len(bonds)} rows, expected {state.n}")
            state.bonds = [list(row) for row in bonds]

    def get_last_update(self, subnet_id: int) -> List[int]:
        return list(self._state(subnet_id).last_update)

    def get_block_at_registration(self, subnet_id: int) -> List[int]:
        return list(self._state(subnet_id).block_at_registration)

    def get_hyperparameters(self, subnet_id: int) -> SubnetHyperparameters:
        return self._state(subnet_id).hyperparameters

    def get_current_block(self, subnet_id: int) -> int:
        return self._state(subnet_id).current_block

    def set_validator_permit(self, subnet_id: int, permit: Sequence[bool]) -> None:
        with self._mutex:
            state = self._state(subnet_id)
            if len(permit) != state.n:
                raise ConfigurationError(f"validator_permit has {len(permit)} slots, expected {state.n}")
            state.validator_permit = list(permit)

    def put_epoch_outputs(self, subnet_id: int, outputs: Mapping[str, Sequence[int]]) -> None:
        with self._mutex:
            state = self._state(subnet_id)
            unknown = set(outputs) - set(OUTPUT_VECTORS)
            if unknown:
                raise ConfigurationError(f"Unknown epoch outputs: {sorted(unknown)}")
            state.outputs.update({name: list(values) for name, values in outputs.items()})

    def get_epoch_outputs(self, subnet_id: int) -> Dict[str, List[int]]:
        return {k: list(v) for k, v in self._state(subnet_id).outputs.items()}

    # Mutations made by the registration, staking and weight-setting subsystems.

    def set_hyperparameters(self, subnet_id: int, hyperparameters: SubnetHyperparameters) -> None:
        with self._mutex:
            self._state(subnet_id).hyperparameters = hyperparameters.validate()

    def set_block(self, subnet_id: int, block: int) -> None:
        with self._mutex:
            self._state(subnet_id).current_block = block

    def set_stake(self, subnet_id: int, stake: Sequence[int]) -> None:
        with self._mutex:
            state = self._state(subnet_id)
            if len(stake) != state.n:
                raise ConfigurationError(f"stake has {len(stake)} slots, expected {state.n}")
            state.stake = list(stake)

    def set_weights(
        self,
        subnet_id: int,
        uid: int,
        weights: Iterable[tuple[int, int]],
        block: Optional[int] = None,
    ) -> None:
        """Replace row ``uid`` and stamp its ``last_update`` (current block by default)."""
        row = sorted((int(j), int(v)) for j, v in weights if v)
        with self._mutex:
            state = self._state(subnet_id)
            for j, _ in row:
                if not 0 <= j < state.n:
                    raise ConfigurationError(f"weight target {j} outside [0, {state.n})")
            state.weights[uid] = row
            state.last_update[uid] = state.current_block if block is None else block

    def replace_neuron(self, subnet_id: int, uid: int, stake: int = 0, block: Optional[int] = None) -> None:
        """Reuse slot ``uid`` for a fresh registration.

        The slot's own weights are cleared; bonds others hold in it are left
        for the epoch's outdated masking to discard.
        """
        with self._mutex:
            state = self._state(subnet_id)
            at = state.current_block if block is None else block
            state.stake[uid] = stake
            state.weights[uid] = []
            state.block_at_registration[uid] = at
        bt.logging.info(f"Replaced neuron | subnet={subnet_id} uid={uid} block={at}")
