from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from yumacore.storage.state import SubnetState
from yumacore.storage.store import InMemorySubnetStore
from yumacore.utils.config import SubnetHyperparameters

FULL = 65535


def build_state(
    stake: Sequence[int],
    weights: Optional[Dict[int, List[Tuple[int, int]]]] = None,
    hyperparameters: Optional[SubnetHyperparameters] = None,
    block: int = 0,
) -> SubnetState:
    """A subnet where every slot registered and last updated at block 0."""
    state = SubnetState.empty(len(stake), hyperparameters)
    state.stake = list(stake)
    state.current_block = block
    for uid, row in (weights or {}).items():
        state.weights[uid] = sorted(row)
    return state


@pytest.fixture
def make_store():
    def _make(stake, weights=None, hyperparameters=None, block=0, subnet_id=1):
        store = InMemorySubnetStore()
        store.add_subnet(subnet_id, build_state(stake, weights, hyperparameters, block))
        return store

    return _make
