import random
from concurrent.futures import ThreadPoolExecutor

import pytest

from yumacore.epoch import driver
from yumacore.epoch.bonds import compute_bonds, static_rate
from yumacore.epoch.driver import EpochEngine, EpochInputs, check_bonds, evaluate_epoch
from yumacore.errors import BondsResetDisabled, ConfigurationError, InvariantViolation, UnknownSubnetError
from yumacore.math.fixed import HALF, ONE, fixed_proportion_to_u16, mul
from yumacore.math.matrix import DenseMatrix, SparseMatrix
from yumacore.storage.store import InMemorySubnetStore
from yumacore.utils.config import SubnetHyperparameters

from conftest import FULL, build_state

RATE = static_rate(900_000)
BUDGET = 1_000_000_000

HYPERPARAMETER_VARIANTS = [
    SubnetHyperparameters(),
    SubnetHyperparameters(max_allowed_validators=3, validator_min_stake=100),
    SubnetHyperparameters(liquid_alpha_enabled=True, alpha_low=6554, alpha_high=19661),
    SubnetHyperparameters(bonds_penalty=30000, activity_cutoff=40),
    SubnetHyperparameters(yuma3_enabled=True, liquid_alpha_enabled=True),
    SubnetHyperparameters(kappa=50000, bonds_moving_average=500_000),
]


def bond(store, i, j, subnet_id=1):
    return dict(store.get_bonds(subnet_id)[i]).get(j, 0)


def random_state(rng, hp):
    n = rng.randint(2, 10)
    state = build_state(
        stake=[rng.choice([0, rng.randint(1, 1000)]) for _ in range(n)],
        weights={
            i: [(j, rng.randint(1, FULL)) for j in range(n) if rng.random() < 0.5]
            for i in range(n)
        },
        hyperparameters=hp,
        block=100,
    )
    state.last_update = [rng.randint(0, 100) for _ in range(n)]
    state.block_at_registration = [rng.randint(0, 100) for _ in range(n)]
    state.bonds = [[(j, rng.randint(1, FULL // n)) for j in range(n) if rng.random() < 0.3] for _ in range(n)]
    return state


def test_single_self_weighting_node_earns_nothing_from_consensus(make_store):
    store = make_store([1], {0: [(0, FULL)]})
    result = EpochEngine(store).run_epoch_dense(1, 1000)
    assert result.rank == [0]
    assert result.trust == [0]
    assert result.consensus == [0]
    assert result.incentive == [0]
    assert result.dividends == [0]
    assert result.nodes == [(0, 0, 0)]
    assert result.stake_fallback
    assert result.emission == [1000]


@pytest.mark.parametrize("backend", ["dense", "sparse"])
def test_equal_self_weighting_population_splits_by_stake(make_store, backend):
    store = make_store([1] * 10, {i: [(i, FULL)] for i in range(10)})
    result = EpochEngine(store).run_epoch(1, BUDGET, backend=backend)
    assert result.emission == [99_999_999] * 10
    assert result.residual == 10
    assert result.dividend_emission == result.emission


@pytest.mark.parametrize("seed, hp", list(enumerate(HYPERPARAMETER_VARIANTS)))
def test_dense_and_sparse_agree_over_epochs(seed, hp):
    rng = random.Random(seed)
    for _ in range(5):
        state = random_state(rng, hp)
        dense_store = InMemorySubnetStore({1: state})
        sparse_store = InMemorySubnetStore({1: state})
        dense, sparse = EpochEngine(dense_store), EpochEngine(sparse_store)
        for epoch in range(4):
            assert dense.run_epoch_dense(1, BUDGET) == sparse.run_epoch_sparse(1, BUDGET)
            assert dense_store.state(1).to_dict() == sparse_store.state(1).to_dict()
            for store in (dense_store, sparse_store):
                store.set_block(1, 100 + 20 * (epoch + 1))


def test_cross_check_passes_for_consistent_backings():
    state = random_state(random.Random(3), SubnetHyperparameters())
    store = InMemorySubnetStore({1: state})
    result = EpochEngine(store, cross_check=True).run_epoch_sparse(1, BUDGET)
    assert store.get_bonds(1) == result.bonds


def test_divergence_aborts_without_committing(make_store, monkeypatch):
    store = make_store([3, 1, 0, 0], {0: [(2, FULL)], 1: [(3, FULL)]})
    monkeypatch.setattr(SparseMatrix, "clip_cols", lambda self, limits: self)
    with pytest.raises(InvariantViolation):
        EpochEngine(store, cross_check=True).run_epoch_dense(1, BUDGET)
    assert store.get_bonds(1) == [[], [], [], []]
    assert store.get_epoch_outputs(1) == {}
    assert store.state(1).validator_permit == [False] * 4


def test_conservation(make_store):
    store = make_store(
        [10, 20, 0, 0, 0],
        {0: [(2, FULL), (3, FULL // 2)], 1: [(2, FULL // 3), (3, FULL), (4, FULL // 5)]},
    )
    engine = EpochEngine(store)
    for _ in range(3):
        result = engine.run_epoch_dense(1, BUDGET)
        n = len(result.emission)
        assert 65535 - 2 * n <= sum(result.pruning_scores) <= 65535
        assert 65535 - 2 * n <= sum(result.incentive) <= 65535
        assert 65535 - 2 * n <= sum(result.dividends) <= 65535
        assert sum(result.emission) + result.residual == BUDGET
        assert 0 <= result.residual <= 2 * n
        for total, server, validator in zip(result.emission, result.incentive_emission, result.dividend_emission):
            assert server + validator == total


def test_bonds_converge_monotonically_to_weight_share(make_store):
    store = make_store([1, 0, 0], {0: [(1, FULL), (2, FULL)]})
    engine = EpochEngine(store)
    history = []
    for _ in range(120):
        engine.run_epoch_dense(1, BUDGET)
        history.append((bond(store, 0, 1), bond(store, 0, 2)))

    for (prev, _), (cur, _) in zip(history, history[1:]):
        assert prev <= cur <= 32767
    assert all(b < a for (b, _), (a, _) in zip(history[:20], history[1:21]))
    assert history[-1][0] == history[-1][1]
    assert history[-1][0] >= 32767 - 20


def switcher_bonds(make_store, hp):
    """Bonds in server 4 after validators 0, 1 and 2 move to it at epochs 2, 4 and 6."""
    store = make_store([8, 1, 1, 0, 0], {v: [(3, FULL)] for v in range(3)}, hyperparameters=hp)
    engine = EpochEngine(store)
    switch_at = {2: 0, 4: 1, 6: 2}
    for epoch in range(9):
        store.set_block(1, epoch * 100)
        if epoch in switch_at:
            store.set_weights(1, switch_at[epoch], [(4, FULL)])
        engine.run_epoch_dense(1, BUDGET)
    return tuple(bond(store, v, 4) for v in range(3))


def test_liquid_alpha_widens_the_lead_of_earlier_switchers(make_store):
    static = switcher_bonds(make_store, SubnetHyperparameters())
    liquid = switcher_bonds(
        make_store, SubnetHyperparameters(liquid_alpha_enabled=True, alpha_low=6554, alpha_high=12491)
    )
    for first, second, last in (static, liquid):
        assert first > second > last > 0
    assert liquid[0] - liquid[2] > static[0] - static[2] + FULL // 50


def test_leaving_liquid_alpha_keeps_epochs_running(make_store):
    hp = SubnetHyperparameters(kappa=13107, liquid_alpha_enabled=True, alpha_low=6554, alpha_high=58982)
    store = make_store([7, 3, 0, 0], {0: [(2, FULL)], 1: [(3, FULL)]}, hyperparameters=hp)
    store.put_bonds(1, [[], [(2, 58982)], [], []])
    engine = EpochEngine(store)

    engine.run_epoch_dense(1, BUDGET)
    held = dict(store.get_bonds(1)[1])
    assert held[3] > held[2] > 0
    assert FULL - 3 <= sum(held.values()) <= FULL

    store.set_hyperparameters(1, SubnetHyperparameters())
    for _ in range(3):
        engine.run_epoch_sparse(1, BUDGET)
    assert 0 < sum(v for _, v in store.get_bonds(1)[1]) <= FULL


def test_stored_rows_above_one_are_rescaled_outside_yuma3(make_store):
    store = make_store([1, 1, 0, 0], {0: [(2, FULL)], 1: [(3, FULL)]})
    store.put_bonds(1, [[(2, 60000), (3, 60000)], [], [], []])
    result = EpochEngine(store).run_epoch_dense(1, BUDGET)
    row = dict(result.bonds[0])
    assert row[2] > row[3] > 0
    assert sum(row.values()) <= FULL


def test_check_bonds_domain():
    check_bonds(SparseMatrix.from_rows(2, [[(0, HALF + 1), (1, HALF + 1)], []]), row_bounded=True)
    check_bonds(SparseMatrix.from_rows(2, [[(0, ONE), (1, ONE)], []]), row_bounded=False)
    with pytest.raises(InvariantViolation):
        check_bonds(DenseMatrix.from_rows(2, [[(1, ONE + 1)], []]), row_bounded=False)
    with pytest.raises(InvariantViolation):
        check_bonds(SparseMatrix.from_rows(2, [[], [(0, -1)]]), row_bounded=False)
    with pytest.raises(InvariantViolation):
        check_bonds(DenseMatrix.from_rows(2, [[(0, ONE), (1, ONE)], []]), row_bounded=True)


@pytest.mark.parametrize("bad_value", [ONE + 1, ONE], ids=["entry-above-one", "row-above-one"])
def test_bonds_outside_domain_abort_without_committing(make_store, monkeypatch, bad_value):
    store = make_store([1, 0, 0, 0], {0: [(2, FULL), (3, FULL)]})

    def corrupted(**kwargs):
        out = compute_bonds(**kwargs)
        out.bonds = out.bonds.zip_with([], lambda i, j, v: bad_value)
        return out

    monkeypatch.setattr(driver, "compute_bonds", corrupted)
    with pytest.raises(InvariantViolation):
        EpochEngine(store).run_epoch_dense(1, BUDGET)
    assert store.get_bonds(1) == [[], [], [], []]
    assert store.get_epoch_outputs(1) == {}
    assert store.state(1).validator_permit == [False] * 4


def test_inputs_are_read_in_one_snapshot(make_store, monkeypatch):
    store = make_store([3, 1], {0: [(1, FULL)]}, block=7)

    def unexpected(subnet_id):
        raise AssertionError("per-field getter used for epoch inputs")

    for name in (
        "get_stake",
        "get_weights",
        "get_bonds",
        "get_last_update",
        "get_block_at_registration",
        "get_current_block",
        "get_hyperparameters",
    ):
        monkeypatch.setattr(store, name, unexpected)
    inputs = EpochInputs.from_store(store, 1)
    assert inputs.stake == [3, 1]
    assert inputs.weights == [[(1, FULL)], []]
    assert inputs.current_block == 7


def test_liquid_alpha_with_equal_bounds_matches_static_rate(make_store):
    weights = {0: [(2, FULL)], 1: [(2, FULL // 2), (3, FULL)]}
    static = make_store([5, 3, 0, 0], weights, hyperparameters=SubnetHyperparameters(bonds_moving_average=0))
    liquid = make_store(
        [5, 3, 0, 0],
        weights,
        hyperparameters=SubnetHyperparameters(liquid_alpha_enabled=True, alpha_low=65535, alpha_high=65535),
    )
    for _ in range(3):
        assert EpochEngine(static).run_epoch_dense(1, BUDGET) == EpochEngine(liquid).run_epoch_dense(1, BUDGET)


def test_bonds_reset_starts_column_cold(make_store):
    store = make_store(
        [1, 0, 0],
        {0: [(1, FULL), (2, FULL)]},
        hyperparameters=SubnetHyperparameters(bonds_reset_enabled=True),
    )
    engine = EpochEngine(store)
    for _ in range(3):
        engine.run_epoch_dense(1, BUDGET)
    kept = bond(store, 0, 2)

    engine.reset_bonds_column(1, 1)
    assert bond(store, 0, 1) == 0
    assert bond(store, 0, 2) == kept

    engine.run_epoch_sparse(1, BUDGET)
    assert bond(store, 0, 1) == fixed_proportion_to_u16(mul(RATE, HALF))
    assert bond(store, 0, 2) > bond(store, 0, 1)


def test_bonds_reset_is_gated(make_store):
    store = make_store([1, 0], {0: [(1, FULL)]})
    with pytest.raises(BondsResetDisabled):
        EpochEngine(store).reset_bonds_column(1, 1)
    store.set_hyperparameters(1, SubnetHyperparameters(bonds_reset_enabled=True))
    with pytest.raises(ConfigurationError):
        EpochEngine(store).reset_bonds_column(1, 5)


def test_stale_validator_contributes_nothing_but_keeps_history(make_store):
    store = make_store([1, 1, 0, 0], {0: [(2, FULL)], 1: [(3, FULL)]})
    engine = EpochEngine(store)
    engine.run_epoch_dense(1, BUDGET)
    before = bond(store, 1, 3)
    assert before == fixed_proportion_to_u16(RATE)

    store.set_block(1, 10_000)
    store.set_weights(1, 0, [(2, FULL)])
    result = engine.run_epoch_dense(1, BUDGET)

    assert result.rank[3] == 0
    assert result.trust[3] == 0
    assert result.incentive[3] == 0
    assert result.dividends[1] == 0
    assert result.validator_permit[1]
    assert 0 < bond(store, 1, 3) < before


def test_reused_server_slot_drops_outdated_weights_and_bonds(make_store):
    store = make_store([1, 0, 0], {0: [(1, FULL), (2, FULL)]})
    engine = EpochEngine(store)
    engine.run_epoch_dense(1, BUDGET)
    assert bond(store, 0, 1) > 0

    store.set_block(1, 200)
    store.replace_neuron(1, 1)
    result = engine.run_epoch_dense(1, BUDGET)
    assert result.rank[1] == 0
    assert result.incentive[1] == 0
    assert bond(store, 0, 1) == 0
    assert bond(store, 0, 2) > 0

    store.set_block(1, 300)
    store.set_weights(1, 0, [(1, FULL), (2, FULL)])
    engine.run_epoch_dense(1, BUDGET)
    assert bond(store, 0, 1) == fixed_proportion_to_u16(mul(RATE, HALF))


def test_permits_limit_raters_and_clear_bonds(make_store):
    store = make_store(
        [5, 5, 3],
        {0: [(2, FULL)], 1: [(2, FULL)], 2: [(0, FULL)]},
        hyperparameters=SubnetHyperparameters(max_allowed_validators=2),
    )
    store.put_bonds(1, [[], [], [(0, 1000)]])
    result = EpochEngine(store).run_epoch_sparse(1, BUDGET)
    assert result.validator_permit == [True, True, False]
    assert result.rank[0] == 0
    assert store.get_bonds(1)[2] == []
    assert store.state(1).validator_permit == [True, True, False]
    assert store.get_epoch_outputs(1) == result.outputs()


def test_engine_input_errors(make_store):
    engine = EpochEngine(make_store([1, 1]))
    with pytest.raises(ConfigurationError):
        engine.run_epoch_dense(1, -1)
    with pytest.raises(ConfigurationError):
        engine.run_epoch(1, 10, backend="gpu")
    with pytest.raises(UnknownSubnetError):
        engine.run_epoch_sparse(2, 10)


def test_subnets_run_independently_in_parallel():
    rng = random.Random(11)
    states = {subnet_id: random_state(rng, SubnetHyperparameters()) for subnet_id in range(4)}
    engine = EpochEngine(InMemorySubnetStore(states))
    assert engine._lock(1) is engine._lock(1)
    assert engine._lock(1) is not engine._lock(2)

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = dict(zip(states, pool.map(lambda sid: engine.run_epoch_dense(sid, BUDGET), states)))

    for subnet_id, state in states.items():
        expected = evaluate_epoch(EpochInputs.from_store(InMemorySubnetStore({0: state}), 0), BUDGET, DenseMatrix)
        assert results[subnet_id] == expected
