from dataclasses import replace
from decimal import Decimal

import pytest

import solver as solver_module
from config import SolverConfig
from errors import CancellationSignal
from formula import Transaction
from planner import STRATEGY_PRIORITY, QuantityWindow
from solver import (
    CancelToken,
    ShardWalk,
    canonical_key,
    create_result,
    dedupe_results,
    rank_results,
    run_shard,
)


REFERENCE = Transaction.of(50000, 20, 15000)
TARGET = Decimal("108350")


def _scenario_a(**overrides) -> SolverConfig:
    values = dict(reference=REFERENCE, target=TARGET, tolerance=0, top_n=50)
    values.update(overrides)
    return SolverConfig.from_variance(**values)


def _priority_config(**overrides) -> SolverConfig:
    values = dict(
        reference=REFERENCE,
        target=TARGET,
        tolerance=0,
        price_min=40000,
        price_max=60000,
        quantity_min=10,
        quantity_max=30,
        discount_min=0,
        discount_max=30000,
        top_n=10,
    )
    values.update(overrides)
    return SolverConfig(**values)


def test_reference_triple_found_with_zero_score() -> None:
    results = run_shard(_scenario_a())
    assert results
    best = results[0]
    assert best.transaction == REFERENCE
    assert best.score == 0
    assert best.difference == 0
    assert best.is_perfect


def test_priority_walk_terminates_early_on_perfect_matches() -> None:
    config = _priority_config()
    walk = ShardWalk(config)
    assert walk.plan.strategy == STRATEGY_PRIORITY

    results = walk.run()
    assert len(results) == config.top_n
    assert all(r.is_perfect for r in results)
    assert results[0].transaction == REFERENCE
    assert walk.visited < walk.plan.estimate


def test_locked_price_and_quantity_with_negative_discount_is_empty() -> None:
    config = SolverConfig(
        reference=REFERENCE,
        target=200000,
        tolerance=1,
        price_min=50000,
        price_max=50000,
        quantity_min=20,
        quantity_max=20,
        discount_min=0,
        discount_max=1000000,
    )
    assert run_shard(config) == []


def test_results_respect_tolerance_bounds_and_invariants() -> None:
    config = _priority_config(tolerance=50, top_n=200, discount_min=14000, discount_max=16000)
    results = run_shard(config)
    assert results
    for r in results:
        tx = r.transaction
        assert r.difference <= config.tolerance
        assert config.price_min <= tx.unit_price <= config.price_max
        assert config.quantity_min <= tx.quantity <= config.quantity_max
        assert config.discount_min <= tx.discount <= config.discount_max
        assert 0 <= tx.discount < tx.unit_price * tx.quantity


def test_results_are_unique_ordered_and_truncated() -> None:
    config = _priority_config(tolerance=50, top_n=25, discount_min=14000, discount_max=16000)
    results = run_shard(config)
    assert len(results) <= config.top_n
    assert len({r.key for r in results}) == len(results)
    for prev, cur in zip(results, results[1:]):
        assert prev.is_perfect or not cur.is_perfect
        if prev.is_perfect == cur.is_perfect:
            assert prev.score <= cur.score


def test_callbacks_report_results_and_final_progress() -> None:
    seen = []
    progress = []
    results = run_shard(
        _scenario_a(),
        on_progress=lambda fraction, estimate: progress.append((fraction, estimate)),
        on_result=seen.append,
    )
    assert len(seen) >= len(results)
    assert progress[-1] == (1.0, 31)


def test_cancelled_token_unwinds() -> None:
    token = CancelToken()
    token.cancel()
    with pytest.raises(CancellationSignal):
        run_shard(_scenario_a(), cancel=token)


def test_canonical_key_rounds_money_to_cents() -> None:
    a = Transaction.of("50000.001", 20, "15000.004")
    b = Transaction.of(50000, 20, 15000)
    assert canonical_key(a) == canonical_key(b)


def test_dedupe_keeps_first_occurrence() -> None:
    config = _scenario_a()
    first = create_result(REFERENCE, config)
    again = create_result(Transaction.of("50000.004", 20, 15000), config)
    other = create_result(Transaction.of(50000, 20, 15100), config)
    assert dedupe_results([first, again, other]) == [first, other]


def test_score_and_metadata() -> None:
    config = _scenario_a(alpha=2, beta=3)
    result = create_result(Transaction.of(50000, 20, 15100), config)
    # base 984900 -> output 108339
    assert result.calculated == Decimal("108339")
    assert result.difference == Decimal("11")
    assert result.score == Decimal("11") + 3 * Decimal("100")
    assert result.metadata.discount_difference == Decimal("100")
    assert result.metadata.unit_price_difference == 0
    assert result.metadata.base == Decimal("984900")


def test_rank_puts_perfect_matches_first_then_score() -> None:
    config = _scenario_a(tolerance=1000)
    near = create_result(Transaction.of(50000, 20, 15100), config)
    perfect_far = create_result(Transaction.of(50500, 20, 25000), config)
    assert near.score < perfect_far.score
    assert rank_results([near, perfect_far], 10) == [perfect_far, near]
    assert rank_results([near, perfect_far], 1) == [perfect_far]


def test_rank_is_stable_on_equal_scores() -> None:
    config = _scenario_a(tolerance=1000)
    a = create_result(Transaction.of(50000, 20, 15100), config)
    b = replace(a, transaction=Transaction.of(50000, 21, 15100))
    assert rank_results([a, b], 10) == [a, b]
    assert rank_results([b, a], 10) == [b, a]


def _open_window(config, discount_min, discount_max, slack_steps=1):
    return QuantityWindow(Decimal(0), None)


@pytest.mark.parametrize(
    "overrides",
    [
        dict(tolerance=50, discount_min=14000, discount_max=16000),
        dict(tolerance=50, price_min=50000, price_max=50000),
        dict(tolerance=0, price_min=0, discount_min=14000, discount_max=16000),
    ],
)
def test_pruning_skips_pairs_without_losing_results(monkeypatch, overrides) -> None:
    config = _priority_config(top_n=100000, **overrides)
    pruned_walk = ShardWalk(config)
    pruned_results = pruned_walk.run()
    assert pruned_walk.pruned > 0

    monkeypatch.setattr(solver_module, "feasible_quantity_window", _open_window)
    full_walk = ShardWalk(config)
    full_results = full_walk.run()
    assert full_walk.pruned == 0

    assert pruned_results
    assert pruned_results == full_results
