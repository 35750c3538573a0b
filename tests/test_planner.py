from decimal import Decimal

from config import SolverConfig
from formula import Transaction
from planner import (
    STRATEGY_EXHAUSTIVE,
    STRATEGY_PRIORITY,
    STRATEGY_SINGLE,
    AxisOrder,
    PriorityOrder,
    feasible_quantity_window,
    plan_search,
    quantity_axis,
    walk_order,
)


REFERENCE = Transaction.of(50000, 20, 15000)


def _config(**overrides) -> SolverConfig:
    values = dict(
        reference=REFERENCE,
        target=108350,
        tolerance=0,
        price_min=45000,
        price_max=55000,
        quantity_min=10,
        quantity_max=30,
        discount_min=13500,
        discount_max=16500,
    )
    values.update(overrides)
    return SolverConfig(**values)


def _values(order) -> list:
    return [int(v) for v in order]


def test_axis_order_ascending_without_center() -> None:
    axis = AxisOrder(Decimal(1), Decimal(5), Decimal(1))
    assert _values(axis) == [1, 2, 3, 4, 5]
    assert len(axis) == 5


def test_axis_order_walks_outward_ties_to_lower() -> None:
    axis = AxisOrder.centered(Decimal(1), Decimal(5), Decimal(1), Decimal(3))
    assert _values(axis) == [3, 2, 4, 1, 5]


def test_axis_order_falls_back_to_midpoint() -> None:
    axis = AxisOrder.centered(Decimal(1), Decimal(4), Decimal(1), Decimal(40))
    assert axis.center == Decimal("2.5")
    assert _values(axis) == [2, 3, 1, 4]


def test_axis_order_matches_stable_sort_by_distance() -> None:
    lo, hi, step, center = Decimal(0), Decimal(30000), Decimal(100), Decimal(12345)
    axis = AxisOrder.centered(lo, hi, step, center)
    ascending = list(AxisOrder(lo, hi, step))
    assert list(axis) == sorted(ascending, key=lambda v: abs(v - center))


def test_axis_order_is_restartable() -> None:
    axis = AxisOrder.centered(Decimal(1), Decimal(9), Decimal(2), Decimal(5))
    assert list(axis) == list(axis)


def test_priority_order_is_cartesian_outer_slowest() -> None:
    order = PriorityOrder(
        AxisOrder(Decimal(1), Decimal(2), Decimal(1)),
        AxisOrder(Decimal(10), Decimal(30), Decimal(10)),
    )
    assert len(order) == 6
    assert [(int(a), int(b)) for a, b in order] == [
        (1, 10), (1, 20), (1, 30), (2, 10), (2, 20), (2, 30),
    ]


def test_plan_single_when_two_dimensions_locked() -> None:
    plan = plan_search(_config(price_min=50000, price_max=50000, discount_min=0, discount_max=0))
    assert plan.strategy == STRATEGY_SINGLE
    assert plan.solve_for == "quantity"

    plan = plan_search(_config(price_min=50000, price_max=50000, quantity_min=20, quantity_max=20))
    assert (plan.strategy, plan.solve_for) == (STRATEGY_SINGLE, "discount")

    plan = plan_search(_config(quantity_min=20, quantity_max=20, discount_min=0, discount_max=0))
    assert (plan.strategy, plan.solve_for) == (STRATEGY_SINGLE, "price")


def test_plan_exhaustive_for_small_walk() -> None:
    plan = plan_search(_config())
    assert plan.strategy == STRATEGY_EXHAUSTIVE
    assert plan.solve_for == "price"
    assert plan.estimate == 21 * 31
    assert not plan.ordered


def test_plan_priority_above_threshold() -> None:
    plan = plan_search(_config(discount_min=0, discount_max=30000))
    assert plan.estimate == 21 * 301
    assert plan.strategy == STRATEGY_PRIORITY
    assert plan.ordered


def test_plan_solves_discount_when_price_locked() -> None:
    plan = plan_search(_config(price_min=50000, price_max=50000))
    assert plan.solve_for == "discount"
    assert plan.locked == ("price",)


def test_priority_walk_starts_at_reference() -> None:
    config = _config(discount_min=0, discount_max=30000)
    first = next(iter(walk_order(config, plan_search(config))))
    assert first == (Decimal(20), Decimal(15000))


def test_feasible_quantity_window() -> None:
    config = _config()
    window = feasible_quantity_window(config, Decimal(15000), Decimal(15000))
    assert window.contains(Decimal(20))
    assert window.contains(Decimal(18))
    assert not window.contains(Decimal(10))
    assert not window.contains(Decimal(30))


def test_feasible_quantity_window_edges() -> None:
    open_above = feasible_quantity_window(_config(price_min=0), Decimal(0), Decimal(0))
    assert open_above.hi is None
    assert open_above.contains(Decimal(10 ** 9))

    assert feasible_quantity_window(_config(price_min=0, price_max=0), Decimal(0), Decimal(0)) is None


def test_price_locked_walk_orders_quantity_like_any_other_walk() -> None:
    small = _config(price_min=50000, price_max=50000)
    assert (plan_search(small).strategy, plan_search(small).solve_for) == (STRATEGY_EXHAUSTIVE, "discount")
    assert int(next(iter(quantity_axis(small, plan_search(small))))) == 10

    large = _config(price_min=50000, price_max=50000, discount_min=0, discount_max=30000)
    plan = plan_search(large)
    assert (plan.strategy, plan.solve_for) == (STRATEGY_PRIORITY, "discount")
    assert int(next(iter(quantity_axis(large, plan)))) == 20


def test_discount_locked_goes_through_price_walk() -> None:
    config = _config(discount_min=15000, discount_max=15000)
    plan = plan_search(config)
    assert (plan.strategy, plan.solve_for) == (STRATEGY_EXHAUSTIVE, "price")
    assert plan.locked == ("discount",)
    assert len(walk_order(config, plan)) == 21
