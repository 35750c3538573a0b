"""
Search planning: which dimension to solve, in which order to walk the
others, and which quantities cannot possibly reach the target.

STRATEGY:
- single      two or more dimensions locked. Exactly one pair of known
              values exists; the third is solved once.
- exhaustive  walk the free dimensions in natural (ascending) grid order.
              Used when the combination estimate is small.
- priority    walk each free dimension outward from its centre (the
              reference value, or the interval midpoint when the reference
              lies outside the range). Combinations near the reference come
              first, so early termination on perfect matches cuts the walk
              far short of full enumeration.

Walked dimensions are quantity (outer) and discount (inner); price is
solved. With price locked, only quantity is walked and discount is solved.

PRUNING: for a fixed discount band, a quantity q can only produce an output
inside [target - tol, target + tol] for some price in [price_min, price_max]
if q lies in
    [ (base(target - tol) + d_min) / price_max ,
      (base(target + tol) + d_max) / price_min ]
where base(t) = t / 0.11. Quantities outside this window, widened by
PRUNE_SLACK_STEPS quantity steps, are skipped before any evaluation.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR
from typing import Iterator, Optional, Tuple

from config import SolverConfig, estimate_combinations
from formula import required_base
from precision import axis_count, axis_value, decimal_context

# Above this many combinations the walk switches to priority order.
PRIORITY_THRESHOLD = 5000

# Widening of the analytic quantity window, in quantity steps. Empirical:
# the window itself is exact, the slack only absorbs rounding at its edges.
PRUNE_SLACK_STEPS = 1

STRATEGY_SINGLE = "single"
STRATEGY_EXHAUSTIVE = "exhaustive"
STRATEGY_PRIORITY = "priority"


@dataclass
class SearchPlan:
    """How one shard walks its configuration."""
    strategy: str
    solve_for: str            # "price", "discount" or "quantity"
    estimate: int             # (quantity × discount) combinations
    locked: Tuple[str, ...]   # names of locked dimensions

    @property
    def ordered(self) -> bool:
        return self.strategy == STRATEGY_PRIORITY


def plan_search(config: SolverConfig, threshold: int = PRIORITY_THRESHOLD) -> SearchPlan:
    locked = tuple(
        dim for dim, is_locked in (
            ("price", config.price_locked),
            ("quantity", config.quantity_locked),
            ("discount", config.discount_locked),
        ) if is_locked
    )
    estimate = estimate_combinations(config)

    if config.price_locked and config.discount_locked:
        return SearchPlan(STRATEGY_SINGLE, "quantity", estimate, locked)
    if config.price_locked and config.quantity_locked:
        return SearchPlan(STRATEGY_SINGLE, "discount", estimate, locked)
    if config.quantity_locked and config.discount_locked:
        return SearchPlan(STRATEGY_SINGLE, "price", estimate, locked)

    solve_for = "discount" if config.price_locked else "price"
    strategy = STRATEGY_PRIORITY if estimate > threshold else STRATEGY_EXHAUSTIVE
    return SearchPlan(strategy, solve_for, estimate, locked)


class AxisOrder:
    """
    Finite, restartable ordering of one grid axis.

    Without a centre the points come in ascending order. With a centre they
    come by increasing distance from it, ties towards the lower value; this
    is the order a stable sort of the ascending axis by |value - centre|
    would produce, generated with two cursors instead of a sorted copy.
    """

    def __init__(self, lo: Decimal, hi: Decimal, step: Decimal, center: Optional[Decimal] = None):
        self.lo = lo
        self.step = step
        self.count = axis_count(lo, hi, step)
        self.center = center

    @classmethod
    def centered(cls, lo: Decimal, hi: Decimal, step: Decimal, reference: Decimal) -> "AxisOrder":
        if lo <= reference <= hi:
            center = reference
        else:
            with decimal_context():
                center = (lo + hi) / 2
        return cls(lo, hi, step, center)

    def __len__(self) -> int:
        return self.count

    def __iter__(self) -> Iterator[Decimal]:
        if self.center is None or self.count <= 1:
            for i in range(self.count):
                yield axis_value(self.lo, self.step, i)
            return

        with decimal_context():
            below = int(((self.center - self.lo) / self.step).to_integral_value(rounding=ROUND_FLOOR))
        below = min(max(below, 0), self.count - 1)
        above = below + 1
        while below >= 0 or above < self.count:
            if below < 0:
                yield axis_value(self.lo, self.step, above)
                above += 1
                continue
            if above >= self.count:
                yield axis_value(self.lo, self.step, below)
                below -= 1
                continue
            v_below = axis_value(self.lo, self.step, below)
            v_above = axis_value(self.lo, self.step, above)
            with decimal_context():
                closer_below = abs(self.center - v_below) <= abs(v_above - self.center)
            if closer_below:
                yield v_below
                below -= 1
            else:
                yield v_above
                above += 1


class PriorityOrder:
    """Cartesian product of two axis orders, outer axis varying slowest."""

    def __init__(self, outer: AxisOrder, inner: AxisOrder):
        self.outer = outer
        self.inner = inner

    def __len__(self) -> int:
        return len(self.outer) * len(self.inner)

    def __iter__(self) -> Iterator[Tuple[Decimal, Decimal]]:
        for a in self.outer:
            for b in self.inner:
                yield a, b


def quantity_axis(config: SolverConfig, plan: SearchPlan) -> AxisOrder:
    if plan.ordered:
        return AxisOrder.centered(
            config.quantity_min, config.quantity_max, config.quantity_step,
            config.reference.quantity,
        )
    return AxisOrder(config.quantity_min, config.quantity_max, config.quantity_step)


def discount_axis(config: SolverConfig, plan: SearchPlan) -> AxisOrder:
    if plan.ordered:
        return AxisOrder.centered(
            config.discount_min, config.discount_max, config.discount_step,
            config.reference.discount,
        )
    return AxisOrder(config.discount_min, config.discount_max, config.discount_step)


def walk_order(config: SolverConfig, plan: SearchPlan) -> PriorityOrder:
    """(quantity, discount) pairs to visit when price is the solved dimension."""
    return PriorityOrder(quantity_axis(config, plan), discount_axis(config, plan))


@dataclass(frozen=True)
class QuantityWindow:
    lo: Decimal
    hi: Optional[Decimal]     # None: unbounded above

    def contains(self, quantity: Decimal) -> bool:
        if quantity < self.lo:
            return False
        return self.hi is None or quantity <= self.hi


def feasible_quantity_window(
    config: SolverConfig,
    discount_min: Decimal,
    discount_max: Decimal,
    slack_steps: int = PRUNE_SLACK_STEPS,
) -> Optional[QuantityWindow]:
    """
    Quantities that can land within tolerance for some price in the
    configured price bounds and some discount in [discount_min, discount_max].

    Returns None when no positive price is allowed at all.
    """
    if config.price_max <= 0:
        return None
    with decimal_context():
        low_target = max(config.target - config.tolerance, Decimal(0))
        high_target = config.target + config.tolerance
        slack = config.quantity_step * slack_steps
        lo = (required_base(low_target) + discount_min) / config.price_max - slack
        if config.price_min > 0:
            hi = (required_base(high_target) + discount_max) / config.price_min + slack
        else:
            hi = None
    return QuantityWindow(lo, hi)
