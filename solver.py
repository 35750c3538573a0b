"""
Shard search engine: walk, solve, deduplicate, filter, score.

ALGORITHM FOR ONE SHARD:
1. Plan the walk (planner.plan_search)
2. For each visited pair of known values:
   a. Skip quantities outside the analytic feasible window
   b. Solve the remaining dimension exactly (formula.solve_*)
   c. Expand to grid candidates: exact, rounded, rounded ± step
   d. For each candidate inside the bounds and not seen before:
      - discard invalid transactions silently
      - evaluate, keep it if |output - target| ≤ tolerance
3. Stop early once top_n perfect matches (difference == 0) exist
4. Rank: perfect matches first, then ascending score, discovery order on ties

Every PROGRESS_INTERVAL visited pairs the walk reports progress and checks
its CancelToken; a cancelled walk unwinds with CancellationSignal.
"""

import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, List, Optional, Set, Tuple

from config import SolverConfig
from errors import CancellationSignal
from formula import (
    Transaction,
    calculate_all,
    solve_discount,
    solve_price,
    solve_quantity,
    validate_transaction,
)
from planner import (
    STRATEGY_SINGLE,
    SearchPlan,
    feasible_quantity_window,
    plan_search,
    quantity_axis,
    walk_order,
)
from precision import decimal_context, grid_candidates, key_amount

# Visited pairs between two progress reports / cancellation checks.
PROGRESS_INTERVAL = 1000

# Progress is capped below 1.0 until the walk actually finishes.
PROGRESS_CEILING = 0.99

CanonicalKey = Tuple[Decimal, Decimal, Decimal]
ProgressCallback = Callable[[float, int], None]
ResultCallback = Callable[["SolverResult"], None]


class CancelToken:
    """
    Cooperative cancellation flag owned by one walk.

    Wraps any Event-like object, so a multiprocessing.Event can cancel a
    walk running in another process.
    """

    def __init__(self, event=None):
        self._event = event if event is not None else threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self):
        if self._event.is_set():
            raise CancellationSignal()


@dataclass(frozen=True)
class ResultMetadata:
    difference_percent: Decimal
    unit_price_difference: Decimal
    quantity_difference: Decimal
    discount_difference: Decimal
    base: Decimal
    other_value_base: Decimal


@dataclass(frozen=True)
class SolverResult:
    """One accepted transaction."""
    transaction: Transaction
    calculated: Decimal          # formula output
    difference: Decimal          # |calculated - target|
    score: Decimal               # lower is better
    metadata: ResultMetadata

    @property
    def is_perfect(self) -> bool:
        return self.difference == 0

    @property
    def key(self) -> CanonicalKey:
        return canonical_key(self.transaction)


def canonical_key(transaction: Transaction) -> CanonicalKey:
    """Rounded composite identifying a triple for deduplication."""
    return (
        key_amount(transaction.unit_price),
        transaction.quantity,
        key_amount(transaction.discount),
    )


def create_result(transaction: Transaction, config: SolverConfig) -> SolverResult:
    """Evaluate a transaction and attach score and metadata."""
    breakdown = calculate_all(transaction)
    ref = config.reference
    with decimal_context():
        difference = abs(breakdown.output - config.target)
        price_dev = transaction.unit_price - ref.unit_price
        discount_dev = transaction.discount - ref.discount
        score = difference + config.alpha * abs(price_dev) + config.beta * abs(discount_dev)
        percent = difference / config.target * 100 if config.target != 0 else Decimal(0)
        metadata = ResultMetadata(
            difference_percent=percent,
            unit_price_difference=price_dev,
            quantity_difference=transaction.quantity - ref.quantity,
            discount_difference=discount_dev,
            base=breakdown.base,
            other_value_base=breakdown.other_value_base,
        )
    return SolverResult(
        transaction=transaction,
        calculated=breakdown.output,
        difference=difference,
        score=score,
        metadata=metadata,
    )


def rank_results(results: List[SolverResult], top_n: int) -> List[SolverResult]:
    """
    Perfect matches first, then ascending score. sorted() is stable, so
    equal keys keep discovery order.
    """
    ranked = sorted(results, key=lambda r: (not r.is_perfect, r.score))
    return ranked[:top_n]


def dedupe_results(results: List[SolverResult]) -> List[SolverResult]:
    """First occurrence of each canonical key, order preserved."""
    seen: Set[CanonicalKey] = set()
    out = []
    for r in results:
        key = r.key
        if key in seen:
            continue
        seen.add(key)
        out.append(r)
    return out


class ShardWalk:
    """State of one shard's walk: dedup set, accumulated results, counters."""

    def __init__(
        self,
        config: SolverConfig,
        cancel: Optional[CancelToken] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_result: Optional[ResultCallback] = None,
        plan: Optional[SearchPlan] = None,
    ):
        self.config = config
        self.cancel = cancel or CancelToken()
        self.on_progress = on_progress
        self.on_result = on_result
        self.plan = plan or plan_search(config)

        self.seen: Set[CanonicalKey] = set()
        self.results: List[SolverResult] = []
        self.visited = 0
        self.evaluated = 0
        self.pruned = 0
        self.perfect_count = 0

    @property
    def done(self) -> bool:
        return self.perfect_count >= self.config.top_n

    # --- candidate handling ---

    def _accept(self, transaction: Transaction):
        key = canonical_key(transaction)
        if key in self.seen:
            return
        self.seen.add(key)

        if validate_transaction(transaction) is not None:
            return

        self.evaluated += 1
        result = create_result(transaction, self.config)
        if result.difference > self.config.tolerance:
            return

        self.results.append(result)
        if result.is_perfect:
            self.perfect_count += 1
        if self.on_result is not None:
            self.on_result(result)

    def _try_prices(self, quantity: Decimal, discount: Decimal):
        cfg = self.config
        exact = solve_price(cfg.target, quantity, discount)
        if exact is None:
            return
        for price in grid_candidates(exact, cfg.price_step):
            if price < cfg.price_min or price > cfg.price_max or price <= 0:
                continue
            self._accept(Transaction(price, quantity, discount))

    def _try_discounts(self, unit_price: Decimal, quantity: Decimal):
        cfg = self.config
        exact = solve_discount(cfg.target, unit_price, quantity)
        for discount in grid_candidates(exact, cfg.discount_step):
            if discount < cfg.discount_min or discount > cfg.discount_max:
                continue
            self._accept(Transaction(unit_price, quantity, discount))

    def _try_quantities(self, unit_price: Decimal, discount: Decimal):
        cfg = self.config
        exact = solve_quantity(cfg.target, unit_price, discount)
        if exact is None:
            return
        for quantity in grid_candidates(exact, cfg.quantity_step):
            if quantity < cfg.quantity_min or quantity > cfg.quantity_max or quantity <= 0:
                continue
            self._accept(Transaction(unit_price, quantity, discount))

    # --- walk ---

    def _checkpoint(self):
        self.visited += 1
        if self.visited % PROGRESS_INTERVAL == 0:
            self.cancel.check()
            if self.on_progress is not None:
                fraction = min(self.visited / max(self.plan.estimate, 1), PROGRESS_CEILING)
                self.on_progress(fraction, self.plan.estimate)

    def _walk_single(self):
        cfg = self.config
        if self.plan.solve_for == "quantity":
            self._try_quantities(cfg.price_min, cfg.discount_min)
        elif self.plan.solve_for == "discount":
            self._try_discounts(cfg.price_min, cfg.quantity_min)
        else:
            self._try_prices(cfg.quantity_min, cfg.discount_min)
        self.visited += 1

    def _walk_solving_discount(self):
        cfg = self.config
        price = cfg.price_min
        window = feasible_quantity_window(cfg, cfg.discount_min, cfg.discount_max)
        for quantity in quantity_axis(cfg, self.plan):
            if window is None or not window.contains(quantity):
                self.pruned += 1
            else:
                self._try_discounts(price, quantity)
            self._checkpoint()
            if self.done:
                return

    def _walk_solving_price(self):
        cfg = self.config
        for quantity, discount in walk_order(cfg, self.plan):
            window = feasible_quantity_window(cfg, discount, discount)
            if window is None or not window.contains(quantity):
                self.pruned += 1
            else:
                self._try_prices(quantity, discount)
            self._checkpoint()
            if self.done:
                return

    def run(self) -> List[SolverResult]:
        self.cancel.check()
        if self.plan.strategy == STRATEGY_SINGLE:
            self._walk_single()
        elif self.plan.solve_for == "discount":
            self._walk_solving_discount()
        else:
            self._walk_solving_price()
        self.cancel.check()
        if self.on_progress is not None:
            self.on_progress(1.0, self.plan.estimate)
        return rank_results(self.results, self.config.top_n)


def run_shard(
    config: SolverConfig,
    cancel: Optional[CancelToken] = None,
    on_progress: Optional[ProgressCallback] = None,
    on_result: Optional[ResultCallback] = None,
) -> List[SolverResult]:
    """
    Run the full pipeline over one shard's configuration.

    on_progress(fraction, estimate) fires at each checkpoint and once with
    1.0 at the end; on_result(result) fires for every accepted result in
    discovery order. Raises CancellationSignal if cancel is set.
    """
    return ShardWalk(config, cancel, on_progress, on_result).run()
