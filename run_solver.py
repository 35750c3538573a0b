#!/usr/bin/env python3
"""
Tax-amount target solver: command line runner.

Finds (unit price, quantity, discount) combinations whose tax output lands
within tolerance of a target, ranked by closeness to the target and to a
reference transaction.

Usage:
    python3 run_solver.py --price 50000 --quantity 20 --discount 15000 --target 108350
    python3 run_solver.py ... --price-min 40000 --price-max 60000 --quantity-min 10 --quantity-max 30
    python3 run_solver.py ... --price-variance 10 --discount-variance 20     # bounds from % variance
    python3 run_solver.py ... --estimate                                    # plan only, no search
    python3 run_solver.py ... --verify                                      # independent re-check
    python3 run_solver.py --sweep-cache 7                                   # drop entries older than 7 days
"""

import argparse
import json
import sys
import time
from pathlib import Path

from config import SolverConfig, estimate_combinations, validate_config
from coordinator import SolveCoordinator, default_workers, partition_quantity
from errors import CacheFault, SolverError
from formula import Transaction
from planner import plan_search
from protocol import PartialResultMessage, ProgressMessage, result_to_payload
from result_cache import ResultCache

DEFAULT_HOME = Path.home() / "tax_solver"

_BOUND_FLAGS = (
    "price_min", "price_max", "quantity_min", "quantity_max", "discount_min", "discount_max",
)
_VARIANCE_FLAGS = ("price_variance", "quantity_variance", "discount_variance")


def build_config(args) -> SolverConfig:
    reference = Transaction.of(args.price, args.quantity, args.discount)
    if any(getattr(args, name) is not None for name in _VARIANCE_FLAGS):
        return SolverConfig.from_variance(
            reference=reference,
            target=args.target,
            tolerance=args.tolerance,
            price_variance=args.price_variance or 0,
            quantity_variance=args.quantity_variance or 0,
            discount_variance=args.discount_variance or 0,
            price_step=args.price_step,
            quantity_step=args.quantity_step,
            discount_step=args.discount_step,
            alpha=args.alpha,
            beta=args.beta,
            top_n=args.top_n,
        )
    kwargs = {name: getattr(args, name) for name in _BOUND_FLAGS if getattr(args, name) is not None}
    return SolverConfig(
        reference=reference,
        target=args.target,
        tolerance=args.tolerance,
        price_step=args.price_step,
        quantity_step=args.quantity_step,
        discount_step=args.discount_step,
        alpha=args.alpha,
        beta=args.beta,
        top_n=args.top_n,
        **kwargs,
    )


def estimate_only(config: SolverConfig, workers: int):
    """Print the search plan without running it."""
    plan = plan_search(config)
    shards = partition_quantity(config, workers) if plan.strategy != "single" else [config]
    print("\n=== SEARCH PLAN ===\n")
    print(f"  Strategy:      {plan.strategy}")
    print(f"  Solved for:    {plan.solve_for}")
    print(f"  Locked:        {', '.join(plan.locked) or '-'}")
    print(f"  Combinations:  {estimate_combinations(config):,}")
    print(f"  Shards:        {len(shards)}")
    for idx, shard in enumerate(shards):
        print(f"    shard {idx}: quantity {shard.quantity_min}..{shard.quantity_max}")


def print_results(results, elapsed: float):
    print(f"\n{'#':>3} {'Unit price':>16} {'Qty':>8} {'Discount':>16} {'Output':>18} {'Diff':>12} {'Score':>16}")
    print("-" * 95)
    for idx, r in enumerate(results, 1):
        tx = r.transaction
        mark = "★" if r.is_perfect else " "
        print(f"{idx:>3} {tx.unit_price:>16} {tx.quantity:>8} {tx.discount:>16} "
              f"{r.calculated:>18} {r.difference:>12} {r.score:>16} {mark}")
    elapsed_str = f"{elapsed:.1f}s" if elapsed < 60 else f"{elapsed/60:.1f}min"
    print(f"\n{len(results)} results in {elapsed_str}.")


def main():
    parser = argparse.ArgumentParser(
        description="Tax-amount target solver"
    )
    ref = parser.add_argument_group("reference transaction")
    ref.add_argument("--price", type=str, help="Reference unit price")
    ref.add_argument("--quantity", type=str, help="Reference quantity")
    ref.add_argument("--discount", type=str, default="0", help="Reference discount (default: 0)")

    tgt = parser.add_argument_group("target")
    tgt.add_argument("--target", type=str, help="Target tax output")
    tgt.add_argument("--tolerance", type=str, default="1000", help="Accepted |output - target| (default: 1000)")

    bounds = parser.add_argument_group("bounds (explicit)")
    for name in _BOUND_FLAGS:
        bounds.add_argument("--" + name.replace("_", "-"), dest=name, type=str, default=None)

    variance = parser.add_argument_group("bounds (percentage variance around the reference)")
    for name in _VARIANCE_FLAGS:
        variance.add_argument("--" + name.replace("_", "-"), dest=name, type=str, default=None,
                              help="Percent; 0 locks the dimension")

    steps = parser.add_argument_group("grid steps and scoring")
    steps.add_argument("--price-step", type=str, default="100")
    steps.add_argument("--quantity-step", type=str, default="1")
    steps.add_argument("--discount-step", type=str, default="100")
    steps.add_argument("--alpha", type=str, default="1", help="Price deviation weight")
    steps.add_argument("--beta", type=str, default="1", help="Discount deviation weight")
    steps.add_argument("--top-n", type=int, default=10)

    run = parser.add_argument_group("execution")
    run.add_argument("--workers", type=int, default=0, help="Worker processes (0 = auto)")
    run.add_argument("--sequential", action="store_true", help="Run every shard in this process")
    run.add_argument("--cache-dir", type=Path, default=DEFAULT_HOME / "cache")
    run.add_argument("--no-cache", action="store_true", help="Neither read nor write the result cache")
    run.add_argument("--log-dir", type=Path, default=None, help="Append the session log here")
    run.add_argument("--verify", action="store_true", help="Independently re-verify the results")
    run.add_argument("--estimate", action="store_true", help="Print the plan only, do not search")
    run.add_argument("--json", action="store_true", help="Print results as JSON")
    run.add_argument("--sweep-cache", type=float, default=None, metavar="DAYS",
                     help="Delete cache entries older than DAYS and exit")
    args = parser.parse_args()

    if args.sweep_cache is not None:
        try:
            removed = ResultCache(args.cache_dir).sweep_expired(args.sweep_cache)
        except CacheFault as exc:
            print(f"Cache sweep failed: {exc}", file=sys.stderr)
            sys.exit(1)
        print(f"Removed {removed} cache entries older than {args.sweep_cache:g} days.")
        return

    missing = [flag for flag in ("price", "quantity", "target") if getattr(args, flag) is None]
    if missing:
        parser.error("missing " + ", ".join("--" + m for m in missing))

    workers = args.workers or default_workers()
    try:
        config = build_config(args)
        validate_config(config)
    except SolverError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        sys.exit(2)

    if args.estimate:
        estimate_only(config, workers)
        return

    def emit(message):
        if isinstance(message, ProgressMessage) and not args.json:
            print(f"\r  progress {message.progress * 100:5.1f}% of ~{message.estimate:,}", end="", flush=True)
        elif isinstance(message, PartialResultMessage) and not args.json:
            print(f"\r  +{len(message.results)} candidates", end="", flush=True)

    coordinator = SolveCoordinator(
        cache=None if args.no_cache else ResultCache(args.cache_dir),
        workers=workers,
        emit=emit,
        verify=args.verify,
        use_processes=not args.sequential,
        log_dir=args.log_dir,
        verbose=not args.json,
    )

    t_start = time.time()
    try:
        results = coordinator.solve(config)
    except SolverError as exc:
        print(f"\nSearch failed: {exc}", file=sys.stderr)
        sys.exit(1)
    t_total = time.time() - t_start

    if args.json:
        print(json.dumps([result_to_payload(r) for r in results], indent=2))
    else:
        print_results(results, t_total)


if __name__ == "__main__":
    main()
