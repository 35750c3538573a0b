"""
Decimal precision and grid arithmetic.

RULE: every monetary quantity is a decimal.Decimal evaluated in a context
of WORKING_DIGITS significant digits with ROUND_HALF_UP. Binary floats are
never used on the search path: one unit of rounding error is enough to move
a candidate across the tolerance boundary, or to turn a perfect match into
a near match.

GRID: each search dimension is quantised by a step size. A grid axis is
the set {min + i·step : 0 ≤ i < count} with count = floor((max-min)/step)+1.
"""

from decimal import Decimal, Context, ROUND_HALF_UP, ROUND_FLOOR, localcontext
from typing import List, Union

# Minimum working precision required for tax arithmetic.
# 20 digits keep price×quantity exact for prices up to 10^12 with
# two decimals and quantities up to 10^6.
WORKING_DIGITS = 20

# Places used when reducing a monetary value to a deduplication key.
KEY_PLACES = Decimal("0.01")

DECIMAL_CONTEXT = Context(prec=WORKING_DIGITS, rounding=ROUND_HALF_UP)

Number = Union[Decimal, int, float, str]


def decimal_context():
    """Context manager activating the solver's decimal context on this thread."""
    return localcontext(DECIMAL_CONTEXT)


def to_decimal(value: Number) -> Decimal:
    """
    Coerce a user-supplied number to Decimal.

    Floats go through their shortest repr so that 0.1 becomes Decimal("0.1")
    rather than the binary expansion. Strings and ints are taken verbatim.
    Raises decimal.InvalidOperation on malformed input.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    if isinstance(value, str):
        return Decimal(value.strip())
    return Decimal(value)


def round_to_step(value: Decimal, step: Decimal) -> Decimal:
    """Snap value to the nearest multiple of step (half-up)."""
    with decimal_context():
        return (value / step).to_integral_value(rounding=ROUND_HALF_UP) * step


def grid_candidates(exact: Decimal, step: Decimal) -> List[Decimal]:
    """
    Candidate values for a solved dimension.

    The exact solution always comes first. When it is off-grid, the nearest
    grid point and both of its neighbours follow: rounding to the grid can
    push the output outside tolerance on one side while a neighbour stays
    inside, so all of them must be evaluated.

    Order: exact, rounded, rounded+step, rounded-step.
    """
    rounded = round_to_step(exact, step)
    if rounded == exact:
        return [exact]
    with decimal_context():
        return [exact, rounded, rounded + step, rounded - step]


def axis_count(lo: Decimal, hi: Decimal, step: Decimal) -> int:
    """Number of grid points in [lo, hi]; 0 for an empty range."""
    if hi < lo:
        return 0
    with decimal_context():
        return int(((hi - lo) / step).to_integral_value(rounding=ROUND_FLOOR)) + 1


def axis_value(lo: Decimal, step: Decimal, index: int) -> Decimal:
    """The index-th grid point of an axis starting at lo."""
    with decimal_context():
        return lo + step * index


def key_amount(value: Decimal) -> Decimal:
    """Monetary value at key precision (2 decimals, half-up)."""
    with decimal_context():
        return value.quantize(KEY_PLACES, rounding=ROUND_HALF_UP)
