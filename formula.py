"""
Tax formula for a single transaction, and its closed-form inversions.

FORMULA:
    base             = unit_price × quantity − discount
    other_value_base = base × 11/12
    output           = other_value_base × 12%

The two rational factors reduce exactly to output = base × 11/100, which
is what `evaluate` computes so that a grid-valued transaction with an
exact target produces a difference of exactly zero.

INVERSION: with rate = 0.11, solving output = target for each dimension
given the other two:
    unit_price = (target/rate + discount) / quantity
    discount   = unit_price × quantity − target/rate
    quantity   = (target/rate + discount) / unit_price
target/rate is evaluated as target × 100 / 11.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from precision import Number, decimal_context, to_decimal

RATIO_11 = Decimal(11)
RATIO_12 = Decimal(12)

# output = base × RATE_NUMERATOR / RATE_DENOMINATOR  (= base × 0.11)
RATE_NUMERATOR = Decimal(11)
RATE_DENOMINATOR = Decimal(100)


@dataclass(frozen=True)
class Transaction:
    """A (unit price, quantity, discount) triple."""
    unit_price: Decimal
    quantity: Decimal
    discount: Decimal

    @classmethod
    def of(cls, unit_price: Number, quantity: Number, discount: Number = 0) -> "Transaction":
        return cls(to_decimal(unit_price), to_decimal(quantity), to_decimal(discount))

    @property
    def subtotal(self) -> Decimal:
        with decimal_context():
            return self.unit_price * self.quantity


@dataclass(frozen=True)
class CalculationBreakdown:
    base: Decimal
    other_value_base: Decimal
    output: Decimal


def evaluate(transaction: Transaction) -> Decimal:
    """Tax output of a transaction."""
    with decimal_context():
        base = transaction.unit_price * transaction.quantity - transaction.discount
        return base * RATE_NUMERATOR / RATE_DENOMINATOR


def calculate_all(transaction: Transaction) -> CalculationBreakdown:
    """Every intermediate quantity of the formula, for display and audit."""
    with decimal_context():
        base = transaction.unit_price * transaction.quantity - transaction.discount
        other_value_base = base * RATIO_11 / RATIO_12
        output = base * RATE_NUMERATOR / RATE_DENOMINATOR
    return CalculationBreakdown(base=base, other_value_base=other_value_base, output=output)


def validate_transaction(transaction: Transaction) -> Optional[str]:
    """Return the first violated invariant, or None for a valid transaction."""
    if transaction.unit_price <= 0:
        return "unit price must be positive"
    if transaction.quantity <= 0:
        return "quantity must be positive"
    if transaction.discount < 0:
        return "discount must not be negative"
    if transaction.discount >= transaction.subtotal:
        return "discount must be below the subtotal"
    return None


def required_base(target: Decimal) -> Decimal:
    """Base amount whose output equals target (target / 0.11)."""
    with decimal_context():
        return target * RATE_DENOMINATOR / RATE_NUMERATOR


def solve_price(target: Decimal, quantity: Decimal, discount: Decimal) -> Optional[Decimal]:
    if quantity <= 0:
        return None
    with decimal_context():
        return (required_base(target) + discount) / quantity


def solve_discount(target: Decimal, unit_price: Decimal, quantity: Decimal) -> Decimal:
    with decimal_context():
        return unit_price * quantity - required_base(target)


def solve_quantity(target: Decimal, unit_price: Decimal, discount: Decimal) -> Optional[Decimal]:
    if unit_price <= 0:
        return None
    with decimal_context():
        return (required_base(target) + discount) / unit_price
