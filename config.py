"""
Solver configuration.
All search parameters are centralized here.
"""

from dataclasses import dataclass, field, fields
from decimal import Decimal, InvalidOperation
from typing import Any, Dict

from errors import SearchSpaceTooLargeError, ValidationError
from formula import Transaction, validate_transaction
from precision import Number, axis_count, decimal_context, to_decimal

# Hard cap on the (quantity × discount) walk. Above this the search fails
# closed instead of returning a silently incomplete answer.
MAX_COMBINATIONS = 1_000_000_000

_DECIMAL_FIELDS = (
    "target", "tolerance",
    "price_min", "price_max", "price_step",
    "quantity_min", "quantity_max", "quantity_step",
    "discount_min", "discount_max", "discount_step",
    "alpha", "beta",
)


@dataclass
class SolverConfig:
    """Search parameters for one solve."""

    # === REFERENCE ===
    # Baseline transaction: centre of the priority walk and origin of
    # the deviation penalty in the score.
    reference: Transaction = field(default_factory=lambda: Transaction.of(0, 0, 0))

    # === TARGET ===
    target: Decimal = Decimal(0)
    # Maximum |output - target| accepted.
    tolerance: Decimal = Decimal(1000)

    # === BOUNDS (inclusive) AND GRID STEPS ===
    # A dimension with min == max is locked to that single value.
    price_min: Decimal = Decimal(0)
    price_max: Decimal = Decimal(1000000)
    price_step: Decimal = Decimal(100)

    quantity_min: Decimal = Decimal(1)
    quantity_max: Decimal = Decimal(1000)
    quantity_step: Decimal = Decimal(1)

    discount_min: Decimal = Decimal(0)
    discount_max: Decimal = Decimal(1000000)
    discount_step: Decimal = Decimal(100)

    # === SCORING ===
    # score = |diff| + alpha·|price - ref price| + beta·|discount - ref discount|
    alpha: Decimal = Decimal(1)
    beta: Decimal = Decimal(1)

    # Maximum number of results returned. Also the early-termination
    # threshold: the walk stops once this many perfect matches exist.
    top_n: int = 10

    def __post_init__(self):
        for name in _DECIMAL_FIELDS:
            setattr(self, name, to_decimal(getattr(self, name)))
        self.top_n = int(self.top_n)

    @property
    def price_locked(self) -> bool:
        return self.price_min == self.price_max

    @property
    def quantity_locked(self) -> bool:
        return self.quantity_min == self.quantity_max

    @property
    def discount_locked(self) -> bool:
        return self.discount_min == self.discount_max

    def with_quantity_range(self, quantity_min: Decimal, quantity_max: Decimal) -> "SolverConfig":
        """Copy of this config restricted to a quantity sub-range."""
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values["quantity_min"] = quantity_min
        values["quantity_max"] = quantity_max
        return SolverConfig(**values)

    @classmethod
    def from_variance(
        cls,
        reference: Transaction,
        target: Number,
        tolerance: Number = 1000,
        price_variance: Number = 10,
        quantity_variance: Number = 0,
        discount_variance: Number = 10,
        price_step: Number = 100,
        quantity_step: Number = 1,
        discount_step: Number = 100,
        alpha: Number = 1,
        beta: Number = 1,
        top_n: int = 10,
    ) -> "SolverConfig":
        """
        Build bounds as a percentage variance around the reference.

        A variance of 0 locks the dimension to the reference value. Lower
        bounds clamp at zero, and the quantity lower bound clamps at one
        quantity step so the quantity axis never contains zero.
        """
        quantity_step = to_decimal(quantity_step)
        price_min, price_max = _variance_range(reference.unit_price, price_variance)
        quantity_min, quantity_max = _variance_range(reference.quantity, quantity_variance)
        discount_min, discount_max = _variance_range(reference.discount, discount_variance)
        if quantity_min < quantity_step and quantity_max > quantity_min:
            quantity_min = min(quantity_step, quantity_max)
        return cls(
            reference=reference,
            target=target,
            tolerance=tolerance,
            price_min=price_min,
            price_max=price_max,
            price_step=price_step,
            quantity_min=quantity_min,
            quantity_max=quantity_max,
            quantity_step=quantity_step,
            discount_min=discount_min,
            discount_max=discount_max,
            discount_step=discount_step,
            alpha=alpha,
            beta=beta,
            top_n=top_n,
        )

    def to_payload(self) -> Dict[str, Any]:
        """Plain-JSON form; decimals as strings so no digit is lost."""
        payload: Dict[str, Any] = {
            "reference": {
                "unit_price": str(self.reference.unit_price),
                "quantity": str(self.reference.quantity),
                "discount": str(self.reference.discount),
            },
        }
        for name in _DECIMAL_FIELDS:
            payload[name] = str(getattr(self, name))
        payload["top_n"] = self.top_n
        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SolverConfig":
        """Inverse of to_payload. Missing keys take the defaults."""
        try:
            kwargs: Dict[str, Any] = {}
            ref = payload.get("reference")
            if ref is not None:
                kwargs["reference"] = Transaction.of(
                    ref["unit_price"], ref["quantity"], ref.get("discount", 0)
                )
            for name in _DECIMAL_FIELDS:
                if name in payload:
                    kwargs[name] = payload[name]
            if "top_n" in payload:
                kwargs["top_n"] = payload["top_n"]
            return cls(**kwargs)
        except (InvalidOperation, KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"malformed configuration: {exc!r}") from exc


def _variance_range(center: Decimal, variance: Number):
    pct = to_decimal(variance)
    if pct < 0:
        raise ValidationError(f"variance must not be negative (got {pct}%)")
    with decimal_context():
        delta = abs(center) * pct / 100
        return max(Decimal(0), center - delta), center + delta


def estimate_combinations(config: SolverConfig) -> int:
    """
    Size of the (quantity × discount) walk.

    Price is always the solved dimension when both of these vary, so it
    does not multiply the estimate. A locked axis counts as 1.
    """
    quantity_count = axis_count(config.quantity_min, config.quantity_max, config.quantity_step)
    discount_count = axis_count(config.discount_min, config.discount_max, config.discount_step)
    return quantity_count * discount_count


def validate_config(config: SolverConfig, max_combinations: int = MAX_COMBINATIONS) -> int:
    """
    Reject an unusable configuration before any worker starts.

    Returns the combination estimate on success.
    Raises ValidationError, or SearchSpaceTooLargeError over the cap.
    """
    tx_error = validate_transaction(config.reference)
    if tx_error:
        raise ValidationError(f"reference transaction: {tx_error}")
    if config.target <= 0:
        raise ValidationError("target must be positive")
    if config.tolerance < 0:
        raise ValidationError("tolerance must not be negative")
    for dim in ("price", "quantity", "discount"):
        if getattr(config, f"{dim}_step") <= 0:
            raise ValidationError(f"{dim} step must be positive")
    if config.quantity_min <= 0:
        raise ValidationError("minimum quantity must be positive")
    for dim in ("price", "quantity", "discount"):
        lo = getattr(config, f"{dim}_min")
        hi = getattr(config, f"{dim}_max")
        if lo > hi:
            raise ValidationError(f"minimum {dim} exceeds maximum ({lo} > {hi})")
    if config.top_n < 1:
        raise ValidationError("top_n must be at least 1")
    if config.alpha < 0 or config.beta < 0:
        raise ValidationError("score weights must not be negative")

    estimate = estimate_combinations(config)
    if estimate > max_combinations:
        raise SearchSpaceTooLargeError(estimate, max_combinations)
    return estimate
