"""
INDEPENDENT validation of returned results.

PRINCIPLE: validation must use a computation path completely different
from the search. This prevents systematic errors from validating
themselves.

Validation levels:
1. Exact re-evaluation with sympy rationals, through the unreduced
   formula (base × 11/12 × 12/100). Solved values carry WORKING_DIGITS
   digits, so the exact output may differ from the target by a rounding
   slack even for a perfect match; anything beyond that slack is a defect
2. Numeric cross-check with mpmath at VERIFICATION_DIGITS digits
3. Structural checks: transaction invariants, bound membership, no
   duplicate canonical keys, ranking order, length ≤ top_n
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List

import mpmath
import sympy

from config import SolverConfig
from formula import validate_transaction
from precision import WORKING_DIGITS
from solver import SolverResult, canonical_key

VERIFICATION_DIGITS = 50

# Relative slack allowed between the exact output and the working-precision one.
SLACK_DIGITS = WORKING_DIGITS - 4


@dataclass
class ValidationReport:
    """Outcome of a validation pass."""
    is_valid: bool
    checked: int
    violations: List[str] = field(default_factory=list)
    max_numeric_deviation: float = 0.0   # largest |mpmath - reported output|
    notes: str = ""


def _rational(value: Decimal) -> sympy.Rational:
    num, den = value.as_integer_ratio()
    return sympy.Rational(num, den)


def _mpf(value: Decimal) -> mpmath.mpf:
    return mpmath.mpf(str(value))


class ResultValidator:
    """Independent validator of solver results."""

    def validate(self, results: List[SolverResult], config: SolverConfig) -> ValidationReport:
        violations: List[str] = []
        notes = []

        # === LEVEL 1: exact rationals ===
        target = _rational(config.target)
        tolerance = _rational(config.tolerance)
        slack = sympy.Rational(1, 10 ** SLACK_DIGITS) * max(1, abs(target))
        for idx, r in enumerate(results):
            tx = r.transaction
            base = _rational(tx.unit_price) * _rational(tx.quantity) - _rational(tx.discount)
            exact = base * sympy.Rational(11, 12) * sympy.Rational(12, 100)
            off = abs(exact - target)
            if off > tolerance + slack:
                violations.append(
                    f"#{idx} {self._label(r)}: exact output {exact} is outside "
                    f"{config.target} ± {config.tolerance}"
                )
            if r.is_perfect and off > slack:
                violations.append(f"#{idx} {self._label(r)}: flagged perfect but exact output is off by {float(off):.3g}")
            elif not r.is_perfect and off == 0:
                violations.append(f"#{idx} {self._label(r)}: exact match not flagged perfect")

        # === LEVEL 2: mpmath cross-check ===
        max_dev = mpmath.mpf(0)
        with mpmath.workdps(VERIFICATION_DIGITS):
            allowed = mpmath.mpf(10) ** (-(WORKING_DIGITS - 2))
            for idx, r in enumerate(results):
                tx = r.transaction
                value = (_mpf(tx.unit_price) * _mpf(tx.quantity) - _mpf(tx.discount)) * 11 / 100
                dev = abs(value - _mpf(r.calculated))
                max_dev = max(max_dev, dev)
                if dev > allowed * max(1, abs(value)):
                    violations.append(
                        f"#{idx} {self._label(r)}: reported output {r.calculated} deviates "
                        f"by {mpmath.nstr(dev, 5)}"
                    )
        notes.append(f"mpmath@{VERIFICATION_DIGITS}: max deviation {mpmath.nstr(max_dev, 5)}")

        # === LEVEL 3: structure ===
        seen = set()
        for idx, r in enumerate(results):
            tx = r.transaction
            error = validate_transaction(tx)
            if error:
                violations.append(f"#{idx} {self._label(r)}: {error}")
            for dim, value in (
                ("price", tx.unit_price),
                ("quantity", tx.quantity),
                ("discount", tx.discount),
            ):
                lo = getattr(config, f"{dim}_min")
                hi = getattr(config, f"{dim}_max")
                if value < lo or value > hi:
                    violations.append(f"#{idx} {self._label(r)}: {dim} {value} outside [{lo}, {hi}]")
            key = canonical_key(tx)
            if key in seen:
                violations.append(f"#{idx} {self._label(r)}: duplicate canonical key")
            seen.add(key)

        if len(results) > config.top_n:
            violations.append(f"{len(results)} results exceed top_n={config.top_n}")

        for idx in range(1, len(results)):
            prev, cur = results[idx - 1], results[idx]
            if cur.is_perfect and not prev.is_perfect:
                violations.append(f"#{idx}: perfect match ranked after a near match")
            elif cur.is_perfect == prev.is_perfect and cur.score < prev.score:
                violations.append(f"#{idx}: score {cur.score} ranked after {prev.score}")

        return ValidationReport(
            is_valid=not violations,
            checked=len(results),
            violations=violations,
            max_numeric_deviation=float(max_dev),
            notes="\n".join(notes),
        )

    @staticmethod
    def _label(r: SolverResult) -> str:
        tx = r.transaction
        return f"({tx.unit_price} × {tx.quantity} − {tx.discount})"
