from decimal import Decimal, InvalidOperation

import pytest

from formula import (
    Transaction,
    calculate_all,
    evaluate,
    required_base,
    solve_discount,
    solve_price,
    solve_quantity,
    validate_transaction,
)
from precision import (
    axis_count,
    axis_value,
    grid_candidates,
    key_amount,
    round_to_step,
    to_decimal,
)


REFERENCE = Transaction.of(50000, 20, 15000)
TARGET = Decimal("108350")


def test_evaluate_reference_transaction() -> None:
    assert evaluate(REFERENCE) == TARGET


def test_calculate_all_keeps_intermediate_values() -> None:
    breakdown = calculate_all(REFERENCE)
    assert breakdown.base == Decimal("985000")
    assert breakdown.output == TARGET
    # 985000 × 11/12 is not terminating; the output must still be exact.
    assert breakdown.other_value_base > Decimal("902916")
    assert breakdown.other_value_base < Decimal("902917")


def test_output_is_base_times_eleven_percent() -> None:
    tx = Transaction.of("1234.56", 7, "89.1")
    base = Decimal("1234.56") * 7 - Decimal("89.1")
    assert evaluate(tx) == base * Decimal("0.11")


def test_required_base_is_target_over_rate() -> None:
    assert required_base(TARGET) == Decimal("985000")


def test_inverse_solvers_recover_reference() -> None:
    assert solve_price(TARGET, REFERENCE.quantity, REFERENCE.discount) == REFERENCE.unit_price
    assert solve_discount(TARGET, REFERENCE.unit_price, REFERENCE.quantity) == REFERENCE.discount
    assert solve_quantity(TARGET, REFERENCE.unit_price, REFERENCE.discount) == REFERENCE.quantity


def test_inverse_solvers_reject_zero_divisor() -> None:
    assert solve_price(TARGET, Decimal(0), Decimal(0)) is None
    assert solve_quantity(TARGET, Decimal(0), Decimal(0)) is None


def test_solved_discount_can_be_negative() -> None:
    discount = solve_discount(Decimal("200000"), Decimal("50000"), Decimal("20"))
    assert discount < 0


@pytest.mark.parametrize(
    "tx, message",
    [
        (Transaction.of(0, 1, 0), "unit price must be positive"),
        (Transaction.of(10, 0, 0), "quantity must be positive"),
        (Transaction.of(10, 1, -1), "discount must not be negative"),
        (Transaction.of(10, 2, 20), "discount must be below the subtotal"),
    ],
)
def test_validate_transaction_reports_first_violation(tx, message) -> None:
    assert validate_transaction(tx) == message


def test_validate_transaction_accepts_reference() -> None:
    assert validate_transaction(REFERENCE) is None


def test_to_decimal_takes_float_repr_and_trims_strings() -> None:
    assert to_decimal(0.1) == Decimal("0.1")
    assert to_decimal(" 12.50 ") == Decimal("12.50")
    assert to_decimal(7) == Decimal(7)
    with pytest.raises(InvalidOperation):
        to_decimal("twelve")


def test_round_to_step_is_half_up() -> None:
    assert round_to_step(Decimal("49925"), Decimal(100)) == Decimal("49900")
    assert round_to_step(Decimal("49950"), Decimal(100)) == Decimal("50000")
    assert round_to_step(Decimal("0.125"), Decimal("0.01")) == Decimal("0.13")


def test_grid_candidates_order() -> None:
    assert grid_candidates(Decimal("49925"), Decimal(100)) == [
        Decimal("49925"), Decimal("49900"), Decimal("50000"), Decimal("49800"),
    ]


def test_grid_candidates_on_grid_value_is_alone() -> None:
    assert grid_candidates(Decimal("50000"), Decimal(100)) == [Decimal("50000")]


def test_one_grid_candidate_lands_within_step_bound() -> None:
    # Re-evaluating a snapped price moves the output by at most
    # quantity × step × 0.11 from the target.
    quantity, discount, step = Decimal(19), Decimal(14300), Decimal(100)
    exact = solve_price(TARGET, quantity, discount)
    bound = quantity * step * Decimal("0.11")
    diffs = [abs(evaluate(Transaction(p, quantity, discount)) - TARGET)
             for p in grid_candidates(exact, step)]
    assert min(diffs) <= bound
    assert diffs[0] == 0


def test_axis_helpers() -> None:
    assert axis_count(Decimal(1), Decimal(10), Decimal(1)) == 10
    assert axis_count(Decimal(0), Decimal(1), Decimal("0.3")) == 4
    assert axis_count(Decimal(5), Decimal(4), Decimal(1)) == 0
    assert axis_value(Decimal(0), Decimal("0.3"), 3) == Decimal("0.9")


def test_key_amount_rounds_half_up_to_cents() -> None:
    assert key_amount(Decimal("1.005")) == Decimal("1.01")
    assert key_amount(Decimal("50000.001")) == Decimal("50000.00")
