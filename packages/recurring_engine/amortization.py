"""Installment amortization.

Splits a total into ``n`` equal installments rounded half-to-even to the
currency's minor unit. The rounding remainder lands on the final installment,
so the schedule always sums to the total exactly:

    100.00 / 3  ->  33.33, 33.33, 33.34

When a plan is changed after some installments exist, the ones already
generated are "settled": the functions taking ``settled_amount`` and
``settled_count`` amortize only what is left, ``total - settled_amount`` over
``n - settled_count``, so generated plus outstanding still sums to the total.
"""

from __future__ import annotations

from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import TypeAlias

from .errors import InvalidInstallmentPlan

Amount: TypeAlias = Decimal | int | str

# ISO 4217 currencies whose minor unit is not 2 decimal places.
_ZERO_DECIMAL = frozenset(
    {
        "BIF", "CLP", "DJF", "GNF", "ISK", "JPY", "KMF", "KRW",
        "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
    }
)  # fmt: skip
_THREE_DECIMAL = frozenset({"BHD", "IQD", "JOD", "KWD", "LYD", "OMR", "TND"})


def minor_units(currency: str) -> int:
    code = (currency or "").upper()
    if code in _ZERO_DECIMAL:
        return 0
    if code in _THREE_DECIMAL:
        return 3
    return 2


def _quantum(currency: str) -> Decimal:
    return Decimal(1).scaleb(-minor_units(currency))


def quantize(value: Amount, currency: str = "EUR") -> Decimal:
    """Round ``value`` half-to-even to the minor unit of ``currency``."""

    try:
        d = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        raise InvalidInstallmentPlan(f"not a decimal amount: {value!r}") from None
    return d.quantize(_quantum(currency), rounding=ROUND_HALF_EVEN)


def _check_total(total_occurrences: int) -> None:
    if isinstance(total_occurrences, bool) or not isinstance(total_occurrences, int):
        raise InvalidInstallmentPlan(
            f"total_occurrences must be an integer, got {total_occurrences!r}"
        )
    if total_occurrences <= 0:
        raise InvalidInstallmentPlan(
            f"total_occurrences must be positive, got {total_occurrences}"
        )


def installment_amount(
    total_amount: Amount, total_occurrences: int, currency: str = "EUR"
) -> Decimal:
    """Base per-installment amount: ``total / n`` rounded half-to-even."""

    _check_total(total_occurrences)
    total = quantize(total_amount, currency)
    return quantize(total / total_occurrences, currency)


def installment_amount_at(
    total_amount: Amount,
    total_occurrences: int,
    sequence_index: int,
    currency: str = "EUR",
    *,
    settled_amount: Amount = 0,
    settled_count: int = 0,
) -> Decimal:
    """Amount of installment ``sequence_index`` (1-based).

    Every installment gets the base amount except the last one, which gets
    ``total - base * (n - 1)``. Installments up to ``settled_count`` are
    already fixed and cannot be asked for.
    """

    _check_total(total_occurrences)
    if not settled_count < sequence_index <= total_occurrences:
        raise InvalidInstallmentPlan(
            f"sequence_index {sequence_index} outside {settled_count + 1}..{total_occurrences}"
        )
    if settled_count:
        return installment_amount_at(
            quantize(total_amount, currency) - quantize(settled_amount, currency),
            total_occurrences - settled_count,
            sequence_index - settled_count,
            currency,
        )
    base = installment_amount(total_amount, total_occurrences, currency)
    if sequence_index < total_occurrences:
        return base
    return quantize(total_amount, currency) - base * (total_occurrences - 1)


def installment_schedule(
    total_amount: Amount, total_occurrences: int, currency: str = "EUR"
) -> list[Decimal]:
    _check_total(total_occurrences)
    base = installment_amount(total_amount, total_occurrences, currency)
    last = quantize(total_amount, currency) - base * (total_occurrences - 1)
    return [base] * (total_occurrences - 1) + [last]


def _check_generated(
    total_occurrences: int, occurrences_generated: int, settled_count: int
) -> None:
    _check_total(total_occurrences)
    if not 0 <= occurrences_generated <= total_occurrences:
        raise InvalidInstallmentPlan(
            f"occurrences_generated {occurrences_generated} outside 0..{total_occurrences}"
        )
    if not 0 <= settled_count <= occurrences_generated:
        raise InvalidInstallmentPlan(
            f"settled_count {settled_count} outside 0..{occurrences_generated}"
        )


def remaining_balance(
    total_amount: Amount,
    total_occurrences: int,
    occurrences_generated: int,
    currency: str = "EUR",
    *,
    settled_amount: Amount = 0,
    settled_count: int = 0,
) -> Decimal:
    """Amount still to be generated.

    ``total - generated * base`` while the plan is open, which equals the sum
    of the outstanding installments; zero once the last one exists.
    """

    _check_generated(total_occurrences, occurrences_generated, settled_count)
    if occurrences_generated == total_occurrences:
        return Decimal(0).quantize(_quantum(currency))
    if settled_count:
        return remaining_balance(
            quantize(total_amount, currency) - quantize(settled_amount, currency),
            total_occurrences - settled_count,
            occurrences_generated - settled_count,
            currency,
        )
    base = installment_amount(total_amount, total_occurrences, currency)
    return quantize(total_amount, currency) - base * occurrences_generated


def amount_paid(
    total_amount: Amount,
    total_occurrences: int,
    occurrences_generated: int,
    currency: str = "EUR",
    *,
    settled_amount: Amount = 0,
    settled_count: int = 0,
) -> Decimal:
    """Sum of the installments generated so far."""

    total = quantize(total_amount, currency)
    return total - remaining_balance(
        total,
        total_occurrences,
        occurrences_generated,
        currency,
        settled_amount=settled_amount,
        settled_count=settled_count,
    )


__all__ = [
    "amount_paid",
    "installment_amount",
    "installment_amount_at",
    "installment_schedule",
    "minor_units",
    "quantize",
    "remaining_balance",
]
