# tax_engine.py
"""
Deterministic tax calculator for a resolved, ordered list of tax rules.

Policy:
- PERCENTAGE rules apply to the ORIGINAL base amount, independently of each
  other (parallel / additive). This is the default.
- compound=True switches to "tax on tax": each percentage rule applies to the
  running amount (base + every tax applied before it, in rule order).
- FIXED rules add their rate as a flat amount, whatever the base.
- Each applied amount is rounded to the currency minor unit (ROUND_HALF_UP)
  before summation. The effective rate is never rounded here; use
  `effective_rate_display` for a rounded percentage.

Design:
- This file is *pure logic* (no DB calls, no clock). It does not filter
  inactive rules: resolution happens before we get here (see resolver.py).
"""

from __future__ import annotations

from collections.abc import Collection, Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Context, Decimal, localcontext
from typing import Any, Optional

from . import config
from .errors import InvalidAmountError
from .rules.base import TaxRule, TaxType, decimal_places, to_decimal

_ZERO = Decimal("0")

# Money intermediates near AMOUNT_MAX need more than the default 28 digits
_WIDE = Context(prec=60)


def _minor_unit() -> Decimal:
    return Decimal(1).scaleb(-config.CURRENCY_DP)


def round_money(amount: Decimal) -> Decimal:
    return amount.quantize(_minor_unit(), rounding=ROUND_HALF_UP, context=_WIDE)


def parse_amount(value: Any, label: str = "amount") -> Decimal:
    """Validate a non-negative, finite monetary amount within AMOUNT_MAX."""
    try:
        amount = to_decimal(value)
    except ValueError:
        raise InvalidAmountError(f"{label} must be a number, got {value!r}") from None
    if not amount.is_finite():
        raise InvalidAmountError(f"{label} must be finite")
    if amount < 0:
        raise InvalidAmountError(f"{label} must be 0 or greater")
    if amount > config.AMOUNT_MAX:
        raise InvalidAmountError(f"{label} must not exceed {config.AMOUNT_MAX}")
    if decimal_places(amount) > config.DECIMAL_PLACES_MAX:
        raise InvalidAmountError(f"{label} must have at most {config.DECIMAL_PLACES_MAX} decimal places")
    return amount


@dataclass(frozen=True)
class TaxBreakdownEntry:
    """Contribution of one rule to the total tax."""

    tax_id: str
    tax_name: str
    tax_type: TaxType
    tax_rate: Decimal
    tax_amount: Decimal
    is_exempt: bool = False


@dataclass(frozen=True)
class TaxCalculationResult:
    base_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    effective_rate: Decimal  # fraction, unrounded
    tax_breakdown: tuple[TaxBreakdownEntry, ...] = ()

    @property
    def effective_rate_display(self) -> Decimal:
        """Effective rate as a percentage with 2 decimals (0.17 -> 17.00)."""
        return (self.effective_rate * 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP, context=_WIDE)


def calculate(
    base_amount: Any,
    rules: Sequence[TaxRule],
    *,
    compound: bool = False,
    exempt_tax_ids: Optional[Collection[str]] = None,
) -> TaxCalculationResult:
    """
    Apply `rules` in order to `base_amount`.

    Exempt rules (ids in `exempt_tax_ids`) keep their place in the breakdown
    with a zero amount and is_exempt=True.

    Raises InvalidAmountError if base_amount is negative, too large, too precise
    or not a finite number.
    """
    base = parse_amount(base_amount, "base amount")

    if not rules:
        return TaxCalculationResult(
            base_amount=base,
            tax_amount=_ZERO,
            total_amount=base,
            effective_rate=_ZERO,
            tax_breakdown=(),
        )

    exempt = frozenset(exempt_tax_ids or ())
    running = base  # only moves when compound=True
    breakdown: list[TaxBreakdownEntry] = []

    with localcontext(_WIDE):
        for rule in rules:
            if rule.id in exempt:
                applied = _ZERO
            elif rule.type is TaxType.PERCENTAGE:
                applied = round_money((running if compound else base) * rule.rate)
            else:
                applied = round_money(rule.rate)

            if compound:
                running += applied

            breakdown.append(
                TaxBreakdownEntry(
                    tax_id=rule.id,
                    tax_name=rule.name,
                    tax_type=rule.type,
                    tax_rate=rule.rate,
                    tax_amount=applied,
                    is_exempt=rule.id in exempt,
                )
            )

        tax_amount = sum((e.tax_amount for e in breakdown), _ZERO)
        total_amount = base + tax_amount
    effective_rate = tax_amount / base if base > 0 else _ZERO

    return TaxCalculationResult(
        base_amount=base,
        tax_amount=tax_amount,
        total_amount=total_amount,
        effective_rate=effective_rate,
        tax_breakdown=tuple(breakdown),
    )


def extract_base_amount(
    gross_amount: Any,
    rules: Sequence[TaxRule],
    *,
    compound: bool = False,
) -> Decimal:
    """
    Reverse calculation for tax-inclusive prices: find the base amount that
    `calculate` would turn into `gross_amount`.

    The total is linear in the base (gross = factor * base + flat), so we
    accumulate both coefficients over the rules and solve. Per-entry rounding
    is ignored, so the result can be off by a minor unit for some inputs.
    """
    gross = parse_amount(gross_amount, "gross amount")

    factor = Decimal(1)
    flat = _ZERO
    with localcontext(_WIDE):
        for rule in rules:
            if rule.type is TaxType.PERCENTAGE:
                if compound:
                    factor += factor * rule.rate
                    flat += flat * rule.rate
                else:
                    factor += rule.rate
            else:
                flat += rule.rate

    if gross < flat:
        raise InvalidAmountError(
            f"gross amount {gross} is smaller than the fixed taxes ({flat}) of this group"
        )
    return round_money((gross - flat) / factor)
