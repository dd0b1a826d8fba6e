# Overview: Pure money arithmetic for order and invoice totals.

"""
Pricing rules (all amounts in minor units, rates in basis points).

- line_total = quantity * unit_price
- subtotal   = sum(line_total)
- tax        = round_half_up(sum(line_total * rate_bps) / 10_000)
- total      = subtotal + tax

Tax is rounded once over the whole document, so for a uniform rate it is
exactly round(subtotal * rate, 2) in major units.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from ..errors import ValidationError

BPS_DENOMINATOR = 10_000


@dataclass(frozen=True)
class Totals:
    subtotal_cents: int
    tax_cents: int
    total_cents: int
    tax_overridden: bool = False

    def to_dict(self) -> dict:
        return {
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "tax_overridden": self.tax_overridden,
        }


def round_half_up_div(numerator: int, denominator: int) -> int:
    """Integer division rounding .5 away from zero (numerator >= 0)."""
    return (numerator * 2 + denominator) // (denominator * 2)


def line_total(quantity: int, unit_price_cents: int) -> int:
    return quantity * unit_price_cents


def compute_totals(lines: Iterable, tax_override_cents: int | None = None) -> Totals:
    """
    Derive document totals from line snapshots.

    Each line needs line_total_cents and tax_rate_bps attributes.
    """
    subtotal = 0
    weighted_tax = 0
    for line in lines:
        subtotal += line.line_total_cents
        weighted_tax += line.line_total_cents * line.tax_rate_bps

    if tax_override_cents is not None:
        if tax_override_cents < 0:
            raise ValidationError("tax_override_cents must be >= 0")
        return Totals(subtotal, tax_override_cents, subtotal + tax_override_cents, True)

    tax = round_half_up_div(weighted_tax, BPS_DENOMINATOR)
    return Totals(subtotal, tax, subtotal + tax)
