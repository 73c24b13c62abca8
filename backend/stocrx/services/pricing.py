"""Pricing Calculator

Pure functions, no state and no I/O:
- Recurring charge = base rate + 0.6% tax
- Early buyout = remaining balance x multiplier (25% discount by default)
- Late fee = flat fee for delinquent weeks 1-4
- Platform fee = 0.6% on recurring charges and buyouts only

All money is Decimal, rounded to cents with ROUND_HALF_UP so reconciliation
does not drift.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from pydantic import BaseModel

from stocrx.errors import ValidationError
from stocrx.models.payments import PaymentType, PLATFORM_FEE_PAYMENT_TYPES
from stocrx.models.policy import (
    TAX_RATE,
    PLATFORM_FEE_RATE,
    LATE_FEE_WEEKS,
    EffectivePolicy,
    resolve_policy,
)

CENTS = Decimal("0.01")

Number = Union[int, float, str, Decimal]


class ChargeBreakdown(BaseModel):
    base: Decimal
    tax: Decimal
    total: Decimal

    def as_floats(self) -> dict:
        return {"base": float(self.base), "tax": float(self.tax), "total": float(self.total)}


def to_money(value: Number) -> Decimal:
    """Round to cents, half-up. Floats go through str() first."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def compute_recurring_charge(base_rate: Number, tax_rate: Decimal = TAX_RATE) -> ChargeBreakdown:
    base = to_money(base_rate)
    tax = to_money(base * tax_rate)
    return ChargeBreakdown(base=base, tax=tax, total=base + tax)


def compute_early_buyout(
    remaining_balance: Number,
    multiplier: Optional[Number] = None,
    policy: Optional[EffectivePolicy] = None,
) -> Decimal:
    """Discounted amount that settles the remaining balance early."""
    if multiplier is None:
        multiplier = (policy or resolve_policy()).buyout_multiplier
    balance = Decimal(str(remaining_balance)) if isinstance(remaining_balance, float) else Decimal(remaining_balance)
    if balance <= 0:
        return to_money(0)
    return to_money(balance * Decimal(str(multiplier)))


def compute_late_fee(weeks_delinquent: int, policy: Optional[EffectivePolicy] = None) -> Decimal:
    """Flat fee for one delinquent week.

    Week 0 owes nothing. Weeks past the fee schedule are a suspension
    trigger, not a fee case.
    """
    if weeks_delinquent < 0:
        raise ValidationError(
            f"weeks_delinquent must be >= 0, got {weeks_delinquent}",
            rule="weeks_delinquent_non_negative",
        )
    if weeks_delinquent == 0:
        return to_money(0)
    if weeks_delinquent not in LATE_FEE_WEEKS:
        raise ValidationError(
            f"No late fee for week {weeks_delinquent}: week {LATE_FEE_WEEKS[-1] + 1}+ is a suspension case",
            rule="late_fee_weeks_1_to_4",
        )
    schedule = (policy or resolve_policy()).late_fee_schedule
    return to_money(schedule[weeks_delinquent])


def compute_platform_fee(payment_type: PaymentType, amount: Number) -> Decimal:
    if payment_type not in PLATFORM_FEE_PAYMENT_TYPES:
        return to_money(0)
    return to_money(to_money(amount) * PLATFORM_FEE_RATE)
