"""
Pricing calculator: recurring charges, early buyout, late fees, platform fees.
Pure functions, no store involved.
"""
import pytest
import sys
from decimal import Decimal
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

from stocrx.errors import ValidationError
from stocrx.models.payments import PaymentType
from stocrx.models.policy import VehiclePricingPolicy, resolve_policy
from stocrx.services.pricing import (
    compute_early_buyout,
    compute_late_fee,
    compute_platform_fee,
    compute_recurring_charge,
    to_money,
)


class TestRecurringCharge:

    def test_weekly_200_quote(self):
        charge = compute_recurring_charge(200)
        assert charge.as_floats() == {"base": 200.0, "tax": 1.2, "total": 201.2}

    @pytest.mark.parametrize("base", ["0", "0.01", "99.99", "123.45", "799.50", "1850"])
    def test_total_is_base_plus_rounded_tax(self, base):
        charge = compute_recurring_charge(base)
        expected_tax = to_money(Decimal(base) * Decimal("0.006"))
        assert charge.tax == expected_tax
        assert charge.total == Decimal(base) + expected_tax
        assert charge.tax >= 0

    def test_tax_rounds_half_up(self):
        # 0.006 * 75 = 0.45 exactly; 0.006 * 0.75 = 0.0045 -> 0.00
        assert compute_recurring_charge("75").tax == Decimal("0.45")
        assert compute_recurring_charge("2.50").tax == Decimal("0.02")  # 0.015 -> 0.02

    def test_float_input_does_not_drift(self):
        assert compute_recurring_charge(0.1 + 0.2).base == Decimal("0.30")


class TestEarlyBuyout:

    def test_discounts_remaining_balance_by_25_percent(self):
        assert compute_early_buyout(10000) == Decimal("7500.00")
        assert compute_early_buyout("1234.57") == Decimal("925.93")

    def test_zero_balance_is_free(self):
        assert compute_early_buyout(0) == Decimal("0.00")
        assert compute_early_buyout(-5) == Decimal("0.00")

    def test_vehicle_multiplier_override(self):
        policy = resolve_policy(VehiclePricingPolicy(buyout_multiplier=0.9))
        assert compute_early_buyout(1000, policy=policy) == Decimal("900.00")


class TestLateFee:

    def test_week_zero_owes_nothing(self):
        assert compute_late_fee(0) == Decimal("0.00")

    @pytest.mark.parametrize("week", [1, 2, 3, 4])
    def test_default_flat_fee(self, week):
        assert compute_late_fee(week) == Decimal("50.00")

    def test_week_five_is_a_suspension_case(self):
        with pytest.raises(ValidationError) as exc:
            compute_late_fee(5)
        assert exc.value.rule == "late_fee_weeks_1_to_4"

    def test_negative_weeks_rejected(self):
        with pytest.raises(ValidationError):
            compute_late_fee(-1)

    def test_per_vehicle_schedule(self):
        policy = resolve_policy(VehiclePricingPolicy(late_fee_schedule={2: 75.0}))
        assert compute_late_fee(1, policy) == Decimal("50.00")
        assert compute_late_fee(2, policy) == Decimal("75.00")


class TestPlatformFee:

    @pytest.mark.parametrize("payment_type", [PaymentType.RECURRING_CHARGE, PaymentType.BUYOUT])
    def test_charged_on_recurring_and_buyout(self, payment_type):
        assert compute_platform_fee(payment_type, 1000) == Decimal("6.00")

    @pytest.mark.parametrize(
        "payment_type",
        [PaymentType.DOWN_PAYMENT, PaymentType.LATE_FEE, PaymentType.FINANCE_FEE, PaymentType.REFUND],
    )
    def test_not_charged_on_other_types(self, payment_type):
        assert compute_platform_fee(payment_type, 1000) == Decimal("0.00")


class TestPolicyValidation:

    def test_fee_week_outside_range_rejected(self):
        with pytest.raises(ValueError):
            VehiclePricingPolicy(late_fee_schedule={5: 10.0})

    def test_multiplier_range(self):
        with pytest.raises(ValueError):
            VehiclePricingPolicy(buyout_multiplier=1.5)

    def test_schedule_serializes_with_string_keys(self):
        dumped = VehiclePricingPolicy(late_fee_schedule={1: 20.0}).model_dump()
        assert dumped["late_fee_schedule"] == {"1": 20.0}
        assert VehiclePricingPolicy(**dumped).late_fee_schedule == {1: 20.0}
