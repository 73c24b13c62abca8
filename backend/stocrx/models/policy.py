"""Pricing and delinquency policy.

Defaults come from the environment (backend/.env); any vehicle can carry a
VehiclePricingPolicy that overrides individual values. Fields left as None
on the override fall back to the defaults below.
"""
import os
from decimal import Decimal
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_serializer, field_validator

ROOT_DIR = Path(__file__).resolve().parents[2]
load_dotenv(ROOT_DIR / '.env')


# ============================================================================
# Rates
# ============================================================================
TAX_RATE = Decimal(os.getenv("STOCRX_TAX_RATE", "0.006"))                    # 0.6% tax on recurring charges
PLATFORM_FEE_RATE = Decimal(os.getenv("STOCRX_PLATFORM_FEE_RATE", "0.006"))  # 0.6% on recurring + buyout
BUYOUT_MULTIPLIER = Decimal(os.getenv("STOCRX_BUYOUT_MULTIPLIER", "0.75"))   # 25% early buyout discount
MEMBERSHIP_FEE = Decimal(os.getenv("STOCRX_MEMBERSHIP_FEE", "2500"))         # finance_fee charged at application

# ============================================================================
# Late fees - flat fee per delinquent week, weeks 1-4
# ============================================================================
LATE_FEE_DEFAULT = Decimal(os.getenv("STOCRX_LATE_FEE_DEFAULT", "50.00"))
LATE_FEE_WEEKS = (1, 2, 3, 4)
DEFAULT_LATE_FEE_SCHEDULE: Dict[int, Decimal] = {week: LATE_FEE_DEFAULT for week in LATE_FEE_WEEKS}

# ============================================================================
# Delinquency thresholds (weeks)
# ============================================================================
SUSPENSION_AFTER_WEEKS = 5     # week 5 = 30+ days past due -> suspend + collections
RECOVERY_AFTER_WEEKS = 4       # further weeks before vehicle pickup is eligible
TERMINATION_AFTER_WEEKS = 8    # further weeks of no cure before termination

AUTO_COMPLETE_ON_EVALUATION = os.getenv("STOCRX_AUTO_COMPLETE_ON_EVALUATION", "false").strip().lower() == "true"

CADENCE_PERIOD_DAYS = {
    "weekly": 7,
    "monthly": 30,
}


class VehiclePricingPolicy(BaseModel):
    """Per-vehicle overrides ("editable per car / per week")."""
    late_fee_schedule: Dict[int, float] = Field(default_factory=dict)  # week -> flat fee
    buyout_multiplier: Optional[float] = None
    suspension_after_weeks: Optional[int] = None
    recovery_after_weeks: Optional[int] = None
    termination_after_weeks: Optional[int] = None

    model_config = {"extra": "ignore"}

    @field_validator("late_fee_schedule")
    @classmethod
    def _weeks_in_fee_range(cls, schedule: Dict[int, float]) -> Dict[int, float]:
        for week, fee in schedule.items():
            if week not in LATE_FEE_WEEKS:
                raise ValueError(f"Late fee week must be one of {LATE_FEE_WEEKS}, got {week}")
            if fee < 0:
                raise ValueError(f"Late fee for week {week} must not be negative")
        return schedule

    @field_validator("suspension_after_weeks", "recovery_after_weeks", "termination_after_weeks")
    @classmethod
    def _positive_weeks(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value < 1:
            raise ValueError("week thresholds must be at least 1")
        return value

    # BSON keys must be strings
    @field_serializer("late_fee_schedule")
    def _serialize_schedule(self, schedule: Dict[int, float]) -> Dict[str, float]:
        return {str(week): fee for week, fee in schedule.items()}

    @field_validator("buyout_multiplier")
    @classmethod
    def _multiplier_range(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and not (0 < value <= 1):
            raise ValueError("buyout_multiplier must be in (0, 1]")
        return value


class EffectivePolicy(BaseModel):
    """Defaults merged with a vehicle's overrides."""
    late_fee_schedule: Dict[int, Decimal]
    buyout_multiplier: Decimal
    suspension_after_weeks: int
    recovery_after_weeks: int
    termination_after_weeks: int


def resolve_policy(override: Optional[VehiclePricingPolicy] = None) -> EffectivePolicy:
    """Merge a vehicle override onto the default policy."""
    schedule = dict(DEFAULT_LATE_FEE_SCHEDULE)
    multiplier = BUYOUT_MULTIPLIER
    suspension = SUSPENSION_AFTER_WEEKS
    recovery = RECOVERY_AFTER_WEEKS
    termination = TERMINATION_AFTER_WEEKS

    if override is not None:
        for week, fee in override.late_fee_schedule.items():
            schedule[int(week)] = Decimal(str(fee))
        if override.buyout_multiplier is not None:
            multiplier = Decimal(str(override.buyout_multiplier))
        if override.suspension_after_weeks is not None:
            suspension = override.suspension_after_weeks
        if override.recovery_after_weeks is not None:
            recovery = override.recovery_after_weeks
        if override.termination_after_weeks is not None:
            termination = override.termination_after_weeks

    return EffectivePolicy(
        late_fee_schedule=schedule,
        buyout_multiplier=multiplier,
        suspension_after_weeks=suspension,
        recovery_after_weeks=recovery,
        termination_after_weeks=termination,
    )


def resolve_vehicle_policy(vehicle: Dict) -> EffectivePolicy:
    """Effective policy for a stored vehicle document."""
    override = vehicle.get("pricing_policy")
    return resolve_policy(VehiclePricingPolicy(**override) if override else None)
