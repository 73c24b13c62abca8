"""Delinquency Tracker

Derived state only, nothing persisted: recomputed from the subscription's
cadence, last_payment_date and the current time on every evaluation.

Week counting: week 1 starts the moment the due date passes, and every
further full 7 days starts the next week (floor(days past due / 7) + 1).
Week 5, and with it suspension, therefore starts 28 days past due, not
after 30+ days. A weekly subscriber whose last payment was 35 days ago
(due 28 days ago) is in week 5.

The clock runs from the last payment, but never from before activation:
payments made while the application was pending do not start a schedule.

Policy (thresholds overridable per vehicle):
- week 0        current
- weeks 1-4     flat late fee per week, subscription delinquent
- week >= 5     suspend, refer to collections
- +4 weeks      vehicle recovery (pickup) eligible
- +8 weeks      terminate if still not cured
"""
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from stocrx.models.policy import CADENCE_PERIOD_DAYS, LATE_FEE_WEEKS, EffectivePolicy, resolve_policy
from stocrx.models.subscriptions import Cadence

WEEK = timedelta(days=7)


class DelinquencyAction(str, Enum):
    CURRENT = "current"
    LATE_FEE = "late_fee"
    SUSPEND = "suspend"
    RECOVER = "recover"
    TERMINATE = "terminate"


class DelinquencyAssessment(BaseModel):
    weeks_delinquent: int
    expected_due_date: Optional[datetime]
    late_fee_weeks: List[int]      # every fee week reached so far in this episode
    action: DelinquencyAction
    recovery_eligible: bool = False


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def clock_start(last_payment_date: Optional[datetime], activated_at: Optional[datetime]) -> Optional[datetime]:
    """The later of the last payment and activation, whichever are known."""
    known = [_as_utc(d) for d in (last_payment_date, activated_at) if d is not None]
    return max(known) if known else None


def expected_due_date(cadence: Cadence, last_payment_date: datetime) -> datetime:
    period = timedelta(days=CADENCE_PERIOD_DAYS[Cadence(cadence).value])
    return _as_utc(last_payment_date) + period


def weeks_delinquent(now: datetime, due_date: datetime) -> int:
    elapsed = _as_utc(now) - _as_utc(due_date)
    if elapsed <= timedelta(0):
        return 0
    return elapsed // WEEK + 1


def assess(
    cadence: Cadence,
    last_payment_date: Optional[datetime],
    now: datetime,
    policy: Optional[EffectivePolicy] = None,
) -> DelinquencyAssessment:
    """Compute the payment-health of a subscription at `now`.

    Without any payment on record there is no schedule yet, so nothing is due.
    """
    policy = policy or resolve_policy()
    if last_payment_date is None:
        return DelinquencyAssessment(
            weeks_delinquent=0,
            expected_due_date=None,
            late_fee_weeks=[],
            action=DelinquencyAction.CURRENT,
        )

    due = expected_due_date(cadence, last_payment_date)
    weeks = weeks_delinquent(now, due)

    suspend_at = policy.suspension_after_weeks
    recover_at = suspend_at + policy.recovery_after_weeks
    terminate_at = suspend_at + policy.termination_after_weeks

    fee_weeks = [w for w in LATE_FEE_WEEKS if w <= weeks and w < suspend_at]

    if weeks == 0:
        action = DelinquencyAction.CURRENT
    elif weeks < suspend_at:
        action = DelinquencyAction.LATE_FEE
    elif weeks >= terminate_at:
        action = DelinquencyAction.TERMINATE
    elif weeks >= recover_at:
        action = DelinquencyAction.RECOVER
    else:
        action = DelinquencyAction.SUSPEND

    return DelinquencyAssessment(
        weeks_delinquent=weeks,
        expected_due_date=due,
        late_fee_weeks=fee_weeks,
        action=action,
        recovery_eligible=weeks >= recover_at,
    )
