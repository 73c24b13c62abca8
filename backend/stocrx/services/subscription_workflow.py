"""
Subscription Workflow State Machine
Defines all valid states, transitions and guards for subscriptions.
This is the single source of truth for subscription lifecycle rules;
subscription_service applies the transitions and their side effects.
"""
from enum import Enum
from typing import Dict, List, Optional, Set

from pydantic import BaseModel

from stocrx.errors import StateConflictError
from stocrx.models.subscriptions import NextAction, SubscriptionStatus
from stocrx.models.vehicles import VehicleStatus


class TransitionTrigger(str, Enum):
    """Who or what drove a transition (recorded on the activity log)."""
    SYSTEM = "system"
    ADMIN = "admin"
    PAYMENT = "payment"
    COLLECTIONS = "collections"


# Valid state transitions - whitelist approach
ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, List[SubscriptionStatus]] = {
    SubscriptionStatus.PENDING: [SubscriptionStatus.ACTIVE, SubscriptionStatus.REJECTED],
    SubscriptionStatus.ACTIVE: [
        SubscriptionStatus.DELINQUENT,
        SubscriptionStatus.SUSPENDED,     # evaluation can jump straight past the fee weeks
        SubscriptionStatus.COMPLETED,
        SubscriptionStatus.TERMINATED,    # admin termination
    ],
    SubscriptionStatus.DELINQUENT: [
        SubscriptionStatus.ACTIVE,        # cured
        SubscriptionStatus.SUSPENDED,
        SubscriptionStatus.COMPLETED,
        SubscriptionStatus.TERMINATED,
    ],
    SubscriptionStatus.SUSPENDED: [SubscriptionStatus.TERMINATED],
    # Terminal states
    SubscriptionStatus.TERMINATED: [],
    SubscriptionStatus.COMPLETED: [],
    SubscriptionStatus.REJECTED: [],
}


# Subscriptions currently holding their vehicle
ACTIVE_LIKE_STATES: Set[SubscriptionStatus] = {
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.DELINQUENT,
}


TERMINAL_STATES: Set[SubscriptionStatus] = {
    SubscriptionStatus.TERMINATED,
    SubscriptionStatus.COMPLETED,
    SubscriptionStatus.REJECTED,
}


# States the scheduled sweep re-evaluates
SWEEP_STATES: Set[SubscriptionStatus] = {
    SubscriptionStatus.PENDING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.DELINQUENT,
    SubscriptionStatus.SUSPENDED,
}


# Ledger writes are refused for these (refunds excepted)
LEDGER_CLOSED_STATES: Set[SubscriptionStatus] = {
    SubscriptionStatus.TERMINATED,
    SubscriptionStatus.REJECTED,
    SubscriptionStatus.COMPLETED,
}


# Vehicle status each transition target forces, if any
VEHICLE_STATUS_ON_ENTER: Dict[SubscriptionStatus, VehicleStatus] = {
    SubscriptionStatus.ACTIVE: VehicleStatus.SUBSCRIBED,
    SubscriptionStatus.SUSPENDED: VehicleStatus.MAINTENANCE,   # out of the active fleet pending recovery
    SubscriptionStatus.TERMINATED: VehicleStatus.MAINTENANCE,
}


class Transition(BaseModel):
    """A decided transition plus the side effects it requires."""
    from_status: SubscriptionStatus
    to_status: SubscriptionStatus
    reason: str
    vehicle_status: Optional[VehicleStatus] = None
    flag_collections: bool = False
    request_title_transfer: bool = False


def is_valid_transition(from_status: SubscriptionStatus, to_status: SubscriptionStatus) -> bool:
    """Check if a state transition is valid"""
    if from_status not in ALLOWED_TRANSITIONS:
        return False
    return to_status in ALLOWED_TRANSITIONS[from_status]


def is_terminal_state(status: SubscriptionStatus) -> bool:
    return status in TERMINAL_STATES


def is_active_like(status: SubscriptionStatus) -> bool:
    return status in ACTIVE_LIKE_STATES


def get_allowed_transitions(status: SubscriptionStatus) -> List[SubscriptionStatus]:
    return ALLOWED_TRANSITIONS.get(status, [])


def plan_transition(from_status: SubscriptionStatus, to_status: SubscriptionStatus, reason: str) -> Transition:
    """Validate a transition and attach its side effects.

    Raises StateConflictError for transitions outside the whitelist.
    """
    if not is_valid_transition(from_status, to_status):
        raise StateConflictError(
            f"Invalid transition: {from_status.value} → {to_status.value}. "
            f"Allowed: {[s.value for s in get_allowed_transitions(from_status)]}",
            rule="subscription_transition_whitelist",
        )
    return Transition(
        from_status=from_status,
        to_status=to_status,
        reason=reason,
        vehicle_status=VEHICLE_STATUS_ON_ENTER.get(to_status),
        flag_collections=to_status == SubscriptionStatus.SUSPENDED,
        request_title_transfer=to_status == SubscriptionStatus.COMPLETED,
    )


def check_activation_guard(kyc_verified: bool, has_completed_down_payment: bool) -> Optional[NextAction]:
    """pending -> active guard. Returns the blocking next action, or None if clear."""
    if not kyc_verified:
        return NextAction.AWAIT_KYC
    if not has_completed_down_payment:
        return NextAction.AWAIT_DOWN_PAYMENT
    return None


def require_vehicle_claimable(vehicle: dict, subscription_id: str) -> None:
    """A vehicle may be claimed only if it is available or already held by this subscription."""
    status = vehicle.get("status")
    holder = vehicle.get("subscribed_by")
    if status == VehicleStatus.SUBSCRIBED.value and holder == subscription_id:
        return
    if status != VehicleStatus.AVAILABLE.value:
        raise StateConflictError(
            f"Vehicle {vehicle.get('vehicle_id')} is {status}"
            + (f" (held by {holder})" if holder else "")
            + "; it cannot be released to another subscription",
            rule="vehicle_single_active_subscription",
        )
