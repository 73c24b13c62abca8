"""STOCRX Data Models"""

from .policy import VehiclePricingPolicy, EffectivePolicy, resolve_policy
from .vehicles import Vehicle, VehicleCreate, VehicleStatus
from .subscriptions import (
    Cadence,
    CollectionsEvent,
    NextAction,
    Subscription,
    SubscriptionCreate,
    SubscriptionEvaluation,
    SubscriptionStatus,
)
from .payments import (
    BuyoutQuote,
    Payment,
    PaymentCreate,
    PaymentSettle,
    PaymentStatus,
    PaymentType,
)
from .claims import (
    Claim,
    ClaimCreate,
    ClaimDecision,
    ClaimDecisionResult,
    ClaimStatus,
    ClaimType,
)
from .activity import ActivityAction, ActivityLog

__all__ = [
    # Policy
    "VehiclePricingPolicy",
    "EffectivePolicy",
    "resolve_policy",
    # Vehicles
    "Vehicle",
    "VehicleCreate",
    "VehicleStatus",
    # Subscriptions
    "Cadence",
    "CollectionsEvent",
    "NextAction",
    "Subscription",
    "SubscriptionCreate",
    "SubscriptionEvaluation",
    "SubscriptionStatus",
    # Payments
    "BuyoutQuote",
    "Payment",
    "PaymentCreate",
    "PaymentSettle",
    "PaymentStatus",
    "PaymentType",
    # Claims
    "Claim",
    "ClaimCreate",
    "ClaimDecision",
    "ClaimDecisionResult",
    "ClaimStatus",
    "ClaimType",
    # Activity
    "ActivityAction",
    "ActivityLog",
]
