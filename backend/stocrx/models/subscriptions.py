"""Subscription Models

Lifecycle:
pending -> active -> (delinquent <-> active) -> suspended -> terminated
Alternate terminals: completed (ownership reached), rejected (KYC denied).
"""
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime, timezone
from enum import Enum
import uuid


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    DELINQUENT = "delinquent"
    SUSPENDED = "suspended"
    TERMINATED = "terminated"
    COMPLETED = "completed"
    REJECTED = "rejected"


class Cadence(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class NextAction(str, Enum):
    """What the operator (or the customer) has to do next."""
    NONE = "none"
    AWAIT_KYC = "await_kyc"
    AWAIT_DOWN_PAYMENT = "await_down_payment"
    COLLECT_LATE_FEE = "collect_late_fee"
    REFER_TO_COLLECTIONS = "refer_to_collections"
    RECOVER_VEHICLE = "recover_vehicle"
    TRANSFER_TITLE = "transfer_title"


class CollectionsEvent(str, Enum):
    """External collections / recovery signal."""
    RECOVERY_COMPLETED = "recovery_completed"
    COLLECTIONS_COMPLETED = "collections_completed"
    WRITTEN_OFF = "written_off"


ALLOWED_TERMS_MONTHS = (3, 4, 5, 6)


class Subscription(BaseModel):
    subscription_id: str = Field(default_factory=lambda: f"SUB-{uuid.uuid4().hex[:12].upper()}")
    vehicle_id: str
    customer_email: str

    term_months: int
    cadence: Cadence
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    kyc_verified: bool = False

    # Ledger-derived running totals
    total_paid: float = 0.0
    remaining_balance: float = 0.0
    last_payment_date: Optional[datetime] = None
    late_payment_count: int = 0
    applied_payment_ids: List[str] = Field(default_factory=list)   # payments reflected in the totals above

    # Delinquency / collections
    delinquent_since: Optional[datetime] = None
    collections_flagged: bool = False
    recovery_eligible: bool = False

    # Lifecycle timestamps
    activated_at: Optional[datetime] = None
    suspended_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    terminated_at: Optional[datetime] = None
    termination_reason: Optional[str] = None
    rejection_reason: Optional[str] = None

    version: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"extra": "ignore"}


class SubscriptionCreate(BaseModel):
    """Application payload (customer applies for a vehicle)."""
    vehicle_id: str
    customer_email: str = Field(min_length=3)
    term_months: int
    cadence: Cadence = Cadence.MONTHLY


class SubscriptionEvaluation(BaseModel):
    """Result of one evaluation cycle."""
    subscription_id: str
    status: SubscriptionStatus
    weeks_delinquent: int
    next_action: NextAction
