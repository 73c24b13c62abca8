"""Activity log entries (output only, never read by the engine)."""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid


class ActivityAction(str, Enum):
    # Fleet
    VEHICLE_REGISTERED = "VEHICLE_REGISTERED"
    VEHICLE_POLICY_UPDATED = "VEHICLE_POLICY_UPDATED"
    VEHICLE_RELEASED = "VEHICLE_RELEASED"

    # Subscription lifecycle
    SUBSCRIPTION_APPLIED = "SUBSCRIPTION_APPLIED"
    SUBSCRIPTION_STATUS_CHANGED = "SUBSCRIPTION_STATUS_CHANGED"
    KYC_VERIFIED = "KYC_VERIFIED"
    KYC_REJECTED = "KYC_REJECTED"
    COLLECTIONS_FLAGGED = "COLLECTIONS_FLAGGED"
    RECOVERY_ELIGIBLE = "RECOVERY_ELIGIBLE"
    TITLE_TRANSFER_REQUESTED = "TITLE_TRANSFER_REQUESTED"

    # Ledger
    PAYMENT_RECORDED = "PAYMENT_RECORDED"
    PAYMENT_SETTLED = "PAYMENT_SETTLED"
    LATE_FEE_ASSESSED = "LATE_FEE_ASSESSED"

    # Claims
    CLAIM_SUBMITTED = "CLAIM_SUBMITTED"
    CLAIM_REVIEW_STARTED = "CLAIM_REVIEW_STARTED"
    CLAIM_DECIDED = "CLAIM_DECIDED"


class ActivityLog(BaseModel):
    activity_id: str = Field(default_factory=lambda: f"ACT-{uuid.uuid4().hex[:12].upper()}")
    action: ActivityAction
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    actor: Optional[str] = None
    details: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
