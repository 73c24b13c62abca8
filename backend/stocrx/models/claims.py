"""Claim Models

submitted -> under_review -> approved | denied
Admins may also approve/deny straight from submitted.
"""
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime, timezone
from enum import Enum
import uuid


class ClaimType(str, Enum):
    DAMAGE = "damage"
    INSURANCE = "insurance"
    OTHER = "other"


class ClaimStatus(str, Enum):
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    DENIED = "denied"


class Claim(BaseModel):
    claim_id: str = Field(default_factory=lambda: f"CLM-{uuid.uuid4().hex[:12].upper()}")
    subscription_id: str
    vehicle_id: str

    claim_type: ClaimType
    status: ClaimStatus = ClaimStatus.SUBMITTED
    incident_date: datetime
    description: Optional[str] = None
    total_loss: bool = False
    requested_amount: Optional[float] = None

    # Decision
    refund_payment_id: Optional[str] = None
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"extra": "ignore"}


class ClaimCreate(BaseModel):
    subscription_id: str
    vehicle_id: str
    claim_type: ClaimType
    incident_date: datetime
    description: Optional[str] = None
    total_loss: bool = False
    requested_amount: Optional[float] = Field(default=None, gt=0)


class ClaimDecision(BaseModel):
    decision: ClaimStatus
    refund_amount: Optional[float] = None
    decided_by: Optional[str] = None


class ClaimDecisionResult(BaseModel):
    claim: Claim
    refund_payment_id: Optional[str] = None
    next_action: Optional[str] = None   # "terminate_subscription" for total-loss approvals
