"""Payment Models

Payments are immutable ledger entries owned by a subscription. The only
mutation ever applied is settling a PENDING record to COMPLETED or FAILED.
"""
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime, timezone
from enum import Enum
import uuid


class PaymentType(str, Enum):
    DOWN_PAYMENT = "down_payment"
    RECURRING_CHARGE = "recurring_charge"
    LATE_FEE = "late_fee"
    FINANCE_FEE = "finance_fee"      # membership fee collected at application
    BUYOUT = "buyout"
    REFUND = "refund"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


# Types whose completed amounts make up Subscription.total_paid
OWNERSHIP_PAYMENT_TYPES = frozenset({PaymentType.DOWN_PAYMENT, PaymentType.RECURRING_CHARGE})

# Types carrying the 0.6% platform fee
PLATFORM_FEE_PAYMENT_TYPES = frozenset({PaymentType.RECURRING_CHARGE, PaymentType.BUYOUT})

# Flagged non-refundable at creation; the flag never changes
NON_REFUNDABLE_PAYMENT_TYPES = frozenset({PaymentType.DOWN_PAYMENT, PaymentType.FINANCE_FEE})


class Payment(BaseModel):
    payment_id: str = Field(default_factory=lambda: f"PAY-{uuid.uuid4().hex[:12].upper()}")
    subscription_id: str

    payment_type: PaymentType
    amount: float
    platform_fee: float = 0.0
    non_refundable: bool = False
    status: PaymentStatus = PaymentStatus.COMPLETED

    idempotency_key: str
    reference_id: Optional[str] = None  # e.g. claim_id for refunds

    created_date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    settled_at: Optional[datetime] = None

    model_config = {"extra": "ignore"}


class PaymentCreate(BaseModel):
    """recordPayment request body."""
    subscription_id: str
    payment_type: str
    amount: float
    status: PaymentStatus = PaymentStatus.COMPLETED
    idempotency_key: Optional[str] = None


class PaymentSettle(BaseModel):
    status: PaymentStatus


class BuyoutQuote(BaseModel):
    subscription_id: str
    remaining_balance: float
    multiplier: float
    amount: float
    platform_fee: float
