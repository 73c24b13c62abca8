"""Vehicle Models

A vehicle is referenced, never owned, by subscriptions. At most one
active-like subscription holds it at a time (status SUBSCRIBED,
subscribed_by = that subscription).
"""
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime, timezone
from enum import Enum
import uuid

from stocrx.models.policy import VehiclePricingPolicy


class VehicleStatus(str, Enum):
    AVAILABLE = "available"
    SUBSCRIBED = "subscribed"
    MAINTENANCE = "maintenance"    # removed from active fleet (e.g. pending recovery)
    SUSPENDED = "suspended"


class Vehicle(BaseModel):
    vehicle_id: str = Field(default_factory=lambda: f"VEH-{uuid.uuid4().hex[:12].upper()}")

    # Identity
    vin: Optional[str] = None
    year: int
    make: str
    model: str

    # Base (pre-tax) pricing
    price: float                   # total ownership price
    weekly_subscription: float
    monthly_subscription: float
    down_payment: float

    status: VehicleStatus = VehicleStatus.AVAILABLE
    subscribed_by: Optional[str] = None

    pricing_policy: Optional[VehiclePricingPolicy] = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"extra": "ignore"}

    @property
    def display_name(self) -> str:
        return f"{self.year} {self.make} {self.model}"


class VehicleCreate(BaseModel):
    """Fleet registration payload."""
    vin: Optional[str] = None
    year: int = Field(ge=1950, le=2100)
    make: str = Field(min_length=1)
    model: str = Field(min_length=1)
    price: float = Field(gt=0)
    weekly_subscription: float = Field(ge=0)
    monthly_subscription: float = Field(ge=0)
    down_payment: float = Field(ge=0)
    pricing_policy: Optional[VehiclePricingPolicy] = None
