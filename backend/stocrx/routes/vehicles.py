"""STOCRX Fleet Routes

Endpoints:
- POST /api/vehicles - Register a vehicle
- GET /api/vehicles/{vehicle_id} - Get a vehicle
- GET /api/vehicles/{vehicle_id}/quote - Recurring charge quote for a cadence
- PUT /api/vehicles/{vehicle_id}/pricing-policy - Replace per-vehicle policy overrides
- POST /api/vehicles/{vehicle_id}/release - Return a vehicle to the available fleet
"""

from fastapi import APIRouter, Header, Query
from typing import Optional
from pydantic import BaseModel
import logging

from stocrx.models.policy import VehiclePricingPolicy
from stocrx.models.subscriptions import Cadence
from stocrx.models.vehicles import Vehicle, VehicleCreate
from stocrx.services.fleet_service import fleet_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/vehicles", tags=["STOCRX Fleet"])


class PriceQuote(BaseModel):
    vehicle_id: str
    cadence: Cadence
    base: float
    tax: float
    total: float


@router.post("", response_model=Vehicle, status_code=201)
async def register_vehicle(payload: VehicleCreate, x_actor: Optional[str] = Header(None)):
    return await fleet_service.register_vehicle(payload, actor=x_actor)


@router.get("/{vehicle_id}", response_model=Vehicle)
async def get_vehicle(vehicle_id: str):
    return await fleet_service.get_vehicle(vehicle_id)


@router.get("/{vehicle_id}/quote", response_model=PriceQuote)
async def quote_price(vehicle_id: str, cadence: str = Query("monthly")):
    """Tax-inclusive recurring charge for one period."""
    quote = await fleet_service.quote_price(vehicle_id, cadence)
    return PriceQuote(vehicle_id=vehicle_id, cadence=cadence, **quote)


@router.put("/{vehicle_id}/pricing-policy", response_model=Vehicle)
async def set_pricing_policy(vehicle_id: str, policy: VehiclePricingPolicy, x_actor: Optional[str] = Header(None)):
    return await fleet_service.set_pricing_policy(vehicle_id, policy, actor=x_actor)


@router.post("/{vehicle_id}/release", response_model=Vehicle)
async def release_vehicle(vehicle_id: str, x_actor: Optional[str] = Header(None)):
    return await fleet_service.release_vehicle(vehicle_id, actor=x_actor)
