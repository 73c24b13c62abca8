"""
Fleet Service
Vehicle registration, per-vehicle pricing policy and price quotes.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from stocrx.errors import StateConflictError, ValidationError
from stocrx.models.activity import ActivityAction
from stocrx.models.policy import VehiclePricingPolicy
from stocrx.models.subscriptions import Cadence
from stocrx.models.vehicles import Vehicle, VehicleCreate, VehicleStatus
from stocrx.services.pricing import compute_recurring_charge
from stocrx.services.record_store import record_store
from stocrx.services.subscription_workflow import ACTIVE_LIKE_STATES
from utils.audit import create_activity_log

logger = logging.getLogger(__name__)

RELEASABLE_STATUSES = (VehicleStatus.MAINTENANCE, VehicleStatus.SUSPENDED)


class FleetService:

    async def register_vehicle(self, payload: VehicleCreate, actor: Optional[str] = None) -> Vehicle:
        vehicle = Vehicle(**payload.model_dump())
        await record_store.create("vehicle", vehicle.model_dump())
        logger.info(f"Vehicle registered: {vehicle.vehicle_id} {vehicle.display_name}")
        await create_activity_log(
            action=ActivityAction.VEHICLE_REGISTERED,
            entity_type="vehicle",
            entity_id=vehicle.vehicle_id,
            actor=actor,
            details=vehicle.display_name,
            metadata={"price": vehicle.price},
        )
        return vehicle

    async def get_vehicle(self, vehicle_id: str) -> Vehicle:
        return Vehicle(**await record_store.require("vehicle", vehicle_id))

    async def quote_price(self, vehicle_id: str, cadence: Any) -> Dict[str, float]:
        """Recurring charge for one period at the given cadence: {base, tax, total}."""
        try:
            cadence = Cadence(cadence)
        except ValueError:
            raise ValidationError(
                f"Unknown cadence: {cadence}. Allowed: {[c.value for c in Cadence]}",
                rule="cadence_known",
            )
        vehicle = await self.get_vehicle(vehicle_id)
        base = vehicle.weekly_subscription if cadence == Cadence.WEEKLY else vehicle.monthly_subscription
        return compute_recurring_charge(base).as_floats()

    async def set_pricing_policy(
        self,
        vehicle_id: str,
        policy: VehiclePricingPolicy,
        actor: Optional[str] = None,
    ) -> Vehicle:
        before = await record_store.require("vehicle", vehicle_id)
        serialized = policy.model_dump()
        await record_store.update(
            "vehicle",
            vehicle_id,
            {"pricing_policy": serialized, "updated_at": datetime.now(timezone.utc)},
        )
        logger.info(f"Pricing policy updated for vehicle {vehicle_id}")
        await create_activity_log(
            action=ActivityAction.VEHICLE_POLICY_UPDATED,
            entity_type="vehicle",
            entity_id=vehicle_id,
            actor=actor,
            before_state={"pricing_policy": before.get("pricing_policy")},
            after_state={"pricing_policy": serialized},
        )
        return await self.get_vehicle(vehicle_id)

    async def release_vehicle(self, vehicle_id: str, actor: Optional[str] = None) -> Vehicle:
        """Return a recovered or serviced vehicle to the available fleet."""
        vehicle = await record_store.require("vehicle", vehicle_id)
        status = VehicleStatus(vehicle["status"])
        if status == VehicleStatus.AVAILABLE:
            return Vehicle(**vehicle)
        if status not in RELEASABLE_STATUSES:
            raise StateConflictError(
                f"Vehicle {vehicle_id} is {status.value}; only maintenance or suspended vehicles can be released",
                rule="vehicle_release_status",
            )

        holder = await record_store.find_one(
            "subscription",
            {"vehicle_id": vehicle_id, "status": {"$in": [s.value for s in ACTIVE_LIKE_STATES]}},
        )
        if holder:
            raise StateConflictError(
                f"Vehicle {vehicle_id} is still held by {holder['subscription_id']} ({holder['status']})",
                rule="vehicle_single_active_subscription",
            )

        ok = await record_store.update(
            "vehicle",
            vehicle_id,
            {"status": VehicleStatus.AVAILABLE.value, "subscribed_by": None, "updated_at": datetime.now(timezone.utc)},
            expected={"status": status.value},
        )
        if not ok:
            raise StateConflictError(f"Vehicle {vehicle_id} changed concurrently", rule="vehicle_release_status")

        logger.info(f"Vehicle {vehicle_id} released to fleet (was {status.value})")
        await create_activity_log(
            action=ActivityAction.VEHICLE_RELEASED,
            entity_type="vehicle",
            entity_id=vehicle_id,
            actor=actor,
            before_state={"status": status.value, "subscribed_by": vehicle.get("subscribed_by")},
            after_state={"status": VehicleStatus.AVAILABLE.value, "subscribed_by": None},
        )
        return await self.get_vehicle(vehicle_id)


# Global service instance
fleet_service = FleetService()
