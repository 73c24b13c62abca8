"""
Subscription Service - Business Logic Layer
Applies the subscription state machine (subscription_workflow) and its side
effects: vehicle claim / release, late fee billing, collections flags.

transition_locked() is the only function that changes a subscription's
status. Callers must hold subscription_lock() for the subscription.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from stocrx.errors import StateConflictError, ValidationError
from stocrx.models.activity import ActivityAction
from stocrx.models.payments import PaymentStatus, PaymentType
from stocrx.models.policy import AUTO_COMPLETE_ON_EVALUATION, MEMBERSHIP_FEE, resolve_vehicle_policy
from stocrx.models.subscriptions import (
    ALLOWED_TERMS_MONTHS,
    CollectionsEvent,
    NextAction,
    Subscription,
    SubscriptionCreate,
    SubscriptionEvaluation,
    SubscriptionStatus,
)
from stocrx.models.vehicles import VehicleStatus
from stocrx.services.delinquency import DelinquencyAction, DelinquencyAssessment, assess, clock_start
from stocrx.services.ledger_service import ledger_service
from stocrx.services.pricing import compute_late_fee, to_money
from stocrx.services.record_store import record_store
from stocrx.services.subscription_lock import subscription_lock
from stocrx.services.subscription_workflow import (
    TERMINAL_STATES,
    TransitionTrigger,
    check_activation_guard,
    is_active_like,
    plan_transition,
    require_vehicle_claimable,
)
from utils.audit import create_activity_log

logger = logging.getLogger(__name__)


def _evaluation(subscription: Dict[str, Any], weeks: int, next_action: NextAction) -> SubscriptionEvaluation:
    return SubscriptionEvaluation(
        subscription_id=subscription["subscription_id"],
        status=SubscriptionStatus(subscription["status"]),
        weeks_delinquent=weeks,
        next_action=next_action,
    )


def late_fee_key(subscription_id: str, assessment: DelinquencyAssessment, week: int) -> str:
    """One late fee per (delinquency episode, week); the episode is named by its due date."""
    return f"late-fee:{subscription_id}:{assessment.expected_due_date:%Y%m%d}:week-{week}"


class SubscriptionService:

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------
    async def create_subscription(
        self,
        payload: SubscriptionCreate,
        actor: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Customer application: pending subscription plus its pending up-front charges."""
        now = now or datetime.now(timezone.utc)
        if payload.term_months not in ALLOWED_TERMS_MONTHS:
            raise ValidationError(
                f"term_months must be one of {list(ALLOWED_TERMS_MONTHS)}, got {payload.term_months}",
                rule="term_months_allowed",
            )

        vehicle = await record_store.require("vehicle", payload.vehicle_id)
        if vehicle["status"] != VehicleStatus.AVAILABLE.value:
            raise StateConflictError(
                f"Vehicle {payload.vehicle_id} is {vehicle['status']} and not open for applications",
                rule="vehicle_available",
            )

        subscription = Subscription(
            vehicle_id=payload.vehicle_id,
            customer_email=payload.customer_email.strip().lower(),
            term_months=payload.term_months,
            cadence=payload.cadence,
            remaining_balance=float(to_money(vehicle["price"])),
            created_at=now,
            updated_at=now,
        )
        await record_store.create("subscription", subscription.model_dump())
        sid = subscription.subscription_id
        logger.info(f"Subscription applied: {sid} for vehicle {payload.vehicle_id} ({payload.cadence.value}, {payload.term_months} months)")

        await create_activity_log(
            action=ActivityAction.SUBSCRIPTION_APPLIED,
            entity_type="subscription",
            entity_id=sid,
            actor=actor or subscription.customer_email,
            details=f"Application for vehicle {payload.vehicle_id}",
            metadata={"term_months": payload.term_months, "cadence": payload.cadence.value},
        )

        up_front = [
            (PaymentType.DOWN_PAYMENT, to_money(vehicle.get("down_payment", 0))),
            (PaymentType.FINANCE_FEE, to_money(MEMBERSHIP_FEE)),
        ]
        async with subscription_lock(sid) as doc:
            for payment_type, amount in up_front:
                if amount <= 0:
                    continue
                await ledger_service.record_locked(
                    doc,
                    payment_type,
                    amount,
                    status=PaymentStatus.PENDING,
                    idempotency_key=f"application:{sid}:{payment_type.value}",
                    actor=actor,
                    now=now,
                )

        return subscription

    async def get_subscription(self, subscription_id: str) -> Subscription:
        return Subscription(**await record_store.require("subscription", subscription_id))

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    async def transition_locked(
        self,
        subscription: Dict[str, Any],
        to_status: SubscriptionStatus,
        reason: str,
        trigger: TransitionTrigger = TransitionTrigger.SYSTEM,
        actor: Optional[str] = None,
        extra_fields: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Apply one whitelisted transition and its side effects.

        Returns the subscription as it is after the write. Re-entering the
        current status is a no-op.
        """
        now = now or datetime.now(timezone.utc)
        sid = subscription["subscription_id"]
        from_status = SubscriptionStatus(subscription["status"])
        if from_status == to_status:
            return subscription

        transition = plan_transition(from_status, to_status, reason)

        fields: Dict[str, Any] = {"status": to_status.value, "updated_at": now}
        inc: Dict[str, Any] = {"version": 1}
        if to_status == SubscriptionStatus.ACTIVE:
            if from_status == SubscriptionStatus.PENDING:
                fields["activated_at"] = now
            else:
                fields["delinquent_since"] = None
        elif to_status == SubscriptionStatus.DELINQUENT:
            fields["delinquent_since"] = now
            inc["late_payment_count"] = 1
        elif to_status == SubscriptionStatus.SUSPENDED:
            fields["suspended_at"] = now
        elif to_status == SubscriptionStatus.COMPLETED:
            fields["completed_at"] = now
        elif to_status == SubscriptionStatus.TERMINATED:
            fields["terminated_at"] = now
            fields["termination_reason"] = reason
        elif to_status == SubscriptionStatus.REJECTED:
            fields["rejection_reason"] = reason
        if transition.flag_collections:
            fields["collections_flagged"] = True
        if extra_fields:
            fields.update(extra_fields)

        # The vehicle is claimed before the subscription goes active
        claimed = False
        if to_status == SubscriptionStatus.ACTIVE and from_status == SubscriptionStatus.PENDING:
            claimed = await self._claim_vehicle(subscription, now)

        version = subscription.get("version", 0)
        ok = await record_store.update(
            "subscription",
            sid,
            fields,
            expected={"version": version},
            inc=inc,
        )
        if not ok:
            if claimed:
                await self._unclaim_vehicle(subscription, now)
            raise StateConflictError(
                f"Subscription {sid} changed during {from_status.value} → {to_status.value}",
                rule="single_writer_per_subscription",
            )

        updated = dict(subscription)
        updated.update(fields)
        updated["version"] = version + 1
        if "late_payment_count" in inc:
            updated["late_payment_count"] = subscription.get("late_payment_count", 0) + 1

        logger.info(f"Subscription {sid}: {from_status.value} → {to_status.value} ({reason})")

        if transition.vehicle_status and transition.vehicle_status != VehicleStatus.SUBSCRIBED:
            await self._move_vehicle(updated, transition.vehicle_status, now)

        await create_activity_log(
            action=ActivityAction.SUBSCRIPTION_STATUS_CHANGED,
            entity_type="subscription",
            entity_id=sid,
            actor=actor or trigger.value,
            details=reason,
            before_state={"status": from_status.value},
            after_state={"status": to_status.value},
            metadata={"trigger": trigger.value},
        )
        if transition.flag_collections:
            logger.warning(f"Subscription {sid} referred to collections")
            await create_activity_log(
                action=ActivityAction.COLLECTIONS_FLAGGED,
                entity_type="subscription",
                entity_id=sid,
                details=reason,
            )
        if transition.request_title_transfer:
            await create_activity_log(
                action=ActivityAction.TITLE_TRANSFER_REQUESTED,
                entity_type="subscription",
                entity_id=sid,
                details=f"Ownership reached on vehicle {subscription['vehicle_id']}",
                metadata={"vehicle_id": subscription["vehicle_id"], "total_paid": updated.get("total_paid")},
            )
        return updated

    async def _claim_vehicle(self, subscription: Dict[str, Any], now: datetime) -> bool:
        """Compare-and-set the vehicle from available to subscribed. False if we already hold it."""
        sid = subscription["subscription_id"]
        vehicle_id = subscription["vehicle_id"]
        vehicle = await record_store.require("vehicle", vehicle_id)
        require_vehicle_claimable(vehicle, sid)
        if vehicle["status"] == VehicleStatus.SUBSCRIBED.value:
            return False

        claimed = await record_store.find_one_and_update(
            "vehicle",
            {"vehicle_id": vehicle_id, "status": VehicleStatus.AVAILABLE.value},
            {"$set": {"status": VehicleStatus.SUBSCRIBED.value, "subscribed_by": sid, "updated_at": now}},
        )
        if claimed is None:
            # Someone else got there first
            require_vehicle_claimable(await record_store.require("vehicle", vehicle_id), sid)
            return False
        logger.info(f"Vehicle {vehicle_id} subscribed by {sid}")
        return True

    async def _unclaim_vehicle(self, subscription: Dict[str, Any], now: datetime) -> None:
        await record_store.update(
            "vehicle",
            subscription["vehicle_id"],
            {"status": VehicleStatus.AVAILABLE.value, "subscribed_by": None, "updated_at": now},
            expected={"subscribed_by": subscription["subscription_id"]},
        )
        logger.warning(f"Vehicle {subscription['vehicle_id']} released after failed activation of {subscription['subscription_id']}")

    async def _move_vehicle(self, subscription: Dict[str, Any], target: VehicleStatus, now: datetime) -> None:
        """Move the vehicle this subscription holds, if it is not there already."""
        moved = await record_store.update(
            "vehicle",
            subscription["vehicle_id"],
            {"status": target.value, "updated_at": now},
            expected={"subscribed_by": subscription["subscription_id"], "status": {"$ne": target.value}},
        )
        if moved:
            logger.info(f"Vehicle {subscription['vehicle_id']} -> {target.value} ({subscription['subscription_id']} {subscription['status']})")

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------
    async def evaluate_subscription(
        self,
        subscription_id: str,
        now: Optional[datetime] = None,
    ) -> SubscriptionEvaluation:
        """Recompute delinquency and apply whatever transitions it calls for.

        Idempotent: a second call with the same `now` and no new payments
        returns the same result and writes nothing.
        """
        now = now or datetime.now(timezone.utc)
        async with subscription_lock(subscription_id) as subscription:
            return await self._evaluate_locked(subscription, now)

    async def _evaluate_locked(self, subscription: Dict[str, Any], now: datetime) -> SubscriptionEvaluation:
        sid = subscription["subscription_id"]
        status = SubscriptionStatus(subscription["status"])

        if status == SubscriptionStatus.COMPLETED:
            return _evaluation(subscription, 0, NextAction.TRANSFER_TITLE)
        if status in TERMINAL_STATES:
            return _evaluation(subscription, 0, NextAction.NONE)

        vehicle = await record_store.require("vehicle", subscription["vehicle_id"])
        policy = resolve_vehicle_policy(vehicle)

        if status == SubscriptionStatus.PENDING:
            down_paid = to_money(vehicle.get("down_payment", 0)) <= 0 or await ledger_service.has_completed_payment(
                sid, PaymentType.DOWN_PAYMENT
            )
            blocked = check_activation_guard(subscription.get("kyc_verified", False), down_paid)
            if blocked:
                return _evaluation(subscription, 0, blocked)
            subscription = await self.transition_locked(
                subscription,
                SubscriptionStatus.ACTIVE,
                reason="KYC verified and down payment received",
                now=now,
            )
            status = SubscriptionStatus.ACTIVE

        if (
            AUTO_COMPLETE_ON_EVALUATION
            and is_active_like(status)
            and to_money(subscription.get("total_paid", 0)) >= to_money(vehicle["price"])
        ):
            subscription = await self.transition_locked(
                subscription,
                SubscriptionStatus.COMPLETED,
                reason="total paid reached vehicle price",
                now=now,
            )
            return _evaluation(subscription, 0, NextAction.TRANSFER_TITLE)

        last_paid = clock_start(subscription.get("last_payment_date"), subscription.get("activated_at"))
        assessment = assess(subscription["cadence"], last_paid, now, policy)
        weeks = assessment.weeks_delinquent

        if is_active_like(status):
            if assessment.action == DelinquencyAction.CURRENT:
                if status == SubscriptionStatus.DELINQUENT:
                    subscription = await self.transition_locked(
                        subscription, SubscriptionStatus.ACTIVE, reason="cured: payment received", now=now
                    )
                return _evaluation(subscription, 0, NextAction.NONE)

            if status == SubscriptionStatus.ACTIVE:
                subscription = await self.transition_locked(
                    subscription,
                    SubscriptionStatus.DELINQUENT,
                    reason=f"{weeks} week(s) past due {assessment.expected_due_date:%Y-%m-%d}",
                    now=now,
                )
            await self._bill_late_fees(subscription, assessment, policy, now)

            if assessment.action == DelinquencyAction.LATE_FEE:
                return _evaluation(subscription, weeks, NextAction.COLLECT_LATE_FEE)

            subscription = await self.transition_locked(
                subscription,
                SubscriptionStatus.SUSPENDED,
                reason=f"{weeks} weeks past due",
                now=now,
            )

        # Suspended from here on
        await self._move_vehicle(subscription, VehicleStatus.MAINTENANCE, now)

        if assessment.action == DelinquencyAction.TERMINATE:
            subscription = await self.transition_locked(
                subscription,
                SubscriptionStatus.TERMINATED,
                reason=f"not cured {weeks} weeks past due",
                now=now,
            )
            return _evaluation(subscription, weeks, NextAction.NONE)

        if assessment.recovery_eligible:
            if not subscription.get("recovery_eligible"):
                subscription = await self._flag_recovery(subscription, weeks, now)
            return _evaluation(subscription, weeks, NextAction.RECOVER_VEHICLE)

        return _evaluation(subscription, weeks, NextAction.REFER_TO_COLLECTIONS)

    async def _bill_late_fees(
        self,
        subscription: Dict[str, Any],
        assessment: DelinquencyAssessment,
        policy,
        now: datetime,
    ) -> None:
        """Record a pending late fee for every fee week reached, once each."""
        for week in assessment.late_fee_weeks:
            fee = compute_late_fee(week, policy)
            if fee <= Decimal("0"):
                continue
            payment, created = await ledger_service.record_locked(
                subscription,
                PaymentType.LATE_FEE,
                fee,
                status=PaymentStatus.PENDING,
                idempotency_key=late_fee_key(subscription["subscription_id"], assessment, week),
                now=now,
            )
            if created:
                logger.info(f"Late fee week {week} ({fee}) billed to {subscription['subscription_id']}: {payment.payment_id}")

    async def _flag_recovery(self, subscription: Dict[str, Any], weeks: int, now: datetime) -> Dict[str, Any]:
        sid = subscription["subscription_id"]
        version = subscription.get("version", 0)
        ok = await record_store.update(
            "subscription",
            sid,
            {"recovery_eligible": True, "updated_at": now},
            expected={"version": version},
            inc={"version": 1},
        )
        if not ok:
            raise StateConflictError(f"Subscription {sid} changed while flagging recovery", rule="single_writer_per_subscription")
        logger.warning(f"Subscription {sid} eligible for vehicle recovery ({weeks} weeks past due)")
        await create_activity_log(
            action=ActivityAction.RECOVERY_ELIGIBLE,
            entity_type="subscription",
            entity_id=sid,
            details=f"Vehicle {subscription['vehicle_id']} eligible for pickup",
            metadata={"weeks_delinquent": weeks},
        )
        updated = dict(subscription)
        updated.update({"recovery_eligible": True, "updated_at": now, "version": version + 1})
        return updated

    # ------------------------------------------------------------------
    # Admin / external signals
    # ------------------------------------------------------------------
    async def set_kyc_status(
        self,
        subscription_id: str,
        verified: bool,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SubscriptionEvaluation:
        """Record the KYC outcome. Verification re-evaluates, denial rejects a pending application."""
        now = now or datetime.now(timezone.utc)
        async with subscription_lock(subscription_id) as subscription:
            status = SubscriptionStatus(subscription["status"])

            if not verified:
                if status == SubscriptionStatus.REJECTED:
                    return _evaluation(subscription, 0, NextAction.NONE)
                if status != SubscriptionStatus.PENDING:
                    raise StateConflictError(
                        f"KYC can only be denied on a pending application, {subscription_id} is {status.value}",
                        rule="kyc_denial_requires_pending",
                    )
                subscription = await self.transition_locked(
                    subscription,
                    SubscriptionStatus.REJECTED,
                    reason=reason or "KYC denied",
                    trigger=TransitionTrigger.ADMIN,
                    actor=actor,
                    extra_fields={"kyc_verified": False},
                    now=now,
                )
                await create_activity_log(
                    action=ActivityAction.KYC_REJECTED,
                    entity_type="subscription",
                    entity_id=subscription_id,
                    actor=actor,
                    details=reason,
                )
                return _evaluation(subscription, 0, NextAction.NONE)

            if status == SubscriptionStatus.REJECTED:
                raise StateConflictError(
                    f"Subscription {subscription_id} was rejected; a new application is required",
                    rule="subscription_transition_whitelist",
                )
            if not subscription.get("kyc_verified"):
                version = subscription.get("version", 0)
                ok = await record_store.update(
                    "subscription",
                    subscription_id,
                    {"kyc_verified": True, "updated_at": now},
                    expected={"version": version},
                    inc={"version": 1},
                )
                if not ok:
                    raise StateConflictError(
                        f"Subscription {subscription_id} changed while recording KYC",
                        rule="single_writer_per_subscription",
                    )
                subscription = {**subscription, "kyc_verified": True, "updated_at": now, "version": version + 1}
                logger.info(f"KYC verified for {subscription_id}")
                await create_activity_log(
                    action=ActivityAction.KYC_VERIFIED,
                    entity_type="subscription",
                    entity_id=subscription_id,
                    actor=actor,
                )

            return await self._evaluate_locked(subscription, now)

    async def apply_collections_event(
        self,
        subscription_id: str,
        event: Any,
        actor: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """External collections / recovery outcome ends a suspended subscription."""
        try:
            event = CollectionsEvent(event)
        except ValueError:
            raise ValidationError(
                f"Unknown collections event: {event}. Allowed: {[e.value for e in CollectionsEvent]}",
                rule="collections_event_known",
            )

        async with subscription_lock(subscription_id) as subscription:
            status = SubscriptionStatus(subscription["status"])
            if status == SubscriptionStatus.TERMINATED:
                return Subscription(**subscription)
            if status != SubscriptionStatus.SUSPENDED:
                raise StateConflictError(
                    f"Collections events apply to suspended subscriptions, {subscription_id} is {status.value}",
                    rule="collections_requires_suspended",
                )
            subscription = await self.transition_locked(
                subscription,
                SubscriptionStatus.TERMINATED,
                reason=f"collections: {event.value}",
                trigger=TransitionTrigger.COLLECTIONS,
                actor=actor,
                now=now,
            )
            return Subscription(**subscription)

    async def terminate_subscription(
        self,
        subscription_id: str,
        reason: str,
        actor: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        async with subscription_lock(subscription_id) as subscription:
            subscription = await self.transition_locked(
                subscription,
                SubscriptionStatus.TERMINATED,
                reason=reason,
                trigger=TransitionTrigger.ADMIN,
                actor=actor,
                now=now,
            )
            return Subscription(**subscription)


# Global service instance
subscription_service = SubscriptionService()
