"""
Ledger Recorder - Business Logic Layer

Append-only payment ledger. Every record is immutable except for the one
allowed settlement step (pending -> completed | failed).

Rules kept here:
- total_paid == sum of COMPLETED down_payment + recurring_charge amounts
- remaining_balance == max(vehicle price - total_paid, 0)
- platform fee (0.6%) only on recurring_charge and buyout
- an idempotency key maps to exactly one payment, however often replayed

Write path (under the subscription lease):
1. insert the payment record
2. apply it to the subscription totals with a version guard, remembering
   the payment id in applied_payment_ids
3. if step 2 fails, delete the record again and raise PersistenceError

A replay of the same key after a partial failure finishes step 2, since
the subscription knows which payments it has already absorbed.
"""
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from pymongo.errors import DuplicateKeyError

from stocrx.errors import PersistenceError, StateConflictError, ValidationError
from stocrx.models.activity import ActivityAction
from stocrx.models.payments import (
    BuyoutQuote,
    NON_REFUNDABLE_PAYMENT_TYPES,
    OWNERSHIP_PAYMENT_TYPES,
    Payment,
    PaymentStatus,
    PaymentType,
)
from stocrx.models.policy import resolve_vehicle_policy
from stocrx.models.subscriptions import SubscriptionStatus
from stocrx.services.pricing import compute_early_buyout, compute_platform_fee, to_money
from stocrx.services.record_store import record_store
from stocrx.services.subscription_lock import subscription_lock
from stocrx.services.subscription_workflow import (
    LEDGER_CLOSED_STATES,
    TransitionTrigger,
    is_active_like,
)
from utils.audit import create_activity_log

logger = logging.getLogger(__name__)


def parse_payment_type(value: Any) -> PaymentType:
    try:
        return PaymentType(value)
    except ValueError:
        raise ValidationError(
            f"Unknown payment type: {value}. Allowed: {[t.value for t in PaymentType]}",
            rule="payment_type_known",
        )


def parse_amount(value: Any) -> Decimal:
    """Amounts must be positive and are rounded to cents."""
    if isinstance(value, bool) or value is None:
        raise ValidationError("amount must be a number", rule="amount_positive")
    try:
        amount = to_money(value)
    except (ArithmeticError, TypeError, ValueError):
        raise ValidationError(f"amount is not a number: {value!r}", rule="amount_positive")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"amount must be > 0, got {value}", rule="amount_positive")
    return amount


class LedgerService:
    """Records, settles and lists ledger entries for subscriptions."""

    # ------------------------------------------------------------------
    # recordPayment
    # ------------------------------------------------------------------
    async def record_payment(
        self,
        subscription_id: str,
        payment_type: Any,
        amount: Any,
        status: PaymentStatus = PaymentStatus.COMPLETED,
        idempotency_key: Optional[str] = None,
        reference_id: Optional[str] = None,
        actor: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Payment:
        ptype = parse_payment_type(payment_type)
        money = parse_amount(amount)
        status = PaymentStatus(status)
        key = idempotency_key or f"{subscription_id}:{uuid.uuid4().hex}"

        async with subscription_lock(subscription_id) as subscription:
            payment, _ = await self.record_locked(
                subscription,
                ptype,
                money,
                status=status,
                idempotency_key=key,
                reference_id=reference_id,
                actor=actor,
                now=now,
            )
            return payment

    async def record_locked(
        self,
        subscription: Dict[str, Any],
        payment_type: PaymentType,
        amount: Decimal,
        status: PaymentStatus,
        idempotency_key: str,
        reference_id: Optional[str] = None,
        actor: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[Payment, bool]:
        """Record a payment for a subscription whose lease the caller holds.

        Returns (payment, created). created is False for an idempotent replay.
        """
        now = now or datetime.now(timezone.utc)
        subscription_id = subscription["subscription_id"]

        existing = await record_store.find_one("payment", {"idempotency_key": idempotency_key})
        if existing:
            return await self._replay(subscription, existing, payment_type, amount, now), False

        sub_status = SubscriptionStatus(subscription["status"])
        if sub_status in LEDGER_CLOSED_STATES and payment_type != PaymentType.REFUND:
            raise StateConflictError(
                f"Subscription {subscription_id} is {sub_status.value}; only refunds may be recorded",
                rule="ledger_open",
            )

        vehicle = await record_store.require("vehicle", subscription["vehicle_id"])
        if payment_type == PaymentType.BUYOUT:
            self._check_buyout(subscription, vehicle, amount)

        payment = Payment(
            subscription_id=subscription_id,
            payment_type=payment_type,
            amount=float(amount),
            platform_fee=float(compute_platform_fee(payment_type, amount)),
            non_refundable=payment_type in NON_REFUNDABLE_PAYMENT_TYPES,
            status=status,
            idempotency_key=idempotency_key,
            reference_id=reference_id,
            created_date=now,
            settled_at=now if status != PaymentStatus.PENDING else None,
        )

        try:
            await record_store.create("payment", payment.model_dump())
        except DuplicateKeyError:
            # Lost an insert race on the same key outside this lease
            existing = await record_store.find_one("payment", {"idempotency_key": idempotency_key})
            if not existing:
                raise PersistenceError(
                    f"Payment for key {idempotency_key} vanished after a duplicate insert",
                    rule="idempotent_payment",
                )
            return await self._replay(subscription, existing, payment_type, amount, now), False

        if status == PaymentStatus.COMPLETED:
            try:
                subscription = await self._apply(subscription, vehicle, payment)
            except (PersistenceError, StateConflictError) as e:
                await self._rollback_insert(payment, e)
                raise PersistenceError(
                    f"Payment {payment.payment_id} could not be applied to {subscription_id}; nothing was recorded",
                    rule="payment_atomicity",
                ) from e

        logger.info(
            f"Payment recorded: {payment.payment_id} {payment_type.value} {payment.amount:.2f} "
            f"({status.value}) on {subscription_id}"
        )
        await create_activity_log(
            action=ActivityAction.LATE_FEE_ASSESSED if payment_type == PaymentType.LATE_FEE else ActivityAction.PAYMENT_RECORDED,
            entity_type="payment",
            entity_id=payment.payment_id,
            actor=actor,
            details=f"{payment_type.value} {payment.amount:.2f} on {subscription_id}",
            metadata={
                "subscription_id": subscription_id,
                "status": status.value,
                "idempotency_key": idempotency_key,
                "reference_id": reference_id,
            },
        )

        if status == PaymentStatus.COMPLETED:
            await self._complete_if_owned(subscription, vehicle, payment, now)

        return payment, True

    async def _replay(
        self,
        subscription: Dict[str, Any],
        existing: Dict[str, Any],
        payment_type: PaymentType,
        amount: Decimal,
        now: datetime,
    ) -> Payment:
        """Return the payment already stored under a key, finishing its application if needed."""
        payment = Payment(**existing)
        if payment.subscription_id != subscription["subscription_id"]:
            raise StateConflictError(
                f"Idempotency key {payment.idempotency_key} already belongs to {payment.subscription_id}",
                rule="idempotent_payment",
            )
        if payment.payment_type != payment_type or to_money(payment.amount) != amount:
            logger.warning(
                f"Idempotent replay of {payment.payment_id} with different body "
                f"({payment_type.value} {amount}); returning the original"
            )

        if payment.status == PaymentStatus.COMPLETED:
            await self._finish_completed(subscription, payment, now)

        return payment

    async def _finish_completed(self, subscription: Dict[str, Any], payment: Payment, now: datetime) -> Dict[str, Any]:
        """Redo whatever a failed write left undone for a completed payment.

        Applies it if the subscription has not absorbed it yet, then retries
        completion, which is a no-op unless the payment owns the vehicle.
        """
        vehicle = await record_store.require("vehicle", subscription["vehicle_id"])
        if payment.payment_id not in subscription.get("applied_payment_ids", []):
            subscription = await self._apply(subscription, vehicle, payment)
            logger.info(f"Finished applying {payment.payment_id} to {payment.subscription_id}")
        await self._complete_if_owned(subscription, vehicle, payment, now)
        return subscription

    # ------------------------------------------------------------------
    # Applying to the subscription
    # ------------------------------------------------------------------
    async def _apply(
        self,
        subscription: Dict[str, Any],
        vehicle: Dict[str, Any],
        payment: Payment,
    ) -> Dict[str, Any]:
        """Fold a completed payment into the subscription's running totals.

        Non-ownership payments only get remembered as applied. Returns the
        subscription as it is after the write.
        """
        subscription_id = subscription["subscription_id"]
        fields: Dict[str, Any] = {"updated_at": datetime.now(timezone.utc)}

        if payment.payment_type in OWNERSHIP_PAYMENT_TYPES:
            total_paid = to_money(subscription.get("total_paid", 0)) + to_money(payment.amount)
            remaining = max(to_money(vehicle["price"]) - total_paid, Decimal("0"))
            fields["total_paid"] = float(total_paid)
            fields["remaining_balance"] = float(remaining)
            paid_at = payment.settled_at or payment.created_date
            last = subscription.get("last_payment_date")
            if last is None or _aware(paid_at) >= _aware(last):
                fields["last_payment_date"] = paid_at

        version = subscription.get("version", 0)
        ok = await record_store.update(
            "subscription",
            subscription_id,
            fields,
            expected={"version": version},
            inc={"version": 1},
            push={"applied_payment_ids": payment.payment_id},
        )
        if not ok:
            raise StateConflictError(
                f"Subscription {subscription_id} changed while applying {payment.payment_id}",
                rule="single_writer_per_subscription",
            )

        updated = dict(subscription)
        updated.update(fields)
        updated["version"] = version + 1
        updated["applied_payment_ids"] = list(subscription.get("applied_payment_ids", [])) + [payment.payment_id]
        return updated

    async def _rollback_insert(self, payment: Payment, cause: Exception) -> None:
        try:
            deleted = await record_store.delete("payment", payment.payment_id)
            logger.warning(f"Rolled back payment {payment.payment_id} after failed apply: {cause} (deleted={deleted})")
        except PersistenceError as e:
            # A replay with the same key will finish the apply
            logger.error(f"Rollback of payment {payment.payment_id} failed, left unapplied: {e}")

    async def _revert_settlement(self, payment: Payment, cause: Exception) -> None:
        try:
            await record_store.update(
                "payment",
                payment.payment_id,
                {"status": PaymentStatus.PENDING.value, "settled_at": None},
            )
            logger.warning(f"Settlement of {payment.payment_id} reverted to pending after failed apply: {cause}")
        except PersistenceError as e:
            # Settling again with the same status finishes the apply
            logger.error(f"Revert of settlement {payment.payment_id} failed, left completed but unapplied: {e}")

    async def _complete_if_owned(
        self,
        subscription: Dict[str, Any],
        vehicle: Dict[str, Any],
        payment: Payment,
        now: datetime,
    ) -> None:
        """A completed buyout, or the payment that reaches the price, completes the subscription."""
        status = SubscriptionStatus(subscription["status"])
        if not is_active_like(status):
            return

        if payment.payment_type == PaymentType.BUYOUT:
            reason = f"early buyout {payment.payment_id}"
            extra = {"remaining_balance": 0.0}
        elif (
            payment.payment_type in OWNERSHIP_PAYMENT_TYPES
            and to_money(subscription.get("total_paid", 0)) >= to_money(vehicle["price"])
        ):
            reason = f"final payment {payment.payment_id}"
            extra = {}
        else:
            return

        from stocrx.services.subscription_service import subscription_service

        await subscription_service.transition_locked(
            subscription,
            SubscriptionStatus.COMPLETED,
            reason=reason,
            trigger=TransitionTrigger.PAYMENT,
            extra_fields=extra,
            now=now,
        )

    def _check_buyout(self, subscription: Dict[str, Any], vehicle: Dict[str, Any], amount: Decimal) -> None:
        status = SubscriptionStatus(subscription["status"])
        if not is_active_like(status):
            raise StateConflictError(
                f"Buyout requires an active or delinquent subscription, {subscription['subscription_id']} is {status.value}",
                rule="buyout_requires_active_subscription",
            )
        quote = compute_early_buyout(subscription.get("remaining_balance", 0), policy=resolve_vehicle_policy(vehicle))
        if amount < quote:
            raise ValidationError(
                f"Buyout amount {amount} is below the quoted {quote}",
                rule="buyout_covers_quote",
            )

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------
    async def settle_payment(
        self,
        payment_id: str,
        status: PaymentStatus,
        actor: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Payment:
        """Move a pending payment to completed or failed, exactly once."""
        status = PaymentStatus(status)
        if status == PaymentStatus.PENDING:
            raise ValidationError("A payment can only be settled to completed or failed", rule="settle_target")
        now = now or datetime.now(timezone.utc)

        doc = await record_store.require("payment", payment_id)
        async with subscription_lock(doc["subscription_id"]) as subscription:
            payment = Payment(**await record_store.require("payment", payment_id))
            if payment.status == status:
                if status == PaymentStatus.COMPLETED:
                    await self._finish_completed(subscription, payment, now)
                return payment
            if payment.status != PaymentStatus.PENDING:
                raise StateConflictError(
                    f"Payment {payment_id} is already {payment.status.value}",
                    rule="payment_settles_once",
                )
            if (
                status == PaymentStatus.COMPLETED
                and payment.payment_type != PaymentType.REFUND
                and SubscriptionStatus(subscription["status"]) in LEDGER_CLOSED_STATES
            ):
                raise StateConflictError(
                    f"Subscription {payment.subscription_id} is {subscription['status']}; payment cannot complete",
                    rule="ledger_open",
                )

            ok = await record_store.update(
                "payment",
                payment_id,
                {"status": status.value, "settled_at": now},
                expected={"status": PaymentStatus.PENDING.value},
            )
            if not ok:
                raise StateConflictError(f"Payment {payment_id} was settled concurrently", rule="payment_settles_once")
            payment = payment.model_copy(update={"status": status, "settled_at": now})

            if status == PaymentStatus.COMPLETED:
                vehicle = await record_store.require("vehicle", subscription["vehicle_id"])
                try:
                    subscription = await self._apply(subscription, vehicle, payment)
                except (PersistenceError, StateConflictError) as e:
                    await self._revert_settlement(payment, e)
                    raise PersistenceError(
                        f"Settlement of {payment_id} could not be applied; payment left pending",
                        rule="payment_atomicity",
                    ) from e

            logger.info(f"Payment settled: {payment_id} -> {status.value}")
            await create_activity_log(
                action=ActivityAction.PAYMENT_SETTLED,
                entity_type="payment",
                entity_id=payment_id,
                actor=actor,
                details=f"{payment.payment_type.value} {payment.amount:.2f} {status.value}",
                metadata={"subscription_id": payment.subscription_id},
            )

            if status == PaymentStatus.COMPLETED:
                await self._complete_if_owned(subscription, vehicle, payment, now)
            return payment

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get_payment(self, payment_id: str) -> Payment:
        return Payment(**await record_store.require("payment", payment_id))

    async def list_payments(
        self,
        subscription_id: str,
        payment_type: Optional[PaymentType] = None,
        status: Optional[PaymentStatus] = None,
    ) -> List[Payment]:
        await record_store.require("subscription", subscription_id)
        query: Dict[str, Any] = {"subscription_id": subscription_id}
        if payment_type:
            query["payment_type"] = PaymentType(payment_type).value
        if status:
            query["status"] = PaymentStatus(status).value
        docs = await record_store.query("payment", query, sort=[("created_date", 1)])
        return [Payment(**doc) for doc in docs]

    async def has_completed_payment(self, subscription_id: str, payment_type: PaymentType) -> bool:
        doc = await record_store.find_one(
            "payment",
            {
                "subscription_id": subscription_id,
                "payment_type": payment_type.value,
                "status": PaymentStatus.COMPLETED.value,
            },
        )
        return doc is not None

    async def quote_buyout(self, subscription_id: str) -> BuyoutQuote:
        subscription = await record_store.require("subscription", subscription_id)
        vehicle = await record_store.require("vehicle", subscription["vehicle_id"])
        policy = resolve_vehicle_policy(vehicle)
        remaining = to_money(subscription.get("remaining_balance", 0))
        amount = compute_early_buyout(remaining, policy=policy)
        return BuyoutQuote(
            subscription_id=subscription_id,
            remaining_balance=float(remaining),
            multiplier=float(policy.buyout_multiplier),
            amount=float(amount),
            platform_fee=float(compute_platform_fee(PaymentType.BUYOUT, amount)),
        )


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Global service instance
ledger_service = LedgerService()
