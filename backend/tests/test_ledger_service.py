"""
Ledger recorder: running totals, platform fees, idempotency, rollback and
concurrent writers against the in-memory store.
"""
import asyncio
import pytest
import sys
from datetime import timedelta
from pathlib import Path

from pymongo.errors import PyMongoError

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

from stocrx.errors import NotFoundError, PersistenceError, StateConflictError, ValidationError
from stocrx.models.payments import OWNERSHIP_PAYMENT_TYPES, PaymentStatus, PaymentType
from stocrx.models.subscriptions import SubscriptionStatus
from stocrx.services.ledger_service import ledger_service


async def _active(seed, now, vehicle_overrides=None, **overrides):
    vehicle = await seed.vehicle(**(vehicle_overrides or {}))
    fields = dict(
        status=SubscriptionStatus.ACTIVE,
        kyc_verified=True,
        activated_at=now - timedelta(days=3),
        last_payment_date=now - timedelta(days=3),
    )
    fields.update(overrides)
    subscription = await seed.subscription(vehicle, **fields)
    return vehicle, subscription


async def _sub(seed, subscription):
    return await seed.get("subscriptions", {"subscription_id": subscription["subscription_id"]})


class TestRecordPayment:

    @pytest.mark.asyncio
    async def test_recurring_charge_updates_totals(self, seed, now):
        _, sub = await _active(seed, now)
        payment = await ledger_service.record_payment(
            sub["subscription_id"], "recurring_charge", 201.20, idempotency_key="k-1", now=now
        )
        assert payment.platform_fee == 1.21
        assert payment.non_refundable is False
        assert payment.status == PaymentStatus.COMPLETED

        stored = await _sub(seed, sub)
        assert stored["total_paid"] == 201.20
        assert stored["remaining_balance"] == 19798.80
        assert stored["last_payment_date"] == now
        assert stored["applied_payment_ids"] == [payment.payment_id]
        assert stored["version"] == 1
        assert "locked_until" not in stored

    @pytest.mark.asyncio
    async def test_down_payment_is_non_refundable_without_platform_fee(self, seed, now):
        _, sub = await _active(seed, now)
        payment = await ledger_service.record_payment(sub["subscription_id"], PaymentType.DOWN_PAYMENT, 1000, now=now)
        assert payment.non_refundable is True
        assert payment.platform_fee == 0.0

    @pytest.mark.asyncio
    async def test_late_fee_does_not_count_towards_ownership(self, seed, now):
        _, sub = await _active(seed, now)
        await ledger_service.record_payment(sub["subscription_id"], "late_fee", 50, now=now)
        stored = await _sub(seed, sub)
        assert stored["total_paid"] == 0.0
        assert stored["last_payment_date"] == now - timedelta(days=3)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -10, "abc", None, True, float("nan")])
    async def test_rejects_bad_amounts(self, seed, now, amount):
        _, sub = await _active(seed, now)
        with pytest.raises(ValidationError) as exc:
            await ledger_service.record_payment(sub["subscription_id"], "recurring_charge", amount)
        assert exc.value.rule == "amount_positive"

    @pytest.mark.asyncio
    async def test_rejects_unknown_type(self, seed, now):
        _, sub = await _active(seed, now)
        with pytest.raises(ValidationError) as exc:
            await ledger_service.record_payment(sub["subscription_id"], "tip", 10)
        assert exc.value.rule == "payment_type_known"

    @pytest.mark.asyncio
    async def test_missing_subscription(self, fake_db):
        with pytest.raises(NotFoundError):
            await ledger_service.record_payment("SUB-MISSING", "recurring_charge", 10)

    @pytest.mark.asyncio
    async def test_terminated_subscription_only_takes_refunds(self, seed, now):
        _, sub = await _active(seed, now, status=SubscriptionStatus.TERMINATED)
        with pytest.raises(StateConflictError) as exc:
            await ledger_service.record_payment(sub["subscription_id"], "recurring_charge", 10)
        assert exc.value.rule == "ledger_open"

        refund = await ledger_service.record_payment(sub["subscription_id"], "refund", 10)
        assert refund.payment_type == PaymentType.REFUND


class TestIdempotency:

    @pytest.mark.asyncio
    async def test_replayed_key_returns_same_payment(self, seed, fake_db, now):
        _, sub = await _active(seed, now)
        first = await ledger_service.record_payment(sub["subscription_id"], "recurring_charge", 100, idempotency_key="dup", now=now)
        second = await ledger_service.record_payment(sub["subscription_id"], "recurring_charge", 100, idempotency_key="dup", now=now)

        assert first.payment_id == second.payment_id
        assert len(fake_db.payments.docs) == 1
        assert (await _sub(seed, sub))["total_paid"] == 100.0

    @pytest.mark.asyncio
    async def test_key_bound_to_another_subscription(self, seed, now):
        _, sub = await _active(seed, now)
        _, other = await _active(seed, now)
        await ledger_service.record_payment(sub["subscription_id"], "recurring_charge", 100, idempotency_key="shared")
        with pytest.raises(StateConflictError):
            await ledger_service.record_payment(other["subscription_id"], "recurring_charge", 100, idempotency_key="shared")


class TestAtomicity:

    @pytest.mark.asyncio
    async def test_failed_subscription_update_removes_payment(self, seed, fake_db, now):
        _, sub = await _active(seed, now)
        fake_db.subscriptions.fail_next("update_one", PyMongoError("primary stepped down"))

        with pytest.raises(PersistenceError) as exc:
            await ledger_service.record_payment(sub["subscription_id"], "recurring_charge", 100, idempotency_key="r-1")
        assert exc.value.retryable is True
        assert fake_db.payments.docs == []
        stored = await _sub(seed, sub)
        assert stored["total_paid"] == 0.0
        assert "locked_until" not in stored

    @pytest.mark.asyncio
    async def test_replay_finishes_a_half_applied_payment(self, seed, fake_db, now):
        _, sub = await _active(seed, now)
        fake_db.subscriptions.fail_next("update_one", PyMongoError("timeout"))
        fake_db.payments.fail_next("delete_one", PyMongoError("timeout"))

        with pytest.raises(PersistenceError):
            await ledger_service.record_payment(sub["subscription_id"], "recurring_charge", 100, idempotency_key="r-2")
        assert len(fake_db.payments.docs) == 1
        assert (await _sub(seed, sub))["total_paid"] == 0.0

        payment = await ledger_service.record_payment(sub["subscription_id"], "recurring_charge", 100, idempotency_key="r-2")
        stored = await _sub(seed, sub)
        assert stored["total_paid"] == 100.0
        assert stored["applied_payment_ids"] == [payment.payment_id]

        # A third replay changes nothing
        await ledger_service.record_payment(sub["subscription_id"], "recurring_charge", 100, idempotency_key="r-2")
        assert (await _sub(seed, sub))["total_paid"] == 100.0


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_concurrent_payments_all_counted(self, seed, fake_db, now):
        _, sub = await _active(seed, now)
        amounts = [100, 250.50, 75.25, 300, 19.99]

        await asyncio.gather(*[
            ledger_service.record_payment(sub["subscription_id"], "recurring_charge", amount, idempotency_key=f"c-{i}")
            for i, amount in enumerate(amounts)
        ])

        stored = await _sub(seed, sub)
        assert stored["total_paid"] == 745.74
        assert stored["version"] == len(amounts)
        assert len(stored["applied_payment_ids"]) == len(amounts)

    @pytest.mark.asyncio
    async def test_concurrent_replays_of_one_key(self, seed, fake_db, now):
        _, sub = await _active(seed, now)
        results = await asyncio.gather(*[
            ledger_service.record_payment(sub["subscription_id"], "recurring_charge", 100, idempotency_key="same")
            for _ in range(4)
        ])
        assert len({p.payment_id for p in results}) == 1
        assert (await _sub(seed, sub))["total_paid"] == 100.0

    @pytest.mark.asyncio
    async def test_total_paid_matches_completed_ownership_sum(self, seed, fake_db, now):
        _, sub = await _active(seed, now)
        sid = sub["subscription_id"]
        await asyncio.gather(
            ledger_service.record_payment(sid, "down_payment", 1000),
            ledger_service.record_payment(sid, "recurring_charge", 201.20),
            ledger_service.record_payment(sid, "late_fee", 50),
            ledger_service.record_payment(sid, "recurring_charge", 201.20, status=PaymentStatus.PENDING),
            ledger_service.record_payment(sid, "finance_fee", 2500),
        )
        completed = [
            p for p in fake_db.payments.docs
            if p["status"] == PaymentStatus.COMPLETED and PaymentType(p["payment_type"]) in OWNERSHIP_PAYMENT_TYPES
        ]
        stored = await _sub(seed, sub)
        assert stored["total_paid"] == round(sum(p["amount"] for p in completed), 2) == 1201.20


class TestSettlement:

    @pytest.mark.asyncio
    async def test_settling_pending_down_payment_applies_it(self, seed, now):
        _, sub = await _active(seed, now)
        pending = await ledger_service.record_payment(
            sub["subscription_id"], "down_payment", 1000, status=PaymentStatus.PENDING, now=now
        )
        assert (await _sub(seed, sub))["total_paid"] == 0.0

        settled = await ledger_service.settle_payment(pending.payment_id, PaymentStatus.COMPLETED, now=now + timedelta(hours=2))
        assert settled.status == PaymentStatus.COMPLETED
        stored = await _sub(seed, sub)
        assert stored["total_paid"] == 1000.0
        assert stored["last_payment_date"] == now + timedelta(hours=2)

        again = await ledger_service.settle_payment(pending.payment_id, PaymentStatus.COMPLETED)
        assert again.payment_id == settled.payment_id
        assert (await _sub(seed, sub))["total_paid"] == 1000.0

    @pytest.mark.asyncio
    async def test_settled_payments_are_immutable(self, seed, now):
        _, sub = await _active(seed, now)
        payment = await ledger_service.record_payment(sub["subscription_id"], "recurring_charge", 100)
        with pytest.raises(StateConflictError) as exc:
            await ledger_service.settle_payment(payment.payment_id, PaymentStatus.FAILED)
        assert exc.value.rule == "payment_settles_once"

    @pytest.mark.asyncio
    async def test_failed_settlement_leaves_totals(self, seed, now):
        _, sub = await _active(seed, now)
        pending = await ledger_service.record_payment(sub["subscription_id"], "recurring_charge", 100, status=PaymentStatus.PENDING)
        failed = await ledger_service.settle_payment(pending.payment_id, PaymentStatus.FAILED)
        assert failed.status == PaymentStatus.FAILED
        assert (await _sub(seed, sub))["total_paid"] == 0.0

    @pytest.mark.asyncio
    async def test_settling_again_finishes_an_unapplied_settlement(self, seed, fake_db, now):
        _, sub = await _active(seed, now)
        pending = await ledger_service.record_payment(
            sub["subscription_id"], "recurring_charge", 100, status=PaymentStatus.PENDING, now=now
        )
        fake_db.subscriptions.fail_next("update_one", PyMongoError("timeout"))
        # The settle itself goes through, reverting it to pending does not
        fake_db.payments.fail_next("update_one", PyMongoError("timeout"), skip=1)

        with pytest.raises(PersistenceError):
            await ledger_service.settle_payment(pending.payment_id, PaymentStatus.COMPLETED, now=now)
        stuck = await seed.get("payments", {"payment_id": pending.payment_id})
        assert stuck["status"] == PaymentStatus.COMPLETED.value
        assert (await _sub(seed, sub))["total_paid"] == 0.0

        settled = await ledger_service.settle_payment(pending.payment_id, PaymentStatus.COMPLETED, now=now)
        assert settled.status == PaymentStatus.COMPLETED
        stored = await _sub(seed, sub)
        assert stored["total_paid"] == 100.0
        assert stored["applied_payment_ids"] == [pending.payment_id]

        await ledger_service.settle_payment(pending.payment_id, PaymentStatus.COMPLETED, now=now)
        assert (await _sub(seed, sub))["total_paid"] == 100.0

    @pytest.mark.asyncio
    async def test_cannot_settle_back_to_pending(self, seed, now):
        _, sub = await _active(seed, now)
        pending = await ledger_service.record_payment(sub["subscription_id"], "recurring_charge", 100, status=PaymentStatus.PENDING)
        with pytest.raises(ValidationError):
            await ledger_service.settle_payment(pending.payment_id, PaymentStatus.PENDING)


class TestCompletion:

    @pytest.mark.asyncio
    async def test_final_payment_completes_and_leaves_vehicle(self, seed, now):
        vehicle, sub = await _active(seed, now, total_paid=19000.0, remaining_balance=1000.0)
        await ledger_service.record_payment(sub["subscription_id"], "recurring_charge", 1000, now=now)

        stored = await _sub(seed, sub)
        assert stored["status"] == SubscriptionStatus.COMPLETED.value
        assert stored["remaining_balance"] == 0.0
        assert stored["completed_at"] == now
        car = await seed.get("vehicles", {"vehicle_id": vehicle["vehicle_id"]})
        assert car["status"] == "subscribed"

    @pytest.mark.asyncio
    async def test_replay_retries_a_failed_completion(self, seed, fake_db, now):
        _, sub = await _active(seed, now, total_paid=19000.0, remaining_balance=1000.0)
        # The payment applies, the completion write after it fails
        fake_db.subscriptions.fail_next("update_one", PyMongoError("store blip"), skip=1)

        with pytest.raises(PersistenceError):
            await ledger_service.record_payment(
                sub["subscription_id"], "recurring_charge", 1000, idempotency_key="final-1", now=now
            )
        stored = await _sub(seed, sub)
        assert stored["status"] == SubscriptionStatus.ACTIVE.value
        assert stored["total_paid"] == 20000.0

        payment = await ledger_service.record_payment(
            sub["subscription_id"], "recurring_charge", 1000, idempotency_key="final-1", now=now
        )
        stored = await _sub(seed, sub)
        assert stored["status"] == SubscriptionStatus.COMPLETED.value
        assert stored["total_paid"] == 20000.0
        assert stored["applied_payment_ids"] == [payment.payment_id]
        assert len(fake_db.payments.docs) == 1

    @pytest.mark.asyncio
    async def test_buyout_below_quote_rejected(self, seed, now):
        _, sub = await _active(seed, now, total_paid=10000.0, remaining_balance=10000.0)
        with pytest.raises(ValidationError) as exc:
            await ledger_service.record_payment(sub["subscription_id"], "buyout", 7000)
        assert exc.value.rule == "buyout_covers_quote"

    @pytest.mark.asyncio
    async def test_buyout_completes_subscription(self, seed, now):
        _, sub = await _active(seed, now, total_paid=10000.0, remaining_balance=10000.0)
        quote = await ledger_service.quote_buyout(sub["subscription_id"])
        assert quote.amount == 7500.0
        assert quote.platform_fee == 45.0

        payment = await ledger_service.record_payment(sub["subscription_id"], "buyout", quote.amount)
        assert payment.platform_fee == 45.0
        stored = await _sub(seed, sub)
        assert stored["status"] == SubscriptionStatus.COMPLETED.value
        assert stored["total_paid"] == 10000.0
        assert stored["remaining_balance"] == 0.0

    @pytest.mark.asyncio
    async def test_buyout_needs_active_subscription(self, seed, now):
        _, sub = await _active(seed, now, status=SubscriptionStatus.SUSPENDED, remaining_balance=10000.0)
        with pytest.raises(StateConflictError) as exc:
            await ledger_service.record_payment(sub["subscription_id"], "buyout", 7500)
        assert exc.value.rule == "buyout_requires_active_subscription"


class TestReads:

    @pytest.mark.asyncio
    async def test_list_payments_in_order(self, seed, now):
        _, sub = await _active(seed, now)
        sid = sub["subscription_id"]
        await ledger_service.record_payment(sid, "recurring_charge", 100, now=now)
        await ledger_service.record_payment(sid, "late_fee", 50, now=now - timedelta(days=1))

        payments = await ledger_service.list_payments(sid)
        assert [p.payment_type for p in payments] == [PaymentType.LATE_FEE, PaymentType.RECURRING_CHARGE]
        fees = await ledger_service.list_payments(sid, payment_type=PaymentType.LATE_FEE)
        assert len(fees) == 1
