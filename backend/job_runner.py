"""
Shared job runner for scheduled background jobs.
Used by server (scheduler) and manual runs.
Each run_* returns a dict with "message" and "count".
"""
import logging
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)


async def run_delinquency_sweep(now: Optional[datetime] = None):
    """Evaluate every subscription that can still change state.

    One subscription failing does not stop the sweep; it is logged and
    picked up again on the next run.
    """
    from stocrx.errors import LedgerEngineError
    from stocrx.services.record_store import record_store
    from stocrx.services.subscription_service import subscription_service
    from stocrx.services.subscription_workflow import SWEEP_STATES

    now = now or datetime.now(timezone.utc)
    try:
        docs = await record_store.query(
            "subscription",
            {"status": {"$in": [s.value for s in SWEEP_STATES]}},
            sort=[("created_at", 1)],
        )
    except LedgerEngineError as e:
        logger.error(f"Delinquency sweep could not list subscriptions: {e}")
        raise

    evaluated = 0
    failed = 0
    changed = 0
    for doc in docs:
        subscription_id = doc["subscription_id"]
        try:
            result = await subscription_service.evaluate_subscription(subscription_id, now=now)
        except LedgerEngineError as e:
            failed += 1
            logger.warning(f"Delinquency sweep skipped {subscription_id}: {e}")
            continue
        evaluated += 1
        if result.status.value != doc["status"]:
            changed += 1

    logger.info(f"Delinquency sweep completed: {evaluated} evaluated, {changed} changed, {failed} failed")
    return {
        "message": f"Delinquency sweep: {evaluated} evaluated, {changed} status changes, {failed} failed",
        "count": evaluated,
    }
