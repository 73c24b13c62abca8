"""
Per-subscription lease lock: single writer per subscription.

Every read-modify-write on a subscription (record payment, settle,
evaluate, KYC, collections, terminate) runs inside subscription_lock().
The lease lives on the subscription document (locked_until + lock_owner)
and is taken with one atomic find_one_and_update, so it holds across
workers. An expired lease is considered free.
"""
import asyncio
import logging
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone, timedelta
from typing import AsyncIterator, Dict, Any

from stocrx.errors import NotFoundError, PersistenceError
from stocrx.services.record_store import record_store

logger = logging.getLogger(__name__)

LOCK_DURATION_SECONDS = 30     # lease expiry; a crashed holder frees the subscription after this
LOCK_WAIT_SECONDS = float(os.getenv("SUBSCRIPTION_LOCK_WAIT_SECONDS", "10"))
LOCK_POLL_SECONDS = 0.05


def _worker_id() -> str:
    return f"{os.getpid()}-{uuid.uuid4().hex[:8]}"


async def _acquire_lease(subscription_id: str, owner: str) -> bool:
    """Atomically acquire the lease. Returns True if we got it."""
    now = datetime.now(timezone.utc)
    result = await record_store.find_one_and_update(
        "subscription",
        {
            "subscription_id": subscription_id,
            "$or": [
                {"locked_until": None},
                {"locked_until": {"$exists": False}},
                {"locked_until": {"$lt": now}},
            ],
        },
        {"$set": {"locked_until": now + timedelta(seconds=LOCK_DURATION_SECONDS), "lock_owner": owner}},
    )
    return result is not None


async def _release_lease(subscription_id: str, owner: str) -> None:
    await record_store.find_one_and_update(
        "subscription",
        {"subscription_id": subscription_id, "lock_owner": owner},
        {"$unset": {"locked_until": "", "lock_owner": ""}},
    )


@asynccontextmanager
async def subscription_lock(subscription_id: str) -> AsyncIterator[Dict[str, Any]]:
    """Hold the subscription lease; yields the subscription as read under the lease."""
    owner = _worker_id()
    loop = asyncio.get_running_loop()
    deadline = loop.time() + LOCK_WAIT_SECONDS

    while not await _acquire_lease(subscription_id, owner):
        # Distinguish "held by someone else" from "does not exist"
        if not await record_store.get("subscription", subscription_id):
            raise NotFoundError("subscription", subscription_id)
        if loop.time() >= deadline:
            logger.warning(f"Timed out waiting for lock on subscription {subscription_id}")
            raise PersistenceError(
                f"Subscription {subscription_id} is busy, try again",
                rule="single_writer_per_subscription",
            )
        await asyncio.sleep(LOCK_POLL_SECONDS)

    try:
        subscription = await record_store.require("subscription", subscription_id)
        yield subscription
    finally:
        try:
            await _release_lease(subscription_id, owner)
        except PersistenceError as e:
            # Lease expires on its own after LOCK_DURATION_SECONDS
            logger.error(f"Failed to release lock on subscription {subscription_id}: {e}")
