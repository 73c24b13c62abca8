"""STOCRX Payment Routes

Endpoints:
- POST /api/payments - Record a ledger entry (idempotent per Idempotency-Key)
- GET /api/payments/{payment_id} - Get a ledger entry
- POST /api/payments/{payment_id}/settle - Settle a pending entry
"""

from fastapi import APIRouter, Header
from typing import Optional
import logging

from stocrx.models.payments import Payment, PaymentCreate, PaymentSettle
from stocrx.services.ledger_service import ledger_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["STOCRX Payments"])


@router.post("", response_model=Payment, status_code=201)
async def record_payment(
    payload: PaymentCreate,
    idempotency_key: Optional[str] = Header(None),
    x_actor: Optional[str] = Header(None),
):
    """Record a payment.

    The key may come in the body or the Idempotency-Key header; replaying
    it returns the original record.
    """
    return await ledger_service.record_payment(
        payload.subscription_id,
        payload.payment_type,
        payload.amount,
        status=payload.status,
        idempotency_key=payload.idempotency_key or idempotency_key,
        actor=x_actor,
    )


@router.get("/{payment_id}", response_model=Payment)
async def get_payment(payment_id: str):
    return await ledger_service.get_payment(payment_id)


@router.post("/{payment_id}/settle", response_model=Payment)
async def settle_payment(payment_id: str, request: PaymentSettle, x_actor: Optional[str] = Header(None)):
    return await ledger_service.settle_payment(payment_id, request.status, actor=x_actor)
