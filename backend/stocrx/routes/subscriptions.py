"""STOCRX Subscription Routes

Endpoints:
- POST /api/subscriptions - Apply for a vehicle
- GET /api/subscriptions/{subscription_id} - Get a subscription
- POST /api/subscriptions/{subscription_id}/evaluate - Run one evaluation cycle
- POST /api/subscriptions/{subscription_id}/kyc - Record the KYC outcome
- POST /api/subscriptions/{subscription_id}/collections-events - External collections signal
- POST /api/subscriptions/{subscription_id}/terminate - Admin termination
- GET /api/subscriptions/{subscription_id}/buyout-quote - Early buyout quote
- GET /api/subscriptions/{subscription_id}/payments - Ledger entries
"""

from fastapi import APIRouter, Header, Query
from typing import List, Optional
from pydantic import BaseModel, Field
import logging

from stocrx.models.payments import BuyoutQuote, Payment, PaymentStatus, PaymentType
from stocrx.models.subscriptions import (
    CollectionsEvent,
    Subscription,
    SubscriptionCreate,
    SubscriptionEvaluation,
)
from stocrx.services.ledger_service import ledger_service
from stocrx.services.subscription_service import subscription_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/subscriptions", tags=["STOCRX Subscriptions"])


class KycRequest(BaseModel):
    verified: bool
    reason: Optional[str] = None


class CollectionsEventRequest(BaseModel):
    event: CollectionsEvent


class TerminateRequest(BaseModel):
    reason: str = Field(min_length=1)


@router.post("", response_model=Subscription, status_code=201)
async def create_subscription(payload: SubscriptionCreate, x_actor: Optional[str] = Header(None)):
    return await subscription_service.create_subscription(payload, actor=x_actor)


@router.get("/{subscription_id}", response_model=Subscription)
async def get_subscription(subscription_id: str):
    return await subscription_service.get_subscription(subscription_id)


@router.post("/{subscription_id}/evaluate", response_model=SubscriptionEvaluation)
async def evaluate_subscription(subscription_id: str):
    """Recompute delinquency and apply due transitions. Safe to call repeatedly."""
    return await subscription_service.evaluate_subscription(subscription_id)


@router.post("/{subscription_id}/kyc", response_model=SubscriptionEvaluation)
async def set_kyc_status(subscription_id: str, request: KycRequest, x_actor: Optional[str] = Header(None)):
    return await subscription_service.set_kyc_status(
        subscription_id, request.verified, reason=request.reason, actor=x_actor
    )


@router.post("/{subscription_id}/collections-events", response_model=Subscription)
async def apply_collections_event(
    subscription_id: str,
    request: CollectionsEventRequest,
    x_actor: Optional[str] = Header(None),
):
    return await subscription_service.apply_collections_event(subscription_id, request.event, actor=x_actor)


@router.post("/{subscription_id}/terminate", response_model=Subscription)
async def terminate_subscription(subscription_id: str, request: TerminateRequest, x_actor: Optional[str] = Header(None)):
    return await subscription_service.terminate_subscription(subscription_id, request.reason, actor=x_actor)


@router.get("/{subscription_id}/buyout-quote", response_model=BuyoutQuote)
async def quote_buyout(subscription_id: str):
    return await ledger_service.quote_buyout(subscription_id)


@router.get("/{subscription_id}/payments", response_model=List[Payment])
async def list_payments(
    subscription_id: str,
    payment_type: Optional[PaymentType] = Query(None),
    status: Optional[PaymentStatus] = Query(None),
):
    return await ledger_service.list_payments(subscription_id, payment_type=payment_type, status=status)
