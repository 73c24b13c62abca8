"""STOCRX Claims Routes

Endpoints:
- POST /api/claims - Submit a damage / insurance claim
- GET /api/claims/{claim_id} - Get a claim
- POST /api/claims/{claim_id}/review - Start review
- POST /api/claims/{claim_id}/decision - Approve or deny
"""

from fastapi import APIRouter, Header
from typing import Optional
import logging

from stocrx.models.claims import Claim, ClaimCreate, ClaimDecision, ClaimDecisionResult
from stocrx.services.claims_service import claims_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/claims", tags=["STOCRX Claims"])


@router.post("", response_model=Claim, status_code=201)
async def submit_claim(payload: ClaimCreate, x_actor: Optional[str] = Header(None)):
    return await claims_service.submit_claim(payload, actor=x_actor)


@router.get("/{claim_id}", response_model=Claim)
async def get_claim(claim_id: str):
    return await claims_service.get_claim(claim_id)


@router.post("/{claim_id}/review", response_model=Claim)
async def start_review(claim_id: str, x_actor: Optional[str] = Header(None)):
    return await claims_service.start_review(claim_id, actor=x_actor)


@router.post("/{claim_id}/decision", response_model=ClaimDecisionResult)
async def decide_claim(claim_id: str, decision: ClaimDecision, x_actor: Optional[str] = Header(None)):
    if decision.decided_by is None and x_actor:
        decision = decision.model_copy(update={"decided_by": x_actor})
    return await claims_service.decide_claim(claim_id, decision)
