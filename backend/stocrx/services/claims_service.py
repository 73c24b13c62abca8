"""
Claims Adjudication Workflow

submitted    -> under_review | approved | denied
under_review -> approved | denied

Approving an insurance claim with a refund records a refund payment on the
ledger. Decisions never touch the subscription status; a total-loss
approval only tells the caller to terminate the subscription separately.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from stocrx.errors import StateConflictError, ValidationError
from stocrx.models.activity import ActivityAction
from stocrx.models.claims import (
    Claim,
    ClaimCreate,
    ClaimDecision,
    ClaimDecisionResult,
    ClaimStatus,
    ClaimType,
)
from stocrx.models.payments import PaymentStatus, PaymentType
from stocrx.services.ledger_service import ledger_service, parse_amount
from stocrx.services.record_store import record_store
from utils.audit import create_activity_log

logger = logging.getLogger(__name__)


CLAIM_TRANSITIONS: Dict[ClaimStatus, List[ClaimStatus]] = {
    ClaimStatus.SUBMITTED: [ClaimStatus.UNDER_REVIEW, ClaimStatus.APPROVED, ClaimStatus.DENIED],
    ClaimStatus.UNDER_REVIEW: [ClaimStatus.APPROVED, ClaimStatus.DENIED],
    ClaimStatus.APPROVED: [],
    ClaimStatus.DENIED: [],
}

DECISION_STATUSES = (ClaimStatus.APPROVED, ClaimStatus.DENIED)

TERMINATE_SUBSCRIPTION = "terminate_subscription"


def is_valid_claim_transition(from_status: ClaimStatus, to_status: ClaimStatus) -> bool:
    return to_status in CLAIM_TRANSITIONS.get(from_status, [])


def _require_transition(claim: Claim, to_status: ClaimStatus) -> None:
    if not is_valid_claim_transition(claim.status, to_status):
        raise StateConflictError(
            f"Claim {claim.claim_id} cannot move {claim.status.value} → {to_status.value}",
            rule="claim_transition_whitelist",
        )


class ClaimsService:

    async def submit_claim(self, payload: ClaimCreate, actor: Optional[str] = None) -> Claim:
        subscription = await record_store.require("subscription", payload.subscription_id)
        if subscription["vehicle_id"] != payload.vehicle_id:
            raise ValidationError(
                f"Vehicle {payload.vehicle_id} does not belong to subscription {payload.subscription_id}",
                rule="claim_vehicle_matches_subscription",
            )

        claim = Claim(**payload.model_dump())
        await record_store.create("claim", claim.model_dump())
        logger.info(f"Claim submitted: {claim.claim_id} ({claim.claim_type.value}) on {claim.subscription_id}")
        await create_activity_log(
            action=ActivityAction.CLAIM_SUBMITTED,
            entity_type="claim",
            entity_id=claim.claim_id,
            actor=actor,
            details=f"{claim.claim_type.value} claim on vehicle {claim.vehicle_id}",
            metadata={"subscription_id": claim.subscription_id, "total_loss": claim.total_loss},
        )
        return claim

    async def get_claim(self, claim_id: str) -> Claim:
        return Claim(**await record_store.require("claim", claim_id))

    async def start_review(self, claim_id: str, actor: Optional[str] = None) -> Claim:
        claim = await self.get_claim(claim_id)
        if claim.status == ClaimStatus.UNDER_REVIEW:
            return claim
        _require_transition(claim, ClaimStatus.UNDER_REVIEW)

        now = datetime.now(timezone.utc)
        ok = await record_store.update(
            "claim",
            claim_id,
            {"status": ClaimStatus.UNDER_REVIEW.value, "updated_at": now},
            expected={"status": claim.status.value},
        )
        if not ok:
            raise StateConflictError(f"Claim {claim_id} changed concurrently", rule="claim_transition_whitelist")

        logger.info(f"Claim {claim_id}: submitted → under_review")
        await create_activity_log(
            action=ActivityAction.CLAIM_REVIEW_STARTED,
            entity_type="claim",
            entity_id=claim_id,
            actor=actor,
        )
        return claim.model_copy(update={"status": ClaimStatus.UNDER_REVIEW, "updated_at": now})

    async def decide_claim(self, claim_id: str, decision: ClaimDecision) -> ClaimDecisionResult:
        """Approve or deny a claim, recording the refund for approved insurance claims."""
        target = ClaimStatus(decision.decision)
        if target not in DECISION_STATUSES:
            raise ValidationError(
                f"Decision must be approved or denied, got {target.value}",
                rule="claim_decision_terminal",
            )
        refund = None
        if decision.refund_amount is not None:
            if target != ClaimStatus.APPROVED:
                raise ValidationError("A denied claim cannot carry a refund", rule="claim_refund_requires_approval")
            refund = parse_amount(decision.refund_amount)

        claim = await self.get_claim(claim_id)
        if claim.status == target:
            # Replayed decision
            return ClaimDecisionResult(
                claim=claim,
                refund_payment_id=claim.refund_payment_id,
                next_action=TERMINATE_SUBSCRIPTION if target == ClaimStatus.APPROVED and claim.total_loss else None,
            )
        _require_transition(claim, target)

        refund_payment_id = None
        if refund is not None and claim.claim_type == ClaimType.INSURANCE:
            payment = await ledger_service.record_payment(
                claim.subscription_id,
                PaymentType.REFUND,
                refund,
                status=PaymentStatus.COMPLETED,
                idempotency_key=f"claim-refund:{claim_id}",
                reference_id=claim_id,
                actor=decision.decided_by,
            )
            refund_payment_id = payment.payment_id
        elif refund is not None:
            logger.warning(f"Refund on {claim.claim_type.value} claim {claim_id} ignored; only insurance claims refund")

        now = datetime.now(timezone.utc)
        fields = {
            "status": target.value,
            "decided_at": now,
            "decided_by": decision.decided_by,
            "refund_payment_id": refund_payment_id,
            "updated_at": now,
        }
        ok = await record_store.update("claim", claim_id, fields, expected={"status": claim.status.value})
        if not ok:
            raise StateConflictError(f"Claim {claim_id} was decided concurrently", rule="claim_transition_whitelist")

        next_action = TERMINATE_SUBSCRIPTION if target == ClaimStatus.APPROVED and claim.total_loss else None
        logger.info(f"Claim {claim_id}: {claim.status.value} → {target.value}")
        await create_activity_log(
            action=ActivityAction.CLAIM_DECIDED,
            entity_type="claim",
            entity_id=claim_id,
            actor=decision.decided_by,
            before_state={"status": claim.status.value},
            after_state={"status": target.value},
            metadata={"refund_payment_id": refund_payment_id, "next_action": next_action},
        )

        decided = claim.model_copy(update={
            "status": target,
            "decided_at": now,
            "decided_by": decision.decided_by,
            "refund_payment_id": refund_payment_id,
            "updated_at": now,
        })
        return ClaimDecisionResult(claim=decided, refund_payment_id=refund_payment_id, next_action=next_action)


# Global service instance
claims_service = ClaimsService()
