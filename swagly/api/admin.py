"""
Admin Router - Proof review queue, approvals and claim reconciliation
"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from swagly.dependencies import get_approval_service, get_db, verify_admin_key
from swagly.services.approval_service import ApprovalService
from swagly.services.event_service import event_service
from swagly.services.proof_service import proof_service

logger = logging.getLogger(__name__)
router = APIRouter(dependencies=[Depends(verify_admin_key)])


# ============================================================
# REQUEST MODELS
# ============================================================

class ApproveRequest(BaseModel):
    adminId: Optional[str] = None


class RejectRequest(BaseModel):
    adminId: Optional[str] = None
    reason: Optional[str] = None


class ResolveClaimRequest(BaseModel):
    outcome: str = Field(..., description="'landed' if the tokens exist on-chain, 'failed' otherwise")
    adminId: Optional[str] = None
    transactionHash: Optional[str] = None


# ============================================================
# PROOF REVIEW
# ============================================================

@router.get("/proofs")
def list_proofs(
    status: Optional[str] = Query(None, description="pending, approved or rejected"),
    db: Session = Depends(get_db)
):
    """Review queue with per-status counts"""
    result = proof_service.list(db, status)
    return {"success": True, **result}


@router.post("/proofs/{proof_id}/approve")
def approve_proof(
    proof_id: str,
    request: Optional[ApproveRequest] = None,
    db: Session = Depends(get_db),
    service: ApprovalService = Depends(get_approval_service)
):
    """
    Approve a proof and send its tokens.

    Tokens are claimed first; the proof is only marked approved once the
    claim succeeded. Claim failures come back with the upstream payload.
    """
    admin_id = request.adminId if request else None
    result = service.approve(db, proof_id, admin_id)

    return {
        "success": True,
        "transactionHash": result["transaction_hash"],
        "tokensAwarded": result["tokens_awarded"],
        "progress": result["progress"],
        "message": "Evidence approved and tokens sent"
    }


@router.post("/proofs/{proof_id}/reject")
def reject_proof(
    proof_id: str,
    request: RejectRequest,
    db: Session = Depends(get_db),
    service: ApprovalService = Depends(get_approval_service)
):
    service.reject(db, proof_id, request.adminId, request.reason)
    return {"success": True, "message": "Evidence rejected"}


# ============================================================
# CLAIM RECONCILIATION
# ============================================================

@router.get("/claims")
def list_claims(
    status: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    service: ApprovalService = Depends(get_approval_service)
):
    return {"success": True, "claims": service.list_claim_attempts(db, status)}


@router.post("/claims/{attempt_id}/resolve")
def resolve_claim(
    attempt_id: str,
    request: ResolveClaimRequest,
    db: Session = Depends(get_db),
    service: ApprovalService = Depends(get_approval_service)
):
    """Record whether a claim with an unknown outcome landed on-chain"""
    attempt = service.resolve_claim_attempt(
        db,
        attempt_id,
        request.outcome,
        resolved_by=request.adminId,
        transaction_hash=request.transactionHash
    )
    return {"success": True, "claim": attempt}


# ============================================================
# EVENTS
# ============================================================

@router.delete("/events/{event_id}")
def delete_event(
    event_id: str,
    db: Session = Depends(get_db)
):
    result = event_service.delete_event(db, event_id)
    return {"success": True, **result}
