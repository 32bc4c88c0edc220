"""
Proofs Router - User evidence submission
"""
from typing import Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from swagly.dependencies import get_db
from swagly.services.proof_service import proof_service

router = APIRouter()


class SubmitProofRequest(BaseModel):
    """Evidence for an activity that requires manual validation"""
    userId: str = Field(..., description="ID of the submitting user")
    activityId: str = Field(..., description="ID of the activity")
    passportId: str = Field(..., description="ID of the user's passport for the event")
    proofType: str = Field(..., description="'text', 'image' or 'both'")
    textProof: Optional[str] = None
    imageUrl: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "userId": "b3c1...",
                "activityId": "9f2e...",
                "passportId": "71aa...",
                "proofType": "text",
                "textProof": "Visited the sponsor booth"
            }
        }


@router.post("", status_code=201)
def submit_proof(
    request: SubmitProofRequest,
    db: Session = Depends(get_db)
):
    """
    Submit evidence for an activity.

    - A second submission while one is under review is refused (409)
    - A rejected submission is reused and goes back to review
    """
    result = proof_service.submit(
        db=db,
        user_id=request.userId,
        activity_id=request.activityId,
        passport_id=request.passportId,
        proof_type=request.proofType,
        text_proof=request.textProof,
        image_url=request.imageUrl
    )

    return {
        "success": True,
        "proofId": result["proof_id"],
        "status": result["status"],
        "message": "Evidence submitted. Waiting for admin validation."
    }


@router.get("/{proof_id}")
def get_proof(
    proof_id: str,
    db: Session = Depends(get_db)
):
    proof = proof_service.get(db, proof_id)
    return {"success": True, "proof": proof_service.serialize(proof)}
