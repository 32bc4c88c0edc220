"""
Proof Service - Activity evidence submission and review queue reads
"""
import logging
from typing import Dict, Any, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from swagly.db.models import (
    Activity, ActivityProof, Passport, PassportActivity,
    PROOF_APPROVED, PROOF_PENDING, PROOF_REJECTED, PROOF_STATUSES, PROOF_TYPES
)
from swagly.errors import Conflict, InvalidInput, NotFound

logger = logging.getLogger(__name__)


def validate_proof_content(
    proof_type: str,
    text_proof: Optional[str],
    image_url: Optional[str]
) -> None:
    """Check that the declared proof kind carries the content it needs"""
    if proof_type not in PROOF_TYPES:
        raise InvalidInput(f"Invalid proof type '{proof_type}'")

    has_text = bool(text_proof and text_proof.strip())
    has_image = bool(image_url and image_url.strip())

    if proof_type == "text" and not has_text:
        raise InvalidInput("Text proof is required")
    if proof_type == "image" and not has_image:
        raise InvalidInput("Image is required")
    if proof_type == "both" and not has_text and not has_image:
        raise InvalidInput("At least text or image is required")


class ProofService:
    """Service for user-submitted activity proofs"""

    def _existing_proof(
        self,
        db: Session,
        user_id: str,
        activity_id: str,
        passport_id: str
    ) -> Optional[ActivityProof]:
        return db.query(ActivityProof).filter(
            ActivityProof.user_id == user_id,
            ActivityProof.activity_id == activity_id,
            ActivityProof.passport_id == passport_id
        ).first()

    def submit(
        self,
        db: Session,
        user_id: str,
        activity_id: str,
        passport_id: str,
        proof_type: str,
        text_proof: Optional[str] = None,
        image_url: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Submit evidence for one (user, activity, passport) triple.

        - approved proof exists: Conflict, the activity is already completed
        - pending proof exists: Conflict, still under review
        - rejected proof exists: reused in place and reset to pending
        - otherwise a new pending proof is created
        """
        validate_proof_content(proof_type, text_proof, image_url)

        activity = db.get(Activity, activity_id)
        if not activity:
            raise NotFound(f"Activity {activity_id} not found")
        if not activity.requires_proof:
            raise InvalidInput("This activity does not require manual validation")

        passport = db.get(Passport, passport_id)
        if not passport or passport.user_id != user_id:
            raise NotFound("Passport not valid for this user")
        if passport.event_id != activity.event_id:
            raise InvalidInput("This activity does not belong to the passport's event")

        existing = self._existing_proof(db, user_id, activity_id, passport_id)

        if existing and existing.status == PROOF_APPROVED:
            raise Conflict("You already completed this activity")
        if existing and existing.status == PROOF_PENDING:
            raise Conflict("You already submitted evidence that is under review")

        text_value = text_proof if proof_type in ("text", "both") else None
        image_value = image_url if proof_type in ("image", "both") else None

        if existing and existing.status == PROOF_REJECTED:
            proof = existing
            proof.proof_type = proof_type
            proof.text_proof = text_value
            proof.image_url = image_value
            proof.status = PROOF_PENDING
            proof.rejection_reason = None
            proof.validated_by = None
            proof.validated_at = None
            logger.info(f"Proof {proof.id} resubmitted after rejection")
        else:
            proof = ActivityProof(
                user_id=user_id,
                activity_id=activity_id,
                passport_id=passport_id,
                proof_type=proof_type,
                text_proof=text_value,
                image_url=image_value,
                status=PROOF_PENDING
            )
            db.add(proof)
            try:
                db.flush()
            except IntegrityError:
                # a concurrent submission for the same triple committed first
                db.rollback()
                raise Conflict("You already submitted evidence that is under review")

            db.query(PassportActivity).filter(
                PassportActivity.passport_id == passport_id,
                PassportActivity.activity_id == activity_id
            ).update(
                {
                    PassportActivity.proof_id: proof.id,
                    PassportActivity.requires_proof: True
                },
                synchronize_session=False
            )
            logger.info(f"Proof {proof.id} submitted for activity {activity_id} by user {user_id}")

        db.commit()

        return {
            "proof_id": proof.id,
            "status": PROOF_PENDING
        }

    def get(self, db: Session, proof_id: str) -> ActivityProof:
        proof = db.get(ActivityProof, proof_id)
        if not proof:
            raise NotFound(f"Proof {proof_id} not found")
        return proof

    def count_by_status(self, db: Session) -> Dict[str, int]:
        rows = db.query(ActivityProof.status, func.count(ActivityProof.id)).group_by(
            ActivityProof.status
        ).all()
        counts = {status: 0 for status in PROOF_STATUSES}
        for status, count in rows:
            counts[status] = count
        return counts

    def list(self, db: Session, status: Optional[str] = None) -> Dict[str, Any]:
        """Admin review queue: proofs with joined summaries and per-status counts"""
        query = db.query(ActivityProof).options(
            joinedload(ActivityProof.user),
            joinedload(ActivityProof.activity).joinedload(Activity.sponsor),
            joinedload(ActivityProof.passport).joinedload(Passport.event)
        )

        if status in PROOF_STATUSES:
            query = query.filter(ActivityProof.status == status)

        proofs = query.order_by(ActivityProof.created_at.desc()).all()

        return {
            "proofs": [self.serialize(p) for p in proofs],
            "counts": self.count_by_status(db)
        }

    def serialize(self, proof: ActivityProof) -> Dict[str, Any]:
        activity = proof.activity
        passport = proof.passport
        return {
            "id": proof.id,
            "status": proof.status,
            "proof_type": proof.proof_type,
            "text_proof": proof.text_proof,
            "image_url": proof.image_url,
            "rejection_reason": proof.rejection_reason,
            "validated_by": proof.validated_by,
            "validated_at": proof.validated_at.isoformat() if proof.validated_at else None,
            "tokens_awarded": proof.tokens_awarded,
            "transaction_hash": proof.transaction_hash,
            "created_at": proof.created_at.isoformat() if proof.created_at else None,
            "user": {
                "id": proof.user.id,
                "nickname": proof.user.nickname,
                "wallet_address": proof.user.wallet_address
            } if proof.user else None,
            "activity": {
                "id": activity.id,
                "name": activity.name,
                "num_of_tokens": activity.num_of_tokens,
                "sponsor": {
                    "id": activity.sponsor.id,
                    "name": activity.sponsor.name
                } if activity.sponsor else None
            } if activity else None,
            "event": {
                "id": passport.event.id,
                "name": passport.event.name
            } if passport and passport.event else None
        }


# Singleton instance
proof_service = ProofService()
