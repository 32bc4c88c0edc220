"""
Approval Service - Admin review of activity proofs and token award reconciliation

Approve path, in order:
1. load the proof, refuse anything that is not pending
2. take the proof's review lock with a compare-and-set UPDATE so only one
   approval at a time can reach the claim gateway
3. check the wallet and the passport entry, write a ClaimAttempt (durable
   claim intent) and commit
4. call the claim gateway (the only external side effect)
5. on success commit proof approval, attempt success, passport activity
   completion and recomputed progress in one local transaction

A failed claim leaves the proof pending. A claim that timed out or hit a
transport error is recorded with outcome unknown and blocks further
approvals of that proof until an operator resolves it, because blind
retries can issue tokens twice.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, joinedload
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from swagly.config import Settings, settings as default_settings
from swagly.db.models import (
    ActivityProof, ClaimAttempt,
    PROOF_APPROVED, PROOF_PENDING, PROOF_REJECTED,
    CLAIM_IN_FLIGHT, CLAIM_SUCCEEDED, CLAIM_FAILED, CLAIM_UNKNOWN,
    CLAIM_RESOLVED_LANDED, CLAIM_RESOLVED_FAILED, CLAIM_STATUSES
)
from swagly.errors import (
    Conflict, GatewayError, Internal, InvalidInput, InvalidState, NotFound, SwaglyError
)
from swagly.services.claim_gateway import ClaimGateway, claim_gateway, to_smallest_unit
from swagly.services.passport_service import PassportService, passport_service

logger = logging.getLogger(__name__)

DEFAULT_VALIDATOR = "admin"

# Attempts whose tokens may or may not exist on-chain
UNRESOLVED_CLAIMS = (CLAIM_IN_FLIGHT, CLAIM_UNKNOWN)
# Attempts whose tokens are known to exist on-chain
LANDED_CLAIMS = (CLAIM_SUCCEEDED, CLAIM_RESOLVED_LANDED)


class ApprovalService:
    """State machine driving proof approval and rejection"""

    def __init__(
        self,
        gateway: Optional[ClaimGateway] = None,
        passports: Optional[PassportService] = None,
        config: Optional[Settings] = None
    ):
        self.gateway = gateway or claim_gateway
        self.passports = passports or passport_service
        self.config = config or default_settings

    # ============================================================
    # HELPERS
    # ============================================================

    def _load_proof(self, db: Session, proof_id: str) -> ActivityProof:
        proof = db.query(ActivityProof).options(
            joinedload(ActivityProof.activity),
            joinedload(ActivityProof.user)
        ).filter(ActivityProof.id == proof_id).first()

        if not proof:
            raise NotFound(f"Proof {proof_id} not found")
        return proof

    def _require_pending(self, proof: ActivityProof) -> None:
        if proof.status != PROOF_PENDING:
            raise InvalidState(
                f"This proof was already {proof.status}",
                current_status=proof.status
            )

    def _acquire_lock(self, db: Session, proof_id: str) -> str:
        """Compare-and-set the review lock; raises if someone else holds it"""
        token = str(uuid.uuid4())
        won = db.query(ActivityProof).filter(
            ActivityProof.id == proof_id,
            ActivityProof.status == PROOF_PENDING,
            ActivityProof.review_lock.is_(None)
        ).update(
            {ActivityProof.review_lock: token},
            synchronize_session=False
        )
        db.commit()

        if won != 1:
            proof = self._load_proof(db, proof_id)
            db.refresh(proof)
            self._require_pending(proof)
            raise Conflict("Another review of this proof is already in progress")
        return token

    def _release_lock(self, db: Session, proof_id: str, token: str) -> None:
        db.query(ActivityProof).filter(
            ActivityProof.id == proof_id,
            ActivityProof.review_lock == token
        ).update(
            {ActivityProof.review_lock: None},
            synchronize_session=False
        )

    def _latest_attempt(
        self,
        db: Session,
        proof_id: str,
        statuses
    ) -> Optional[ClaimAttempt]:
        return db.query(ClaimAttempt).filter(
            ClaimAttempt.proof_id == proof_id,
            ClaimAttempt.status.in_(statuses)
        ).order_by(ClaimAttempt.created_at.desc()).first()

    # ============================================================
    # REJECT
    # ============================================================

    def reject(
        self,
        db: Session,
        proof_id: str,
        validator_id: Optional[str],
        reason: Optional[str]
    ) -> Dict[str, Any]:
        """Reject a pending proof with a reason shown back to the user"""
        proof = self._load_proof(db, proof_id)
        self._require_pending(proof)

        if not reason or not reason.strip():
            raise InvalidInput("A rejection reason is required")

        if self._latest_attempt(db, proof_id, UNRESOLVED_CLAIMS + LANDED_CLAIMS):
            raise InvalidState(
                "Tokens for this proof may already have been issued; "
                "resolve or approve instead of rejecting",
                current_status=proof.status
            )

        updated = db.query(ActivityProof).filter(
            ActivityProof.id == proof_id,
            ActivityProof.status == PROOF_PENDING,
            ActivityProof.review_lock.is_(None)
        ).update(
            {
                ActivityProof.status: PROOF_REJECTED,
                ActivityProof.validated_by: validator_id or DEFAULT_VALIDATOR,
                ActivityProof.validated_at: datetime.utcnow(),
                ActivityProof.rejection_reason: reason.strip(),
            },
            synchronize_session=False
        )
        db.commit()

        if updated != 1:
            db.refresh(proof)
            self._require_pending(proof)
            raise Conflict("An approval of this proof is in progress")

        logger.info(f"Proof {proof_id} rejected by {validator_id or DEFAULT_VALIDATOR}: {reason.strip()}")
        return {"proof_id": proof_id, "status": PROOF_REJECTED}

    # ============================================================
    # APPROVE
    # ============================================================

    def approve(
        self,
        db: Session,
        proof_id: str,
        validator_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Approve a pending proof: claim tokens first, then record everything"""
        validator = validator_id or DEFAULT_VALIDATOR

        proof = self._load_proof(db, proof_id)
        self._require_pending(proof)

        token = self._acquire_lock(db, proof_id)

        try:
            unresolved = self._latest_attempt(db, proof_id, UNRESOLVED_CLAIMS)
            if unresolved:
                raise InvalidState(
                    f"Claim attempt {unresolved.id} has an unknown outcome; "
                    f"check the chain and resolve it before approving again",
                    current_status=proof.status
                )

            landed = self._latest_attempt(db, proof_id, LANDED_CLAIMS)
            if landed:
                logger.warning(
                    f"Proof {proof_id} already has landed claim {landed.id}; "
                    f"reconciling without a new claim"
                )
                landed_claim = (landed.id, landed.transaction_hash, landed.quantity)
            else:
                landed_claim = None
                attempt_id, idempotency_key, receiver, quantity = self._open_claim_attempt(db, proof_id)
        except Exception:
            db.rollback()
            self._release_lock(db, proof_id, token)
            db.commit()
            raise

        if landed_claim:
            attempt_id, transaction_hash, quantity = landed_claim
            return self._finish_approval(
                db, proof_id, validator, attempt_id, transaction_hash, quantity, token
            )

        logger.info(f"Sending {quantity} tokens to {receiver} for proof {proof_id}")

        try:
            result = self.gateway.claim(receiver, quantity, idempotency_key=idempotency_key)
        except GatewayError as e:
            self._record_failed_claim(db, proof_id, attempt_id, token, e)
            raise
        except InvalidInput as e:
            self._record_failed_claim(db, proof_id, attempt_id, token, e)
            raise
        except Exception as e:
            logger.exception(f"Unexpected error while claiming tokens for proof {proof_id}")
            self._record_failed_claim(db, proof_id, attempt_id, token, e, outcome_unknown=True)
            raise Internal("Unexpected error while sending tokens")

        return self._finish_approval(
            db, proof_id, validator, attempt_id,
            result.transaction_hash, quantity, token
        )

    def _open_claim_attempt(self, db: Session, proof_id: str):
        """
        Validate the claim target and commit an in-flight ClaimAttempt.

        Returns (attempt id, idempotency key, receiver, quantity). Runs while
        the review lock is held; the caller releases it on any failure.
        """
        proof = self._load_proof(db, proof_id)
        receiver = proof.user.wallet_address if proof.user else None
        quantity = proof.activity.num_of_tokens

        if not receiver:
            raise InvalidInput("The user has no wallet address to receive tokens")

        # the passport entry must exist before anything is sent on-chain
        self.passports.get_passport_activity(db, proof.passport_id, proof.activity_id)

        attempt = ClaimAttempt(
            proof_id=proof_id,
            receiver_address=receiver,
            quantity=quantity,
            quantity_in_wei=str(to_smallest_unit(quantity, self.config.TOKEN_DECIMALS)),
            status=CLAIM_IN_FLIGHT
        )
        db.add(attempt)
        db.commit()
        return attempt.id, attempt.idempotency_key, receiver, quantity

    def _record_failed_claim(
        self,
        db: Session,
        proof_id: str,
        attempt_id: str,
        token: str,
        error: Exception,
        outcome_unknown: bool = False
    ) -> None:
        db.rollback()
        attempt = db.get(ClaimAttempt, attempt_id)

        if isinstance(error, GatewayError):
            outcome_unknown = outcome_unknown or error.outcome_unknown
            attempt.error_kind = error.kind
            attempt.error_detail = {
                "message": error.message,
                "upstream_status": error.upstream_status,
                "payload": error.payload,
            }
        else:
            attempt.error_kind = type(error).__name__
            attempt.error_detail = {"message": str(error)}

        attempt.status = CLAIM_UNKNOWN if outcome_unknown else CLAIM_FAILED
        attempt.finished_at = datetime.utcnow()
        self._release_lock(db, proof_id, token)
        db.commit()

        if outcome_unknown:
            logger.error(
                f"Claim {attempt_id} for proof {proof_id} has an unknown outcome; "
                f"proof stays pending until the attempt is resolved"
            )
        else:
            logger.warning(f"Claim {attempt_id} for proof {proof_id} failed; proof stays pending")

    def _apply_approval(
        self,
        db: Session,
        proof_id: str,
        validator: str,
        attempt_id: str,
        transaction_hash: Optional[str],
        quantity: int,
        token: str
    ) -> int:
        try:
            proof = db.get(ActivityProof, proof_id)
            proof.status = PROOF_APPROVED
            proof.validated_by = validator
            proof.validated_at = datetime.utcnow()
            proof.tokens_awarded = quantity
            proof.transaction_hash = transaction_hash
            proof.review_lock = None

            attempt = db.get(ClaimAttempt, attempt_id)
            if attempt.status == CLAIM_IN_FLIGHT:
                attempt.status = CLAIM_SUCCEEDED
                attempt.transaction_hash = transaction_hash
                attempt.finished_at = datetime.utcnow()

            self.passports.mark_activity_completed(
                db, proof.passport_id, proof.activity_id, proof.id
            )
            progress = self.passports.recompute_progress(db, proof.passport_id)
            db.commit()
            return progress
        except Exception:
            db.rollback()
            raise

    def _finish_approval(
        self,
        db: Session,
        proof_id: str,
        validator: str,
        attempt_id: str,
        transaction_hash: Optional[str],
        quantity: int,
        token: str
    ) -> Dict[str, Any]:
        try:
            for retry_state in Retrying(
                stop=stop_after_attempt(max(1, self.config.LOCAL_COMMIT_ATTEMPTS)),
                wait=wait_exponential(multiplier=0.2, max=2),
                retry=retry_if_exception_type(OperationalError),
                reraise=True
            ):
                with retry_state:
                    progress = self._apply_approval(
                        db, proof_id, validator, attempt_id,
                        transaction_hash, quantity, token
                    )
        except Exception as e:
            logger.error(
                f"Tokens for proof {proof_id} were issued (tx {transaction_hash}) "
                f"but the approval could not be recorded: {e}",
                exc_info=not isinstance(e, SwaglyError)
            )
            self._keep_landed_claim(db, proof_id, attempt_id, transaction_hash, token)
            if isinstance(e, SwaglyError):
                raise
            raise Internal(
                "Tokens were sent but the approval could not be recorded; "
                "approve again to reconcile",
                transaction_hash=transaction_hash
            )

        logger.info(f"Proof {proof_id} approved, passport progress now {progress}%")
        return {
            "proof_id": proof_id,
            "transaction_hash": transaction_hash,
            "tokens_awarded": quantity,
            "progress": progress
        }

    def _keep_landed_claim(
        self,
        db: Session,
        proof_id: str,
        attempt_id: str,
        transaction_hash: Optional[str],
        token: str
    ) -> None:
        """Persist that the claim landed so the next approve only reconciles"""
        try:
            attempt = db.get(ClaimAttempt, attempt_id)
            if attempt.status == CLAIM_IN_FLIGHT:
                attempt.status = CLAIM_SUCCEEDED
                attempt.transaction_hash = transaction_hash
                attempt.finished_at = datetime.utcnow()
            self._release_lock(db, proof_id, token)
            db.commit()
        except Exception:
            db.rollback()
            logger.exception(
                f"Could not record landed claim {attempt_id} (tx {transaction_hash}); "
                f"manual reconciliation required"
            )

    # ============================================================
    # CLAIM ATTEMPT RECONCILIATION
    # ============================================================

    def resolve_claim_attempt(
        self,
        db: Session,
        attempt_id: str,
        outcome: str,
        resolved_by: Optional[str] = None,
        transaction_hash: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Record the operator's verdict on a claim whose outcome was unknown.

        outcome "landed": tokens exist on-chain, the next approve only
        records the approval. outcome "failed": nothing landed, the next
        approve may claim again.
        """
        attempt = db.get(ClaimAttempt, attempt_id)
        if not attempt:
            raise NotFound(f"Claim attempt {attempt_id} not found")

        if outcome not in ("landed", "failed"):
            raise InvalidInput("outcome must be 'landed' or 'failed'")

        if attempt.status == CLAIM_IN_FLIGHT and not self._is_stale(attempt):
            raise InvalidState(
                "Claim attempt is still in flight",
                current_status=attempt.status
            )
        if attempt.status not in UNRESOLVED_CLAIMS:
            raise InvalidState(
                f"Claim attempt is already {attempt.status}",
                current_status=attempt.status
            )

        was_in_flight = attempt.status == CLAIM_IN_FLIGHT
        attempt.status = CLAIM_RESOLVED_LANDED if outcome == "landed" else CLAIM_RESOLVED_FAILED
        attempt.resolved_by = resolved_by or DEFAULT_VALIDATOR
        attempt.finished_at = attempt.finished_at or datetime.utcnow()
        if transaction_hash:
            attempt.transaction_hash = transaction_hash

        if was_in_flight:
            db.query(ActivityProof).filter(
                ActivityProof.id == attempt.proof_id
            ).update(
                {ActivityProof.review_lock: None},
                synchronize_session=False
            )

        db.commit()
        logger.info(f"Claim attempt {attempt_id} resolved as {outcome} by {attempt.resolved_by}")
        return self.serialize_attempt(attempt)

    def _is_stale(self, attempt: ClaimAttempt) -> bool:
        if not attempt.created_at:
            return True
        cutoff = datetime.utcnow() - timedelta(minutes=self.config.CLAIM_STALE_AFTER_MIN)
        return attempt.created_at < cutoff

    def flag_stale_attempts(self, db: Session, older_than_minutes: Optional[int] = None) -> int:
        """
        Mark in-flight attempts older than the threshold as unknown.

        An attempt stays in flight only if the process died mid-claim; its
        review lock is released so the proof can be resolved and retried.
        """
        minutes = older_than_minutes if older_than_minutes is not None else self.config.CLAIM_STALE_AFTER_MIN
        cutoff = datetime.utcnow() - timedelta(minutes=minutes)

        stale = db.query(ClaimAttempt).filter(
            ClaimAttempt.status == CLAIM_IN_FLIGHT,
            ClaimAttempt.created_at < cutoff
        ).all()

        for attempt in stale:
            attempt.status = CLAIM_UNKNOWN
            attempt.error_kind = "stale"
            attempt.error_detail = {"message": f"No outcome recorded after {minutes} minutes"}
            attempt.finished_at = datetime.utcnow()
            db.query(ActivityProof).filter(
                ActivityProof.id == attempt.proof_id,
                ActivityProof.status == PROOF_PENDING
            ).update(
                {ActivityProof.review_lock: None},
                synchronize_session=False
            )
            logger.warning(f"Claim attempt {attempt.id} for proof {attempt.proof_id} flagged as stale")

        db.commit()
        return len(stale)

    def list_claim_attempts(self, db: Session, status: Optional[str] = None) -> List[Dict[str, Any]]:
        query = db.query(ClaimAttempt)
        if status in CLAIM_STATUSES:
            query = query.filter(ClaimAttempt.status == status)
        attempts = query.order_by(ClaimAttempt.created_at.desc()).all()
        return [self.serialize_attempt(a) for a in attempts]

    def serialize_attempt(self, attempt: ClaimAttempt) -> Dict[str, Any]:
        return {
            "id": attempt.id,
            "proof_id": attempt.proof_id,
            "idempotency_key": attempt.idempotency_key,
            "receiver_address": attempt.receiver_address,
            "quantity": attempt.quantity,
            "quantity_in_wei": attempt.quantity_in_wei,
            "status": attempt.status,
            "transaction_hash": attempt.transaction_hash,
            "error_kind": attempt.error_kind,
            "error_detail": attempt.error_detail,
            "created_at": attempt.created_at.isoformat() if attempt.created_at else None,
            "finished_at": attempt.finished_at.isoformat() if attempt.finished_at else None,
            "resolved_by": attempt.resolved_by
        }


# Singleton instance
approval_service = ApprovalService()
